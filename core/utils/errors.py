"""Custom exceptions for core logic."""

from __future__ import annotations


class BackendRequestError(Exception):
    """Raised when an inference backend request fails or returns an unusable body."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
