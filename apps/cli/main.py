"""Typer CLI entrypoint for fieldsense."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any, cast

import typer

from apps.cli.io import read_json_file, write_json_atomic
from core.ai.backends import Backend, create_backend
from core.ai.classifier import select_candidates
from core.ai.discovery import DEFAULT_PORTS
from core.ai.models import BACKEND_KINDS, BackendKind, FormField, PageContext, parse_fields
from core.config.settings import AISettings, apply_env_overrides, is_valid_host, load_settings
from core.orchestrator.pipeline import PipelineOutput, detect_backend, run_classification

app = typer.Typer(help="Form field AI classification CLI", rich_markup_mode=None)


@app.callback()
def cli_callback() -> None:
    """CLI root callback to keep subcommands explicit."""


@app.command("discover")
def discover_command(
    settings: Annotated[Path | None, typer.Option("--settings", dir_okay=False)] = None,
    host: Annotated[str | None, typer.Option("--host", help="Custom host tried before localhost.")] = None,
    port: Annotated[int | None, typer.Option("--port", min=1, max=65535)] = None,
    kind: Annotated[str | None, typer.Option("--kind", help="Backend kind for --host.")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print results as JSON.")] = False,
) -> None:
    """Probe local inference backends and report the first healthy one."""

    ai_settings = _load_settings_or_exit(settings)
    ai_settings = _apply_endpoint_options(ai_settings, host, port, kind)

    results, active = asyncio.run(detect_backend(ai_settings))

    if as_json:
        typer.echo(
            json.dumps(
                {
                    "results": [item.to_payload() for item in results],
                    "active": active.to_payload() if active is not None else None,
                },
                ensure_ascii=False,
                indent=2,
            )
        )
    else:
        for item in results:
            state = "healthy" if item.healthy else "unreachable"
            suffix = f" {item.endpoint}" if item.endpoint else ""
            typer.echo(f"{state}: {item.kind}@{item.host}:{item.port}{suffix}")

    if active is None:
        typer.echo("ERROR: no healthy inference backend found.")
        raise typer.Exit(code=1)


@app.command("classify")
def classify_command(
    fields: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    html: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    settings: Annotated[Path | None, typer.Option("--settings", dir_okay=False)] = None,
    host: Annotated[str | None, typer.Option("--host")] = None,
    port: Annotated[int | None, typer.Option("--port", min=1, max=65535)] = None,
    kind: Annotated[str | None, typer.Option("--kind")] = None,
    page_title: Annotated[str, typer.Option("--page-title")] = "",
    page_url: Annotated[str, typer.Option("--page-url")] = "",
    company: Annotated[str, typer.Option("--company")] = "",
    preferences: Annotated[
        Path | None,
        typer.Option(
            "--preferences",
            exists=True,
            dir_okay=False,
            help="JSON object mapping field names to false to reject AI overrides.",
        ),
    ] = None,
    out: Annotated[Path | None, typer.Option("--out", help="Write JSON result to this file.")] = None,
) -> None:
    """Classify low-confidence fields with the AI backend and merge the suggestions."""

    ai_settings = _load_settings_or_exit(settings)
    form_fields = _load_fields_or_exit(fields)
    form_html = html.read_text(encoding="utf-8")
    field_preferences = _load_preferences_or_exit(preferences)
    page = PageContext(page_title=page_title, page_url=page_url, company=company)

    output = asyncio.run(
        _classify(
            ai_settings,
            form_html,
            form_fields,
            page,
            field_preferences,
            host=host,
            port=port,
            kind=kind,
        )
    )

    payload = output.to_payload()
    if out is not None:
        write_json_atomic(out, payload)
        typer.echo(f"INFO: wrote {out}")
    else:
        typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


async def _classify(
    ai_settings: AISettings,
    form_html: str,
    form_fields: list[FormField],
    page: PageContext,
    preferences: dict[str, bool],
    *,
    host: str | None,
    port: int | None,
    kind: str | None,
) -> PipelineOutput:
    if not ai_settings.enabled or not select_candidates(form_fields, ai_settings.classify_context()):
        return PipelineOutput(fields=list(form_fields))

    backend = await _resolve_backend(ai_settings, host, port, kind)
    if backend is None:
        typer.echo("WARN: no healthy inference backend; keeping pattern results.", err=True)
        return PipelineOutput(fields=list(form_fields))

    return await run_classification(
        form_html,
        form_fields,
        ai_settings,
        backend=backend,
        page=page,
        preferences=preferences,
    )


async def _resolve_backend(
    ai_settings: AISettings,
    host: str | None,
    port: int | None,
    kind: str | None,
) -> Backend | None:
    if host is not None:
        backend_kind = _validate_kind(kind) if kind else ai_settings.engine_type
        if not is_valid_host(host):
            typer.echo(f"ERROR: invalid --host: {host}")
            raise typer.Exit(code=1)
        return create_backend(
            backend_kind,
            host,
            port or DEFAULT_PORTS[backend_kind],
            timeout_ms=ai_settings.request_timeout_ms,
        )

    _, active = await detect_backend(ai_settings)
    if active is None:
        return None
    return create_backend(
        active.kind,
        active.host,
        active.port,
        timeout_ms=ai_settings.request_timeout_ms,
    )


def _load_settings_or_exit(path: Path | None) -> AISettings:
    try:
        loaded = load_settings(path)
    except ValueError as exc:
        typer.echo(f"ERROR: {exc}")
        raise typer.Exit(code=1) from exc
    return apply_env_overrides(loaded)


def _apply_endpoint_options(
    ai_settings: AISettings,
    host: str | None,
    port: int | None,
    kind: str | None,
) -> AISettings:
    update: dict[str, Any] = {}
    if kind is not None:
        update["engine_type"] = _validate_kind(kind)
    if host is not None:
        if not is_valid_host(host):
            typer.echo(f"ERROR: invalid --host: {host}")
            raise typer.Exit(code=1)
        update["custom_host"] = host
    if port is not None:
        update["custom_port"] = port
    return ai_settings.model_copy(update=update) if update else ai_settings


def _validate_kind(kind: str) -> BackendKind:
    normalized = kind.lower().strip()
    if normalized not in BACKEND_KINDS:
        typer.echo(f"ERROR: --kind must be one of: {', '.join(BACKEND_KINDS)}.")
        raise typer.Exit(code=1)
    return cast(BackendKind, normalized)


def _load_fields_or_exit(path: Path) -> list[FormField]:
    try:
        raw = read_json_file(path)
        if isinstance(raw, dict):
            raw = raw.get("fields")
        if not isinstance(raw, list):
            raise ValueError("fields file must contain a JSON array or an object with 'fields'")
        return parse_fields(raw)
    except ValueError as exc:
        typer.echo(f"ERROR: invalid fields file {path}: {exc}")
        raise typer.Exit(code=1) from exc


def _load_preferences_or_exit(path: Path | None) -> dict[str, bool]:
    if path is None:
        return {}
    try:
        raw = read_json_file(path)
    except ValueError as exc:
        typer.echo(f"ERROR: invalid preferences file {path}: {exc}")
        raise typer.Exit(code=1) from exc
    if not isinstance(raw, dict) or not all(isinstance(value, bool) for value in raw.values()):
        typer.echo(f"ERROR: preferences file must map field names to booleans: {path}")
        raise typer.Exit(code=1)
    return {str(key): value for key, value in raw.items()}


def main() -> None:
    app()


if __name__ == "__main__":
    main()
