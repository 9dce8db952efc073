"""Command line interface for the noteme service."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional

import httpx
import typer
from rich.console import Console
from rich.table import Table

from . import config as config_mod
from .config import ConfigError

app = typer.Typer(add_completion=False, help="Voice recording transcription and analysis tool.")

API_PREFIX = "/api/v1"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _format_timestamp(value: Optional[str]) -> str:
    if not value:
        return "-"
    try:
        return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return value


def _server_url(cfg: config_mod.Config) -> str:
    if cfg.server_url:
        return cfg.server_url.rstrip("/")
    return f"http://{cfg.host}:{cfg.port}"


def _report_http_error(exc: httpx.HTTPError) -> None:
    detail = str(exc)
    status_text = ""
    if isinstance(exc, httpx.RequestError):
        status_text = f"{exc.request.method} {exc.request.url}"
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        status_text = f"{response.status_code} {response.request.method} {response.request.url}"
        try:
            payload = response.json()
        except ValueError:
            detail = response.text or detail
        else:
            if isinstance(payload, dict):
                detail = payload.get("detail", detail)
    typer.secho(f"Request to API failed ({status_text}): {detail}", fg=typer.colors.RED, err=True)


@contextmanager
def _api_client(cfg: config_mod.Config, user_id: Optional[str] = None) -> Iterator[httpx.Client]:
    headers: Dict[str, str] = {}
    if cfg.server_token:
        headers["Authorization"] = f"Bearer {cfg.server_token}"
    if user_id:
        headers["X-User-ID"] = user_id
    with httpx.Client(
        base_url=_server_url(cfg),
        headers=headers,
        timeout=cfg.api_timeout,
        verify=cfg.verify_ssl,
    ) as client:
        yield client


def _request(method: str, path: str, user_id: Optional[str] = None, **kwargs) -> httpx.Response:
    cfg = _load_config()
    try:
        with _api_client(cfg, user_id) as client:
            response = client.request(method, path, **kwargs)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        _report_http_error(exc)
        raise typer.Exit(code=1) from exc
    return response


def _load_config() -> config_mod.Config:
    try:
        return config_mod.load_config()
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _print_recording(payload: dict) -> None:
    typer.secho(f"Recording: {payload.get('recording_id', '-')}", fg=typer.colors.BLUE)
    typer.echo(f"Status: {payload.get('status', 'unknown')}")
    if "created_at" in payload:
        typer.echo(f"Created: {_format_timestamp(payload.get('created_at'))}")
    if payload.get("duration"):
        typer.echo(f"Duration: {payload['duration']}s")
    if payload.get("error"):
        typer.secho(f"Error: {payload['error']}", fg=typer.colors.RED)
    if payload.get("transcript"):
        typer.echo("\nTranscript:\n" + payload["transcript"])


def _print_analysis(analysis: dict) -> None:
    typer.secho(f"Context: {analysis.get('context', '-')}", fg=typer.colors.BLUE)
    for title, key in (("Summary", "summary"), ("Action items", "action_items"), ("Key points", "key_points")):
        items = analysis.get(key) or []
        if items:
            typer.secho(f"\n{title}:", fg=typer.colors.GREEN)
            for item in items:
                typer.echo(f"- {item}")
    if analysis.get("zalo_brief"):
        typer.secho("\nBrief:", fg=typer.colors.GREEN)
        typer.echo(analysis["zalo_brief"])


def _print_history(items: list, empty_message: str) -> None:
    if not items:
        typer.echo(empty_message)
        return
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Provider")
    table.add_column("Created")
    for item in items:
        title = item.get("title") or item.get("metadata", {}).get("recording_id", "")
        table.add_row(
            item.get("id", "-"),
            title,
            item.get("status", "-"),
            item.get("stt_provider", "-"),
            _format_timestamp(item.get("created_at")),
        )
    Console().print(table)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    if version:
        typer.echo("noteme v0.1.0")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Interface to bind (defaults to the configured host)."),
    port: Optional[int] = typer.Option(None, help="Port to listen on (defaults to the configured port)."),
    log_level: str = typer.Option("info", help="Logging level."),
) -> None:  # pragma: no cover - starts a server
    """Run the API server."""

    import uvicorn

    from .api import create_app

    configure_logging(log_level)
    cfg = _load_config()
    uvicorn.run(
        create_app(config=cfg),
        host=host or cfg.host,
        port=port or cfg.port,
        log_level=log_level.lower(),
    )


@app.command()
def upload(
    audio: Path = typer.Argument(..., exists=True, readable=True, help="Path to the audio file."),
    process: bool = typer.Option(False, "--process", help="Transcribe right after uploading."),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Owner id sent as X-User-ID."),
) -> None:
    """Upload an audio file and print its recording id."""

    response = _request(
        "POST",
        f"{API_PREFIX}/recordings",
        user_id,
        files={"audio_file": (audio.name, audio.read_bytes())},
    )
    payload = response.json()
    recording_id = payload.get("recording_id", "")
    typer.secho(f"Uploaded recording {recording_id}.", fg=typer.colors.BLUE)
    if process and recording_id:
        response = _request("POST", f"{API_PREFIX}/process/{recording_id}", user_id)
        typer.echo(response.json().get("transcript", ""))


@app.command("process")
def process_command(
    recording_id: str = typer.Argument(..., help="Identifier of the recording."),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Owner id sent as X-User-ID."),
) -> None:
    """Transcribe an uploaded recording."""

    payload = _request("POST", f"{API_PREFIX}/process/{recording_id}", user_id).json()
    if payload.get("cached"):
        typer.secho("Recording was already processed.", fg=typer.colors.YELLOW)
    typer.echo(payload.get("transcript", ""))
    typer.echo(f"\nConfidence: {payload.get('confidence', 0.0):.2f}")


@app.command()
def status(recording_id: str = typer.Argument(..., help="Identifier of the recording.")) -> None:
    """Show the processing status of a recording."""

    _print_recording(_request("GET", f"{API_PREFIX}/recordings/{recording_id}/status").json())


@app.command()
def show(recording_id: str = typer.Argument(..., help="Identifier of the recording.")) -> None:
    """Show a recording and its transcript."""

    _print_recording(_request("GET", f"{API_PREFIX}/recordings/{recording_id}").json())


@app.command()
def analyze(
    recording_id: str = typer.Argument(..., help="Identifier of the recording."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw analysis JSON."),
) -> None:
    """Analyse a processed recording (served from cache after the first run)."""

    payload = _request("POST", f"{API_PREFIX}/ai/analyze/{recording_id}").json()
    analysis = payload.get("analysis", {})
    if as_json:
        typer.echo(json.dumps(analysis, indent=2, ensure_ascii=False))
        return
    _print_analysis(analysis)


@app.command()
def ask(question: str = typer.Argument(..., help="Question about your analysed recordings.")) -> None:
    """Ask a question across every analysed recording."""

    payload = _request("POST", f"{API_PREFIX}/ai/ask", json={"question": question}).json()
    typer.echo(payload.get("answer", ""))
    typer.secho(f"\n(based on {payload.get('recordings_used', 0)} recordings)", fg=typer.colors.BLUE)


@app.command()
def history(
    limit: int = typer.Option(20, min=1, max=100, help="Number of entries to show."),
    offset: int = typer.Option(0, min=0, help="Number of entries to skip."),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Owner id sent as X-User-ID."),
) -> None:
    """List the durable history of recordings."""

    payload = _request(
        "GET", f"{API_PREFIX}/stt/history", user_id, params={"limit": limit, "offset": offset}
    ).json()
    _print_history(payload.get("items", []), "No recordings found.")


@app.command()
def search(
    query: str = typer.Argument(..., help="Text to look for in titles, summaries and action items."),
    limit: int = typer.Option(20, min=1, max=100, help="Number of entries to show."),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Owner id sent as X-User-ID."),
) -> None:
    """Search the durable history."""

    payload = _request(
        "GET", f"{API_PREFIX}/stt/search", user_id, params={"q": query, "limit": limit}
    ).json()
    _print_history(payload.get("items", []), f"No recordings match '{query}'.")


@app.command()
def config(
    stt_provider: Optional[str] = typer.Option(None, help="Speech-to-text provider (fpt or google)."),
    fpt_api_key: Optional[str] = typer.Option(None, help="API key for FPT.AI speech-to-text."),
    google_project_id: Optional[str] = typer.Option(None, help="Google Cloud project id."),
    google_key: Optional[str] = typer.Option(None, help="Google API key, key file path or credentials JSON."),
    openai_api_key: Optional[str] = typer.Option(None, help="API key for OpenAI."),
    openai_model: Optional[str] = typer.Option(None, help="OpenAI chat model id."),
    database_path: Optional[str] = typer.Option(None, help="SQLite file for the durable history."),
    media_root: Optional[str] = typer.Option(None, help="Directory for uploaded audio."),
    server_url: Optional[str] = typer.Option(None, help="Base URL of the noteme API server."),
    server_token: Optional[str] = typer.Option(None, help="Bearer token for the API server."),
    verify_ssl: Optional[bool] = typer.Option(
        None,
        "--verify-ssl/--no-verify-ssl",
        help="Toggle TLS certificate verification for API calls.",
    ),
    api_timeout: Optional[float] = typer.Option(None, help="HTTP client timeout (seconds) for API calls."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "stt_provider": stt_provider,
            "fpt_api_key": fpt_api_key,
            "google_project_id": google_project_id,
            "google_key": google_key,
            "openai_api_key": openai_api_key,
            "openai_model": openai_model,
            "database_path": database_path,
            "media_root": media_root,
            "server_url": server_url,
            "server_token": server_token,
            "verify_ssl": verify_ssl,
            "api_timeout": api_timeout,
        }.items()
        if value is not None
    }

    if show or not updates:
        cfg = _load_config()
        typer.echo(json.dumps(asdict(cfg), indent=2, default=str))
        return

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


@app.command()
def health() -> None:
    """Check connectivity to the API server."""

    payload = _request("GET", "/health").json()
    typer.echo(f"Status: {payload.get('status', 'unknown')}")
    typer.echo(f"STT provider: {payload.get('stt_provider', 'unknown')}")
    typer.echo(f"STT available: {payload.get('stt_available', False)}")
    typer.echo(f"Durable store: {payload.get('durable_store', False)}")
