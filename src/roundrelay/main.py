from __future__ import annotations

import os
from typing import Optional

import httpx
import typer
from rich.console import Console

from roundrelay.stream import fetch_channels, render_channels, watch_round
from roundrelay_server.settings import Settings

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()

DEFAULT_URL = "http://127.0.0.1:5000"


def _default_url() -> str:
    return os.environ.get("ROUNDRELAY_URL", DEFAULT_URL)


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: ROUNDRELAY_HOST or 0.0.0.0)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default: $PORT or 5000)"),
    upstream: Optional[str] = typer.Option(None, "--upstream", help="Override the upstream base URL."),
):
    if upstream:
        os.environ["ROUNDRELAY_UPSTREAM_BASE_URL"] = upstream.rstrip("/")
    settings = Settings()
    host = host or settings.host
    port = port or settings.port
    # The app reads its own Settings on import
    os.environ["PORT"] = str(port)
    os.environ["ROUNDRELAY_HOST"] = host

    console.print(f"Starting relay on http://{host}:{port}")
    console.print(f"SSE:       http://{host}:{port}/<round-id>")
    console.print(f"WebSocket: ws://{host}:{port}/<round-id>")

    import uvicorn
    uvicorn.run("roundrelay_server.main:app", host=host, port=port, reload=False, log_level="info")


@app.command("watch")
def watch(
    round_id: str = typer.Argument(..., help="Broadcast round id"),
    url: Optional[str] = typer.Option(None, "--url", help="Relay base URL (default: $ROUNDRELAY_URL or http://127.0.0.1:5000)."),
    raw: bool = typer.Option(False, "--raw", help="Print relayed chunks verbatim."),
):
    round_id = (round_id or "").strip().strip("/")
    if not round_id:
        console.print("[red]round id is empty[/red]")
        raise typer.Exit(code=1)
    try:
        watch_round(base_url=url or _default_url(), round_id=round_id, raw=raw)
    except KeyboardInterrupt:
        console.print("\n[cyan]stopped[/cyan]")
    except httpx.HTTPError as ex:
        console.print(f"[red]stream error[/red]: {ex}")
        raise typer.Exit(code=1)


@app.command("channels")
def channels(
    url: Optional[str] = typer.Option(None, "--url", help="Relay base URL."),
    json_mode: bool = typer.Option(False, "--json", help="Print the raw JSON payload."),
):
    try:
        payload = fetch_channels(base_url=url or _default_url())
    except httpx.HTTPError as ex:
        console.print(f"[red]request failed[/red]: {ex}")
        raise typer.Exit(code=1)
    if json_mode:
        console.print_json(data=payload)
        return
    render_channels(payload)


if __name__ == "__main__":
    app()
