from __future__ import annotations

import json
from typing import Iterable, Iterator, Optional

import httpx
from rich.console import Console
from rich.table import Table

console = Console()


def round_url(base_url: str, round_id: str) -> str:
    return f"{base_url.rstrip('/')}/{round_id}"


def iter_sse_data(lines: Iterable[str]) -> Iterator[str]:
    """Group SSE lines into event payloads, skipping comments/heartbeats."""
    buf = []
    for line in lines:
        if line is None:
            continue
        if line == "":
            if buf:
                yield "\n".join(buf)
                buf = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data = line[5:]
            buf.append(data[1:] if data.startswith(" ") else data)
            continue
        # Raw relayed text continues the current payload
        buf.append(line)
    if buf:
        yield "\n".join(buf)


def _render_payload(payload: str, raw: bool) -> None:
    if raw:
        console.print(payload, markup=False, highlight=False)
        return
    for line in payload.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            console.print_json(data=json.loads(line))
        except ValueError:
            console.print(line, markup=False, highlight=False)


def watch_round(*, base_url: str, round_id: str, raw: bool = False, timeout_s: Optional[float] = None) -> None:
    url = round_url(base_url, round_id)
    console.print(f"Streaming {url} (Ctrl+C to stop)")
    with httpx.Client(timeout=timeout_s, follow_redirects=True) as client:
        with client.stream("GET", url, headers={"Accept": "text/event-stream"}) as r:
            if r.status_code != 200:
                r.read()
                console.print(f"[red]relay error[/red]: {r.status_code} {r.text}")
                r.raise_for_status()
            for payload in iter_sse_data(r.iter_lines()):
                _render_payload(payload, raw)
    console.print("[cyan]round stream ended[/cyan]")


def fetch_channels(*, base_url: str, timeout_s: float = 10.0) -> dict:
    with httpx.Client(timeout=timeout_s, follow_redirects=True) as client:
        r = client.get(f"{base_url.rstrip('/')}/channels")
        r.raise_for_status()
        return r.json()


def render_channels(payload: dict) -> None:
    channels = payload.get("channels", []) or []
    if not channels:
        console.print("[yellow]No rounds are being relayed.[/yellow]")
        return
    table = Table(title=f"{len(channels)} round(s)")
    table.add_column("round")
    table.add_column("state")
    table.add_column("subscribers", justify="right")
    table.add_column("chunks", justify="right")
    for c in channels:
        table.add_row(
            str(c.get("channel_id", "")),
            str(c.get("state", "")),
            str(c.get("subscribers", 0)),
            str(c.get("chunks_relayed", 0)),
        )
    console.print(table)
