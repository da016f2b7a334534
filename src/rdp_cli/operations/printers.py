"""
Human-readable and machine-readable output formatting.

Centralizes all CLI output so commands stay thin. Every printer takes the
selected output format: ``table`` renders with rich, ``json`` and ``yaml``
dump the same data for scripts. Status lines and errors go to stderr so that
stdout carries only the requested data (or downloaded content).
"""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

import typer
import yaml
from pydantic import BaseModel
from rich.console import Console
from rich.table import Table

from ..artifacts import UploadResult
from ..models import ArtifactList, ArtifactRecord, PackageList, short_digest
from ..packages import PullResult, PushResult

_console = Console()
_err_console = Console(stderr=True)


def _format_bytes(size: Optional[int]) -> str:
    """Format byte count as human-readable string."""
    if size is None or size < 0:
        return "-"
    value = float(size)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if value < 1024.0:
            return f"{value:.1f} {unit}" if unit != 'B' else f"{int(value)} B"
        value /= 1024.0
    return f"{value:.1f} PB"


def _plain(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def _dump(data: Any, output: str) -> bool:
    """Write *data* as JSON or YAML; returns False for table output."""
    if output == "json":
        typer.echo(json.dumps(data, indent=2))
        return True
    if output == "yaml":
        typer.echo(yaml.safe_dump(data, sort_keys=False).rstrip())
        return True
    return False


def print_error(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)


# Artifacts

def print_artifact_table(listing: ArtifactList, output: str = "table") -> None:
    """
    Print one page of artifacts.

    Args:
        listing: Page returned by the list endpoint
        output: table, json or yaml
    """
    if _dump(_plain(listing), output):
        return

    if not listing.items:
        _console.print("[dim]No artifacts[/]")
        return

    table = Table(title=f"Artifacts ({len(listing.items)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Status", style="yellow")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    for record in listing.items:
        table.add_row(record.id, record.name or "", record.status or "", record.mime_type or "",
                      _format_bytes(record.size))
    _console.print(table)
    if listing.next_page:
        _console.print(f"[dim]More results: --page {listing.next_page}[/]")


def print_artifact(record: ArtifactRecord, output: str = "table") -> None:
    if _dump(_plain(record), output):
        return

    _console.print(f"[bold]Artifact:[/] {record.id}")
    if record.name:
        _console.print(f"[bold]Name:[/] {record.name}")
    if record.status:
        _console.print(f"[bold]Status:[/] {record.status}")
    if record.mime_type:
        _console.print(f"[bold]Type:[/] {record.mime_type}")
    _console.print(f"[bold]Size:[/] {_format_bytes(record.size)}")
    if record.collection:
        _console.print(f"[bold]Collection:[/] {record.collection}")
    if record.policy:
        _console.print(f"[bold]Policy:[/] {record.policy}")


def print_upload_result(artifact_id: str, result: UploadResult, output: str = "table") -> None:
    """
    Print the outcome of an artifact upload.

    Args:
        artifact_id: Artifact the content belongs to
        result: Upload outcome (offsets and request count)
        output: table, json or yaml
    """
    data = {
        "id": artifact_id,
        "start_offset": result.start_offset,
        "offset": result.offset,
        "bytes_sent": result.bytes_sent,
        "requests": result.requests,
        "already_complete": result.already_complete,
    }
    if _dump(data, output):
        return

    if result.already_complete:
        _console.print(f"{artifact_id}: upload already complete at {_format_bytes(result.offset)}")
        return
    resumed = f" (resumed at {result.start_offset})" if result.start_offset else ""
    _console.print(f"{artifact_id}: uploaded {_format_bytes(result.bytes_sent)} "
                   f"in {result.requests} requests{resumed}")


def print_artifact_update(artifact_id: str, message: str, reply: Any = None, output: str = "table") -> None:
    """Print the outcome of a metadata or collection change, with the server reply if any."""
    data = {"id": artifact_id, "result": message}
    if reply is not None:
        data["reply"] = reply
    if _dump(data, output):
        return
    _console.print(f"{artifact_id}: {message}")


def print_download_summary(artifact_id: str, written: int, dest: str) -> None:
    target = "stdout" if dest == "-" else dest
    _err_console.print(f"{artifact_id}: {_format_bytes(written)} written to {target}")


# Packages

def print_push_result(result: PushResult, output: str = "table") -> None:
    """
    Print the outcome of a package push, one row per blob.

    Args:
        result: Push outcome, manifest last
        output: table, json or yaml
    """
    data = {
        "tag": result.tag,
        "manifest_digest": result.manifest_digest,
        "blobs": [
            {"digest": b.digest, "size": b.size, "media_type": b.media_type, "state": b.state.value,
             "chunks": b.chunks}
            for b in result.blobs
        ],
    }
    if _dump(data, output):
        return

    table = Table(title=f"Pushed {result.tag}")
    table.add_column("Digest", style="cyan", no_wrap=True)
    table.add_column("Size", justify="right")
    table.add_column("State", style="yellow")
    table.add_column("Chunks", justify="right")
    for blob in result.blobs:
        table.add_row(short_digest(blob.digest), _format_bytes(blob.size), blob.state.value, str(blob.chunks))
    _console.print(table)
    _console.print(f"[bold]Manifest:[/] [dim]{result.manifest_digest}[/]")
    _console.print(f"{len(result.mounted)} mounted, {len(result.committed)} uploaded")


def print_pull_result(result: PullResult, output: str = "table") -> None:
    data = {
        "tag": result.tag,
        "image_id": result.image_id,
        "manifest_digest": result.manifest_digest,
        "config_digest": result.config_digest,
        "layers": list(result.layers),
    }
    if _dump(data, output):
        return

    _console.print(f"[bold]Pulled:[/] {result.tag}")
    _console.print(f"[bold]Image:[/] {result.image_id}")
    _console.print(f"[bold]Manifest:[/] [dim]{result.manifest_digest}[/]")
    _console.print(f"[bold]Layers:[/] {len(result.layers)}")


def print_package_list(packages: PackageList, output: str = "table") -> None:
    if _dump(_plain(packages), output):
        return

    if not packages.items:
        _console.print("[dim]No packages[/]")
        return
    table = Table(title=f"Packages ({len(packages.items)})")
    table.add_column("Tag", style="cyan")
    for tag in packages.items:
        table.add_row(tag)
    _console.print(table)


def print_package_removed(tag: str, output: str = "table") -> None:
    if _dump({"removed": tag}, output):
        return
    _console.print(f"Removed {tag}")
