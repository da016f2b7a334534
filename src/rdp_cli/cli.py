"""
Research data platform CLI

Two command groups backed by the Operations facade:
- artifact: list, get, create, upload (resume), download, metadata and collections
- package: list, push, pull, remove
"""
from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler

from .artifacts import CreateArtifactRequest
from .cli_context import OUTPUT_FORMATS, CLIContext
from .listing import ListRequest
from .operations import Operations, OpsConfig, run_and_exit
from .operations.printers import (
    print_artifact, print_artifact_table, print_artifact_update, print_download_summary, print_package_list,
    print_package_removed, print_pull_result, print_push_result, print_upload_result
)

app = typer.Typer(name="rdp", help="Research data platform CLI", no_args_is_help=True)
artifact_app = typer.Typer(help="Create, upload and download artifacts", no_args_is_help=True)
package_app = typer.Typer(help="Push and pull container image packages", no_args_is_help=True)
app.add_typer(artifact_app, name="artifact")
app.add_typer(package_app, name="package")

_OPTIONS_KEY = "rdp.options"


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        format="%(message)s",
        level=logging.DEBUG if debug else logging.WARNING,
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


@app.callback()
def root(
    ctx: typer.Context,
    output: str = typer.Option("table", "--output", "-o", help="Output format: table, json or yaml"),
    silent: bool = typer.Option(False, "--silent", help="Hide progress bars"),
    debug: bool = typer.Option(False, "--debug", help="Log HTTP requests and transfer steps"),
) -> None:
    """Research data platform CLI."""
    if output not in OUTPUT_FORMATS:
        raise typer.BadParameter(f"use one of: {', '.join(OUTPUT_FORMATS)}", param_hint="--output")
    _configure_logging(debug)
    ctx.meta[_OPTIONS_KEY] = {"output": output, "silent": silent}


def _cli_context(ctx: typer.Context) -> CLIContext:
    """
    Context for the running command.

    An injected CLIContext (``obj``) wins over the environment; either way
    the global output options are applied to it. Settings are loaded only
    here, so ``--help`` works without any configuration.
    """
    options = ctx.meta.get(_OPTIONS_KEY, {})
    obj = ctx.find_root().obj
    if isinstance(obj, CLIContext):
        obj.output = options.get("output", obj.output)
        obj.silent = options.get("silent", obj.silent)
        return obj
    return CLIContext.from_env(**options)


@contextmanager
def _operations(ctx: typer.Context) -> Iterator[Tuple[Operations, CLIContext]]:
    context = _cli_context(ctx)
    ops = Operations(OpsConfig.from_settings(context.settings, context.progress), context.adapter,
                     store=context.image_store)
    try:
        yield ops, context
    finally:
        context.close()


def _parse_meta(pairs: List[str]) -> Dict[str, str]:
    meta = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid metadata '{pair}', expected key=value")
        meta[key] = value
    return meta


@contextmanager
def _cancel_on_interrupt() -> Iterator[threading.Event]:
    """
    Turn the first Ctrl-C into a cancel event; a second one interrupts hard.

    Signal handlers can only be installed from the main thread; elsewhere the
    event is simply never set by a signal.
    """
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        cancel.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


# Artifacts

@artifact_app.command("list")
def artifact_list(
    ctx: typer.Context,
    limit: int = typer.Option(0, "--limit", help="Maximum number of artifacts (0 = server default)"),
    page: Optional[str] = typer.Option(None, "--page", help="Page token from a previous listing"),
    filter_: Optional[str] = typer.Option(None, "--filter", help="Filter expression"),
    order_by: Optional[str] = typer.Option(None, "--order-by", help="Field to order by"),
    desc: bool = typer.Option(False, "--desc", help="Descending order"),
    at_time: Optional[datetime] = typer.Option(None, "--at-time", help="List artifacts as of this time"),
) -> None:
    """List artifacts."""

    def _list() -> None:
        req = ListRequest(limit=limit, page=page, filter=filter_, order_by=order_by, order_desc=desc,
                          at_time=at_time)
        with _operations(ctx) as (ops, context):
            print_artifact_table(ops.list_artifacts(req), context.output)

    run_and_exit(_list)


@artifact_app.command("get")
def artifact_get(
    ctx: typer.Context,
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
) -> None:
    """Show an artifact record."""

    def _get() -> None:
        with _operations(ctx) as (ops, context):
            print_artifact(ops.read_artifact(artifact_id), context.output)

    run_and_exit(_get)


@artifact_app.command("create")
def artifact_create(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="File to upload, '-' for stdin"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Human friendly name"),
    content_type: Optional[str] = typer.Option(None, "--content-type", "-t", help="Content type (guessed from file name)"),
    collection: Optional[str] = typer.Option(None, "--collection", "-c", help="Collection to add the artifact to"),
    policy: Optional[str] = typer.Option(None, "--policy", "-p", help="Access policy URN"),
    meta: List[str] = typer.Option([], "--meta", "-m", help="Extra metadata as key=value (repeatable)"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", help="Fragment size in bytes, negative for a single request"),
) -> None:
    """Create an artifact and upload its content."""

    def _create() -> None:
        req = CreateArtifactRequest(name=name, collection=collection, policy=policy, meta=_parse_meta(meta))
        with _operations(ctx) as (ops, context):
            record, result = ops.create_artifact(req, file, content_type=content_type, chunk_size=chunk_size)
            print_upload_result(record.id, result, context.output)

    run_and_exit(_create)


@artifact_app.command("upload")
def artifact_upload(
    ctx: typer.Context,
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    file: str = typer.Argument(..., help="File to upload, '-' for stdin"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", help="Fragment size in bytes, negative for a single request"),
) -> None:
    """Upload (or resume uploading) content for an existing artifact."""

    def _upload() -> None:
        with _operations(ctx) as (ops, context):
            result = ops.upload_artifact(artifact_id, file, chunk_size=chunk_size)
            print_upload_result(artifact_id, result, context.output)

    run_and_exit(_upload)


@artifact_app.command("download")
def artifact_download(
    ctx: typer.Context,
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    out: str = typer.Option("-", "--file", "-f", help="Destination file, '-' for stdout"),
) -> None:
    """Download artifact content."""

    def _download() -> None:
        with _operations(ctx) as (ops, _):
            written = ops.download_artifact(artifact_id, out)
            print_download_summary(artifact_id, written, out)

    run_and_exit(_download)


@artifact_app.command("add-metadata")
def artifact_add_metadata(
    ctx: typer.Context,
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    schema: str = typer.Argument(..., help="Metadata schema, e.g. urn:example:schema:survey.1"),
    file: str = typer.Option("-", "--file", "-f", help="JSON document with the metadata, '-' for stdin"),
) -> None:
    """Attach schema-tagged JSON metadata to an artifact."""

    def _add() -> None:
        with _operations(ctx) as (ops, context):
            reply = ops.add_artifact_metadata(artifact_id, schema, file)
            print_artifact_update(artifact_id, f"added '{schema}' metadata", reply, context.output)

    run_and_exit(_add)


@artifact_app.command("add-to-collection")
def artifact_add_to_collection(
    ctx: typer.Context,
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    collection: str = typer.Argument(..., help="Collection name"),
) -> None:
    """Add an artifact to a collection."""

    def _add() -> None:
        with _operations(ctx) as (ops, context):
            reply = ops.add_artifact_to_collection(artifact_id, collection)
            print_artifact_update(artifact_id, f"added to collection '{collection}'", reply, context.output)

    run_and_exit(_add)


@artifact_app.command("remove-from-collection")
def artifact_remove_from_collection(
    ctx: typer.Context,
    artifact_id: str = typer.Argument(..., help="Artifact ID"),
    collection: str = typer.Argument(..., help="Collection name"),
) -> None:
    """Remove an artifact from a collection."""

    def _remove() -> None:
        with _operations(ctx) as (ops, context):
            ops.remove_artifact_from_collection(artifact_id, collection)
            print_artifact_update(artifact_id, f"removed from collection '{collection}'", output=context.output)

    run_and_exit(_remove)


# Packages

@package_app.command("list")
def package_list(
    ctx: typer.Context,
    tag: Optional[str] = typer.Argument(None, help="Only list this tag"),
) -> None:
    """List packages."""

    def _list() -> None:
        with _operations(ctx) as (ops, context):
            print_package_list(ops.list_packages(tag), context.output)

    run_and_exit(_list)


@package_app.command("push")
def package_push(
    ctx: typer.Context,
    tag: str = typer.Argument(..., help="Image tag, e.g. myimage:1.0 or registry.example.org/team/app:2"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing package tag"),
    local: bool = typer.Option(False, "--local", "-l", help="Read the image from the local docker daemon"),
    archive: Optional[str] = typer.Option(None, "--archive", help="Read the image from a 'docker save' tarball"),
) -> None:
    """Push a container image as a package."""

    def _push() -> None:
        with _operations(ctx) as (ops, context):
            result = ops.push_package(tag, force=force, local=local, archive=archive)
            print_push_result(result, context.output)

    run_and_exit(_push)


@package_app.command("pull")
def package_pull(
    ctx: typer.Context,
    tag: str = typer.Argument(..., help="Package tag"),
    resume: bool = typer.Option(False, "--resume", help="Continue partially pulled layers"),
) -> None:
    """Pull a package into the local docker daemon."""

    def _pull() -> None:
        with _operations(ctx) as (ops, context), _cancel_on_interrupt() as cancel:
            result = ops.pull_package(tag, resume=resume, cancel=cancel)
            print_pull_result(result, context.output)

    run_and_exit(_pull)


@package_app.command("remove")
def package_remove(
    ctx: typer.Context,
    tag: str = typer.Argument(..., help="Package tag"),
) -> None:
    """Remove a package."""

    def _remove() -> None:
        with _operations(ctx) as (ops, context):
            ops.remove_package(tag)
            print_package_removed(tag, context.output)

    run_and_exit(_remove)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
