"""
CLI interface for diaryindex.

Usage:
    diaryindex put u1 "Walked by the river today."
    diaryindex set u1 ai.enabled true
    diaryindex build u1 --full
    diaryindex stats u1
"""

import json
import os
import select
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import DiaryIndex
from .errors import DiaryIndexError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .settings_store import parse_setting
from .types import BuildResult, VectorStats


def _has_stdin_data() -> bool:
    """Check if stdin has data available without blocking."""
    if sys.stdin.isatty():
        return False
    try:
        ready, _, _ = select.select([sys.stdin], [], [], 0)
        return bool(ready)
    except (ValueError, OSError):
        return False


# Quiet by default; DIARYINDEX_VERBOSE=1 enables debug output
if os.environ.get("DIARYINDEX_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"diaryindex {version('diaryindex')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="diaryindex",
    help="Incremental embedding index for diary entries.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="DIARYINDEX_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Incremental embedding index for diary entries."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="DIARYINDEX_STORE_PATH",
        help="Path to the store directory (default: ~/.diaryindex/)"
    )
]

UserArgument = Annotated[str, typer.Argument(help="User id owning the entries")]


def _get_index(store: Optional[Path]) -> DiaryIndex:
    """Open the store, exiting cleanly on failure."""
    actual_store = store if store is not None else _get_store_override()
    try:
        return DiaryIndex(actual_store)
    except (DiaryIndexError, ValueError, OSError) as e:
        typer.echo(f"Error: cannot open store: {e}", err=True)
        raise typer.Exit(1)


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2))


def _format_build(result: BuildResult) -> str:
    lines = [
        f"requested: {result.requested}",
        f"success:   {result.success}",
        f"failed:    {result.failed}",
        f"skipped:   {result.skipped}",
        f"removed:   {result.removed}",
    ]
    for failure in result.errors:
        lines.append(f"  ! {failure.entry_id}: {failure.cause}")
    return "\n".join(lines)


def _format_stats(stats: VectorStats) -> str:
    return "\n".join(f"{k}: {v}" for k, v in stats.to_dict().items())


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def put(
    user: UserArgument,
    content: Annotated[Optional[str], typer.Argument(
        help="Entry text ('-' or omitted reads stdin)"
    )] = None,
    id: Annotated[Optional[str], typer.Option(
        "--id", "-i",
        help="Entry id to update (default: new entry)"
    )] = None,
    store: StoreOption = None,
):
    """Create or update a diary entry. Waits for the resulting index build."""
    if content is None or content == "-":
        if content == "-" or _has_stdin_data():
            content = sys.stdin.read()
        else:
            typer.echo("Error: no content given", err=True)
            raise typer.Exit(1)

    kp = _get_index(store)
    try:
        entry = kp.put_entry(user, content, id=id)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        kp.close()

    if _get_json_output():
        _echo_json(entry.to_dict())
    else:
        typer.echo(entry.id)


@app.command()
def delete(
    user: UserArgument,
    id: Annotated[str, typer.Argument(help="Entry id")],
    store: StoreOption = None,
):
    """Delete a diary entry and its vector."""
    kp = _get_index(store)
    try:
        deleted = kp.delete_entry(user, id)
    finally:
        kp.close()
    if not deleted:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted: {id}", err=True)


@app.command("list")
def list_cmd(
    user: UserArgument,
    store: StoreOption = None,
):
    """List a user's diary entries."""
    kp = _get_index(store)
    try:
        entries = kp.list_entries(user)
    finally:
        kp.close()

    if _get_json_output():
        _echo_json([e.to_dict() for e in entries])
        return
    for entry in entries:
        first_line = entry.content.strip().splitlines()[0] if entry.content.strip() else ""
        typer.echo(f"{entry.id} {entry.updated_at[:10]} {first_line[:80]}")


@app.command()
def build(
    user: UserArgument,
    full: Annotated[bool, typer.Option(
        "--full",
        help="Discard stored vectors and embed every entry again"
    )] = False,
    store: StoreOption = None,
):
    """Build the user's vectors now (incremental unless --full)."""
    kp = _get_index(store)
    try:
        result = kp.build(user, full=full)
    except DiaryIndexError as e:
        typer.echo(f"Error: failed to build vectors: {e}", err=True)
        raise typer.Exit(1)
    finally:
        kp.close()

    if _get_json_output():
        _echo_json(result.to_dict())
    else:
        typer.echo(_format_build(result))
    if result.failed:
        raise typer.Exit(2)


@app.command()
def stats(
    user: UserArgument,
    store: StoreOption = None,
):
    """Show how many entries are indexed, outdated, or pending."""
    kp = _get_index(store)
    try:
        result = kp.stats(user)
    finally:
        kp.close()

    if _get_json_output():
        _echo_json(result.to_dict())
    else:
        typer.echo(_format_stats(result))


@app.command("set")
def set_cmd(
    user: UserArgument,
    key: Annotated[str, typer.Argument(help="Setting key, e.g. ai.enabled")],
    value: Annotated[str, typer.Argument(help="New value")],
    store: StoreOption = None,
):
    """Change a per-user setting."""
    try:
        parsed = parse_setting(key, value)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    kp = _get_index(store)
    try:
        kp.set_setting(user, key, parsed)
    finally:
        kp.close()
    typer.echo(f"{key} updated", err=True)


@app.command()
def settings(
    user: UserArgument,
    store: StoreOption = None,
):
    """Show a user's settings (secrets masked)."""
    kp = _get_index(store)
    try:
        values = kp.settings(user)
    finally:
        kp.close()

    if _get_json_output():
        _echo_json(values)
    else:
        for key, value in values.items():
            typer.echo(f"{key}: {json.dumps(value)}")


@app.command()
def config(
    store: StoreOption = None,
):
    """Show the store location and build configuration."""
    kp = _get_index(store)
    try:
        cfg = kp.config
    finally:
        kp.close()

    data = {
        "store": str(cfg.path),
        "file": str(cfg.config_path),
        "build": {
            "timeout_seconds": cfg.build.timeout_seconds,
            "max_workers": cfg.build.max_workers,
        },
        "embedding": {"request_timeout": cfg.embedding.request_timeout},
    }
    if _get_json_output():
        _echo_json(data)
    else:
        typer.echo(f"store: {data['store']}")
        typer.echo(f"file: {data['file']}")
        for section in ("build", "embedding"):
            for key, value in data[section].items():
                typer.echo(f"{section}.{key}: {value}")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="diaryindex CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
