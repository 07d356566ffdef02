from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path

import typer

from .errors import MalformedArchive, PersistenceError
from .fetcher import (
    DEFAULT_CONCURRENCY,
    DEFAULT_PROXY_URL,
    DEFAULT_TIMEOUT_SECONDS,
    AssetFetchConfig,
)
from .generator import SampleArchiveConfig, write_sample_archive
from .importer import import_archive, recache_assets
from .parser import MAX_BATCH_SIZE
from .plugins import PluginRegistry, load_plugins
from .storage import SQLiteStore, dump_json, validate_db

app = typer.Typer(add_completion=False)

_PKG_VERSION = __import__("slack_export_viewer").__version__

DEFAULT_DB = "./data/viewer.db"
DB_OPTION_HELP = "SQLite DB path"


def _resolve_plugins(modules: list[str] | None) -> PluginRegistry | None:
    if not modules:
        return None
    return load_plugins(modules)


def _resolve_workspace(store: SQLiteStore, workspace_id: str | None) -> str:
    resolved = workspace_id or store.latest_workspace_id()
    if not resolved:
        raise typer.BadParameter("No workspaces found in DB; import an export first.")
    if not store.get_workspace(resolved):
        raise typer.BadParameter(f"Workspace not found: {resolved}")
    return resolved


def _fetch_config(
    *, token: str | None, proxy_url: str, concurrency: int, timeout: float, enabled: bool = True
) -> AssetFetchConfig:
    if concurrency < 1:
        raise typer.BadParameter("concurrency must be >= 1")
    if timeout <= 0:
        raise typer.BadParameter("timeout must be > 0")
    return AssetFetchConfig(
        token=token or None,
        proxy_url=proxy_url,
        concurrency=concurrency,
        timeout_seconds=timeout,
        enabled=enabled,
    )


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING", envvar="SLACK_VIEWER_LOG_LEVEL", help="Logging level (DEBUG, INFO, ...)"
    ),
) -> None:
    """Import Slack export archives into a local store and browse them offline."""
    level = logging.getLevelName(log_level.strip().upper())
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command("import")
def import_cmd(
    archive: str = typer.Argument(..., help="Slack export .zip"),
    db: str = typer.Option(DEFAULT_DB, envvar="SLACK_VIEWER_DB", help=DB_OPTION_HELP),
    name: str | None = typer.Option(None, help="Workspace name (defaults to archive file name)"),
    token: str | None = typer.Option(
        None, envvar="SLACK_VIEWER_TOKEN", help="Bearer token used through the asset proxy"
    ),
    proxy_url: str = typer.Option(
        DEFAULT_PROXY_URL, envvar="SLACK_VIEWER_PROXY_URL", help="Base URL serving /proxy"
    ),
    cache_files: bool = typer.Option(
        True, "--cache-files/--no-cache-files", help="Cache image/video/PDF attachments"
    ),
    concurrency: int = typer.Option(DEFAULT_CONCURRENCY, help="Concurrent asset fetches"),
    timeout: float = typer.Option(DEFAULT_TIMEOUT_SECONDS, help="Per-asset fetch timeout (s)"),
    batch_size: int = typer.Option(MAX_BATCH_SIZE, help="Messages per bulk insert"),
    plugin: list[str] | None = typer.Option(None, help="Import hook module (repeatable)"),
    json_out: str | None = typer.Option(None, help="Write import summary JSON path"),
) -> None:
    """Import a Slack export zip as a new workspace."""
    if batch_size < 1:
        raise typer.BadParameter("batch-size must be >= 1")
    if not Path(archive).exists():
        raise typer.BadParameter(f"Archive not found: {archive}")

    config = _fetch_config(
        token=token,
        proxy_url=proxy_url,
        concurrency=concurrency,
        timeout=timeout,
        enabled=cache_files,
    )
    plugins = _resolve_plugins(plugin)

    store = SQLiteStore(db)
    try:
        try:
            result = asyncio.run(
                import_archive(
                    store,
                    archive,
                    name=name,
                    fetch_config=config,
                    plugins=plugins,
                    batch_size=batch_size,
                )
            )
        except (MalformedArchive, PersistenceError) as exc:
            typer.echo(f"Import failed: {exc}", err=True)
            raise typer.Exit(code=1) from exc

        summary = result.to_dict()
        if json_out:
            dump_json(json_out, summary)
        typer.echo(f"Imported workspace {result.workspace_name} ({result.workspace_id}) into {db}")
        typer.echo(
            f"- users: {result.users}\n- channels: {result.channels}\n"
            f"- messages: {result.messages} in {result.batches} batches"
        )
        if result.dropped_users or result.dropped_channels:
            typer.echo(
                f"- dropped entries: {result.dropped_users} users, "
                f"{result.dropped_channels} channels"
            )
        if result.skipped_entries:
            typer.echo(f"- skipped entries: {len(result.skipped_entries)}")
        if result.assets_discovered:
            typer.echo(
                f"- files cached: {len(result.assets.cached)}/{result.assets_discovered}"
            )
    finally:
        store.close()


@app.command("cache-assets")
def cache_assets_cmd(
    db: str = typer.Option(DEFAULT_DB, envvar="SLACK_VIEWER_DB", help=DB_OPTION_HELP),
    workspace_id: str | None = typer.Option(
        None, help="Workspace id (defaults to most recently imported workspace)"
    ),
    token: str | None = typer.Option(
        None, envvar="SLACK_VIEWER_TOKEN", help="Bearer token used through the asset proxy"
    ),
    proxy_url: str = typer.Option(
        DEFAULT_PROXY_URL, envvar="SLACK_VIEWER_PROXY_URL", help="Base URL serving /proxy"
    ),
    concurrency: int = typer.Option(DEFAULT_CONCURRENCY, help="Concurrent asset fetches"),
    timeout: float = typer.Option(DEFAULT_TIMEOUT_SECONDS, help="Per-asset fetch timeout (s)"),
) -> None:
    """Fetch attachments of an imported workspace that are not cached yet."""
    config = _fetch_config(
        token=token, proxy_url=proxy_url, concurrency=concurrency, timeout=timeout
    )
    store = SQLiteStore(db)
    try:
        resolved = _resolve_workspace(store, workspace_id)
        report = asyncio.run(recache_assets(store, resolved, config))
        typer.echo(
            f"Cached {len(report.cached)} files ({len(report.failed)} failed) for {resolved}"
        )
    finally:
        store.close()


@app.command()
def workspaces(
    db: str = typer.Option(DEFAULT_DB, envvar="SLACK_VIEWER_DB", help=DB_OPTION_HELP),
) -> None:
    """List imported workspaces, newest first."""
    store = SQLiteStore(db)
    try:
        rows = store.list_workspaces()
    finally:
        store.close()
    if not rows:
        typer.echo("No workspaces imported.")
        return
    for row in rows:
        imported_at = datetime.fromtimestamp(int(row["imported_at"]), tz=UTC).isoformat()
        typer.echo(f"{row['id']}  {row['name']}  {imported_at}")


@app.command()
def stats(
    db: str = typer.Option(DEFAULT_DB, envvar="SLACK_VIEWER_DB", help=DB_OPTION_HELP),
    workspace_id: str | None = typer.Option(
        None, help="Workspace id (defaults to most recently imported workspace)"
    ),
    json_out: str | None = typer.Option(None, help="Write summary JSON path"),
) -> None:
    """Print workspace counts (and optionally write summary JSON)."""
    store = SQLiteStore(db)
    try:
        resolved = _resolve_workspace(store, workspace_id)
        summary = store.export_summary(resolved)
        if json_out:
            dump_json(json_out, summary)

        workspace = summary["workspace"]
        counts = summary["counts"]
        if not isinstance(workspace, dict) or not isinstance(counts, dict):
            raise RuntimeError("unexpected summary shape")

        typer.echo(f"Workspace: {workspace.get('name')} ({workspace.get('id')})")
        imported_at = workspace.get("imported_at")
        if isinstance(imported_at, int):
            typer.echo(f"Imported: {datetime.fromtimestamp(imported_at, tz=UTC).isoformat()}")
        typer.echo("Counts:")
        for key in ("users", "channels", "messages", "file_cache"):
            typer.echo(f"- {key}: {counts.get(key)}")
        if json_out:
            typer.echo(f"Wrote summary JSON to: {json_out}")
    finally:
        store.close()


@app.command()
def messages(
    channel: str = typer.Argument(..., help="Channel name or origin channel id"),
    db: str = typer.Option(DEFAULT_DB, envvar="SLACK_VIEWER_DB", help=DB_OPTION_HELP),
    workspace_id: str | None = typer.Option(
        None, help="Workspace id (defaults to most recently imported workspace)"
    ),
    limit: int = typer.Option(50, help="Maximum messages to print"),
    as_json: bool = typer.Option(False, "--json", help="Print rows as JSON lines"),
) -> None:
    """Print a channel's messages, oldest first."""
    store = SQLiteStore(db)
    try:
        resolved = _resolve_workspace(store, workspace_id)
        found = store.get_channel(resolved, channel)
        if found is None:
            by_name = [c for c in store.list_channels(resolved) if c["name"] == channel]
            found = by_name[0] if by_name else None
        if found is None:
            raise typer.BadParameter(f"Channel not found: {channel}")

        users = {str(u["slack_id"]): str(u["name"]) for u in store.list_users(resolved, 100_000, 0)}
        rows, _ = store.list_messages_page(resolved, str(found["slack_id"]), limit=limit)
        for row in rows:
            if as_json:
                typer.echo(json.dumps(row, ensure_ascii=False))
                continue
            author = users.get(str(row.get("user")), row.get("username") or row.get("user") or "?")
            typer.echo(f"[{row['ts']}] {author}: {row['text']}")
    finally:
        store.close()


@app.command()
def delete(
    workspace_id: str = typer.Argument(..., help="Workspace id to delete"),
    db: str = typer.Option(DEFAULT_DB, envvar="SLACK_VIEWER_DB", help=DB_OPTION_HELP),
) -> None:
    """Delete a workspace and everything imported with it."""
    store = SQLiteStore(db)
    try:
        try:
            deleted = store.delete_workspace(workspace_id)
        except PersistenceError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1) from exc
        if deleted is None:
            raise typer.BadParameter(f"Workspace not found: {workspace_id}")
        typer.echo(f"Deleted workspace {workspace_id}: {json.dumps(deleted)}")
    finally:
        store.close()


@app.command("sample-archive")
def sample_archive(
    out: str = typer.Option("./sample_export.zip", help="Output .zip path"),
    workspace: str = typer.Option("Sample Workspace", help="Workspace name"),
    users: int = typer.Option(25, help="Number of users"),
    channels: int = typer.Option(6, help="Number of channels"),
    messages_count: int = typer.Option(2_000, "--messages", help="Number of messages"),
    files: int = typer.Option(50, help="Messages carrying a file attachment"),
    days: int = typer.Option(30, help="Days of history"),
    seed: int = typer.Option(42, help="Random seed"),
    wrap_folder: str | None = typer.Option(None, help="Nest the export inside this folder"),
    force: bool = typer.Option(False, help="Overwrite an existing file"),
) -> None:
    """Write a synthetic Slack export zip."""
    counts = (
        ("users", users),
        ("channels", channels),
        ("messages", messages_count),
        ("files", files),
    )
    for label, value in counts:
        if value < 0:
            raise typer.BadParameter(f"{label} must be >= 0")
    if days < 1:
        raise typer.BadParameter("days must be >= 1")
    if Path(out).exists() and not force:
        raise typer.BadParameter(f"File already exists: {out}")

    summary = write_sample_archive(
        out,
        SampleArchiveConfig(
            workspace_name=workspace,
            users=users,
            channels=channels,
            messages=messages_count,
            files=files,
            seed=seed,
            days=days,
            wrap_folder=wrap_folder,
        ),
    )
    typer.echo(f"Wrote sample export to: {out} ({json.dumps(summary)})")


@app.command()
def serve(
    db: str = typer.Option(DEFAULT_DB, envvar="SLACK_VIEWER_DB", help=DB_OPTION_HELP),
    host: str = typer.Option("127.0.0.1", help="Host"),
    port: int = typer.Option(8080, help="Port"),
    validate_db_before_start: bool = typer.Option(
        False, "--validate-db", help="Validate DB compatibility before starting server"
    ),
) -> None:
    """Run the FastAPI server (read API, /proxy and /ogp)."""
    import os

    import uvicorn

    if validate_db_before_start:
        report = validate_db(db, tool_version=_PKG_VERSION)
        if not report.get("ok"):
            typer.echo(json.dumps(report, indent=2, ensure_ascii=False))
            raise typer.Exit(code=1)

    os.environ["SLACK_VIEWER_DB"] = db
    uvicorn.run("slack_export_viewer.api:app", host=host, port=port, reload=False)


@app.command("validate-db")
def validate_db_cmd(
    db: str = typer.Option(DEFAULT_DB, envvar="SLACK_VIEWER_DB", help=DB_OPTION_HELP),
    workspace_id: str | None = typer.Option(
        None, help="Workspace id (defaults to most recently imported workspace)"
    ),
    require_workspace: bool = typer.Option(
        False, help="Fail validation when DB contains no workspaces"
    ),
    out: str | None = typer.Option(None, help="Write validation report JSON path"),
    quiet: bool = typer.Option(False, help="Do not print report JSON to stdout"),
) -> None:
    """Validate that a SQLite DB appears compatible with this importer."""
    report = validate_db(
        db,
        workspace_id=workspace_id,
        require_workspace=require_workspace,
        tool_version=_PKG_VERSION,
    )
    if out:
        dump_json(out, report)
    if not quiet:
        typer.echo(json.dumps(report, indent=2, ensure_ascii=False))
    if not report.get("ok"):
        raise typer.Exit(code=1)
