from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from . import __version__
from .archive import ExportArchive
from .errors import PersistenceError
from .fetcher import AssetCacheReport, AssetFetchConfig, cache_assets
from .models import AssetRef, Message
from .normalizer import (
    new_workspace,
    normalize_channels,
    normalize_users,
    workspace_name_from_source,
)
from .parser import MAX_BATCH_SIZE, MessageStreamParser, collect_assets
from .plugins import PluginRegistry
from .storage import SCHEMA_VERSION, SQLiteStore

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    workspace_id: str
    workspace_name: str
    users: int = 0
    channels: int = 0
    messages: int = 0
    batches: int = 0
    dropped_users: int = 0
    dropped_channels: int = 0
    skipped_entries: list[str] = field(default_factory=list)
    assets_discovered: int = 0
    assets: AssetCacheReport = field(default_factory=AssetCacheReport)

    def to_dict(self) -> dict[str, object]:
        return {
            "workspace_id": self.workspace_id,
            "workspace_name": self.workspace_name,
            "users": self.users,
            "channels": self.channels,
            "messages": self.messages,
            "batches": self.batches,
            "dropped_users": self.dropped_users,
            "dropped_channels": self.dropped_channels,
            "skipped_entries": self.skipped_entries,
            "assets_discovered": self.assets_discovered,
            "assets_cached": len(self.assets.cached),
            "assets_failed": len(self.assets.failed),
        }


async def import_archive(
    store: SQLiteStore,
    source: str | Path | bytes,
    *,
    name: str | None = None,
    fetch_config: AssetFetchConfig | None = None,
    plugins: PluginRegistry | None = None,
    batch_size: int = MAX_BATCH_SIZE,
    http_client: httpx.AsyncClient | None = None,
) -> ImportResult:
    """Import a Slack export zip into ``store`` as a new workspace.

    Raises MalformedArchive before anything is written when users.json or
    channels.json is missing or invalid, and PersistenceError when a write
    fails. Asset caching never affects the outcome.
    """
    if name is None:
        name = "workspace" if isinstance(source, bytes) else workspace_name_from_source(source)

    with ExportArchive.open(source) as archive:
        raw_users = archive.read_required_array(archive.users_path)
        raw_channels = archive.read_required_array(archive.channels_path)

        workspace = new_workspace(name)
        users = normalize_users(raw_users, workspace.id, plugins)
        channels = normalize_channels(raw_channels, workspace.id, plugins)
        result = ImportResult(
            workspace_id=workspace.id,
            workspace_name=workspace.name,
            users=len(users),
            channels=len(channels),
            dropped_users=len(raw_users) - len(users),
            dropped_channels=len(raw_channels) - len(channels),
        )

        store.insert_workspace(workspace)
        try:
            store.insert_users(users)
            store.insert_channels(channels)
            parser = MessageStreamParser(
                workspace.id, channels, batch_size=batch_size, plugins=plugins
            )
            outcome = await parser.run(archive)
            _write_messages(store, outcome.batches, result)
            result.skipped_entries = outcome.skipped_entries
            result.assets_discovered = len(outcome.assets)
            store.set_workspace_meta(workspace.id, _workspace_meta(name, source, result))
        except PersistenceError:
            logger.error("Import failed; removing partial workspace %s", workspace.id)
            store.delete_workspace(workspace.id)
            raise

    config = fetch_config or AssetFetchConfig()
    if config.enabled and outcome.assets:
        result.assets = await cache_assets(
            store, workspace.id, outcome.assets, config, client=http_client
        )

    logger.info(
        "Imported workspace %s (%s): %d users, %d channels, %d messages",
        workspace.id,
        workspace.name,
        result.users,
        result.channels,
        result.messages,
    )
    return result


def _write_messages(
    store: SQLiteStore, batches: list[list[Message]], result: ImportResult
) -> None:
    for index, batch in enumerate(batches, start=1):
        result.messages += store.insert_messages(batch)
        result.batches = index
        logger.debug("Wrote message batch %d/%d (%d rows)", index, len(batches), len(batch))


def _workspace_meta(name: str, source: str | Path | bytes, result: ImportResult) -> dict:
    return {
        "importer": "slack-export-viewer",
        "importer_version": __version__,
        "schema_version": SCHEMA_VERSION,
        "source": name if isinstance(source, bytes) else str(source),
        "counts": {
            "users": result.users,
            "channels": result.channels,
            "messages": result.messages,
        },
        "dropped": {"users": result.dropped_users, "channels": result.dropped_channels},
        "skipped_entries": result.skipped_entries,
        "assets_discovered": result.assets_discovered,
    }


def discover_stored_assets(store: SQLiteStore, workspace_id: str) -> dict[str, AssetRef]:
    """Rebuild the cacheable asset mapping from messages already in the store."""
    assets: dict[str, AssetRef] = {}
    for row in store.iter_messages(workspace_id):
        collect_assets(row.get("files"), assets)
    return assets


async def recache_assets(
    store: SQLiteStore,
    workspace_id: str,
    config: AssetFetchConfig,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> AssetCacheReport:
    """Retry caching for assets of an imported workspace that have no cache row yet."""
    cached = store.cached_file_ids(workspace_id)
    pending = {
        file_id: asset
        for file_id, asset in discover_stored_assets(store, workspace_id).items()
        if file_id not in cached
    }
    logger.info("%d assets pending for workspace %s", len(pending), workspace_id)
    return await cache_assets(store, workspace_id, pending, config, client=http_client)
