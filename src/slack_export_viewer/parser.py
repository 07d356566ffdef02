from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .archive import ExportArchive
from .errors import EntryParseError
from .models import AssetRef, Channel, Message
from .plugins import PluginRegistry

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10_000

CACHEABLE_MIME_PREFIXES = ("image/", "video/")
CACHEABLE_MIME_TYPES = {"application/pdf"}


def is_cacheable_mimetype(mimetype: str) -> bool:
    return mimetype.startswith(CACHEABLE_MIME_PREFIXES) or mimetype in CACHEABLE_MIME_TYPES


def collect_assets(files: object, into: dict[str, AssetRef]) -> None:
    """Record cacheable file attachments of one message, keyed by file id."""
    if not isinstance(files, list):
        return
    for item in files:
        if not isinstance(item, dict):
            continue
        file_id = item.get("id")
        url = item.get("url_private")
        mimetype = item.get("mimetype")
        if not (file_id and url and mimetype):
            continue
        if not isinstance(mimetype, str) or not is_cacheable_mimetype(mimetype):
            continue
        into[str(file_id)] = AssetRef(url=str(url), mimetype=mimetype)


def _opt_str(value: object) -> str | None:
    return None if value is None else str(value)


def build_message(raw: dict[str, Any], workspace_id: str, channel_id: str) -> Message:
    files = raw.get("files")
    return Message(
        workspace_id=workspace_id,
        channel_id=channel_id,
        ts=str(raw.get("ts", "")),
        type=str(raw.get("type") or "message"),
        text=str(raw.get("text") or ""),
        subtype=_opt_str(raw.get("subtype")),
        user=_opt_str(raw.get("user")),
        bot_id=_opt_str(raw.get("bot_id")),
        username=_opt_str(raw.get("username")),
        thread_ts=_opt_str(raw.get("thread_ts")),
        files=[f for f in files if isinstance(f, dict)] if isinstance(files, list) else None,
        data={k: v for k, v in raw.items() if k != "id"},
    )


class MessageBatcher:
    """Accumulates messages and cuts a batch every ``max_size`` items."""

    def __init__(self, max_size: int = MAX_BATCH_SIZE) -> None:
        if max_size < 1:
            raise ValueError("batch size must be >= 1")
        self.max_size = max_size
        self.batches: list[list[Message]] = []
        self._current: list[Message] = []

    def extend(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self._current.append(message)
            if len(self._current) >= self.max_size:
                self.batches.append(self._current)
                self._current = []

    def finish(self) -> list[list[Message]]:
        if self._current:
            self.batches.append(self._current)
            self._current = []
        return self.batches


@dataclass
class ParseOutcome:
    batches: list[list[Message]]
    assets: dict[str, AssetRef]
    entries_parsed: int = 0
    skipped_entries: list[str] = field(default_factory=list)

    @property
    def message_count(self) -> int:
        return sum(len(batch) for batch in self.batches)


class MessageStreamParser:
    """Walks ``<channel>/<day>.json`` entries and tags their messages.

    Directories resolve to channels by name; stored messages carry the
    channel's origin id.
    """

    def __init__(
        self,
        workspace_id: str,
        channels: Iterable[Channel],
        *,
        batch_size: int = MAX_BATCH_SIZE,
        plugins: PluginRegistry | None = None,
    ) -> None:
        self.workspace_id = workspace_id
        self.plugins = plugins
        self.batcher = MessageBatcher(batch_size)
        self.assets: dict[str, AssetRef] = {}
        self._channel_ids: dict[str, str] = {}
        for channel in channels:
            self._channel_ids.setdefault(channel.name, channel.slack_id)

    async def _parse_entry(self, archive: ExportArchive, name: str, channel_id: str) -> int:
        await asyncio.sleep(0)
        raw_messages = archive.read_entry_array(name)
        messages: list[Message] = []
        assets: dict[str, AssetRef] = {}
        for raw in raw_messages:
            if not isinstance(raw, dict):
                continue
            payload = self.plugins.on_message(dict(raw)) if self.plugins else raw
            if payload is None:
                continue
            collect_assets(payload.get("files"), assets)
            messages.append(build_message(payload, self.workspace_id, channel_id))
        # Whole entry parsed: only now does it contribute.
        self.batcher.extend(messages)
        self.assets.update(assets)
        return len(messages)

    async def run(self, archive: ExportArchive) -> ParseOutcome:
        jobs: list[tuple[str, asyncio.Task[int]]] = []
        for channel_dir, name in archive.iter_message_entries():
            channel_id = self._channel_ids.get(channel_dir)
            if channel_id is None:
                continue
            jobs.append((name, asyncio.create_task(self._parse_entry(archive, name, channel_id))))

        results = await asyncio.gather(*(task for _, task in jobs), return_exceptions=True)

        outcome = ParseOutcome(batches=[], assets=self.assets)
        for (name, _), result in zip(jobs, results, strict=True):
            if isinstance(result, EntryParseError):
                logger.warning("Skipping unparsable export entry %s", result)
                outcome.skipped_entries.append(name)
            elif isinstance(result, Exception):
                logger.warning("Skipping export entry %s: %r", name, result)
                outcome.skipped_entries.append(name)
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome.entries_parsed += 1
        outcome.batches = self.batcher.finish()
        logger.info(
            "Parsed %d entries (%d skipped) into %d batches",
            outcome.entries_parsed,
            len(outcome.skipped_entries),
            len(outcome.batches),
        )
        return outcome
