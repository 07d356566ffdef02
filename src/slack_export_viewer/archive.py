from __future__ import annotations

import io
import json
import re
import zipfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from .errors import EntryParseError, MalformedArchive

USERS_FILE = "users.json"
CHANNELS_FILE = "channels.json"

_SEPARATORS = re.compile(r"[/\\]")


def _load_json(raw: bytes) -> Any:
    payload = json.loads(raw.decode("utf-8"))
    # json.loads accepts lone surrogate escapes (\ud800) that cannot be stored as UTF-8.
    json.dumps(payload, ensure_ascii=False).encode("utf-8")
    return payload


class ExportArchive:
    """Read-only view over a Slack export zip.

    Entries are decompressed only when read. Exports wrapped in a single
    top-level folder are supported through the root prefix, which is the
    directory part of the first entry ending in ``users.json``.
    """

    def __init__(self, handle: zipfile.ZipFile) -> None:
        self._zip = handle
        self._entries = {info.filename: info for info in handle.infolist() if not info.is_dir()}
        self.users_path = self._find_users_path()
        self.root = self.users_path[: -len(USERS_FILE)]
        self.channels_path = self.root + CHANNELS_FILE
        if self.channels_path not in self._entries:
            raise MalformedArchive(f"Invalid Slack export: missing {CHANNELS_FILE}")

    @classmethod
    def open(cls, source: str | Path | bytes) -> ExportArchive:
        try:
            if isinstance(source, bytes):
                handle = zipfile.ZipFile(io.BytesIO(source))
            else:
                handle = zipfile.ZipFile(source)
        except (zipfile.BadZipFile, OSError) as exc:
            raise MalformedArchive(f"Not a readable zip archive: {exc}") from exc
        try:
            return cls(handle)
        except MalformedArchive:
            handle.close()
            raise

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> ExportArchive:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    def _find_users_path(self) -> str:
        for name in self._entries:
            if name.endswith(USERS_FILE):
                return name
        raise MalformedArchive(f"Invalid Slack export: missing {USERS_FILE}")

    def names(self) -> list[str]:
        return list(self._entries)

    def read_bytes(self, name: str) -> bytes:
        return self._zip.read(self._entries[name])

    def relative_path(self, name: str) -> str:
        if self.root and name.startswith(self.root):
            return name[len(self.root) :]
        return name

    def read_required_array(self, name: str) -> list[Any]:
        """Parse one of the top-level files; any failure is fatal."""
        try:
            payload = _load_json(self.read_bytes(name))
        except ValueError as exc:
            raise MalformedArchive(f"Invalid JSON in {name}: {exc}") from exc
        if not isinstance(payload, list):
            raise MalformedArchive(f"Expected a JSON array in {name}")
        return payload

    def read_entry_array(self, name: str) -> list[Any]:
        """Parse a message-day file; failures only affect this entry."""
        try:
            payload = _load_json(self.read_bytes(name))
        except (ValueError, zipfile.BadZipFile) as exc:
            raise EntryParseError(name, str(exc)) from exc
        if not isinstance(payload, list):
            raise EntryParseError(name, "expected a JSON array")
        return payload

    def iter_message_entries(self) -> Iterator[tuple[str, str]]:
        """Yield ``(channel_dir, entry_name)`` for every ``<dir>/<file>.json`` entry."""
        for name in self._entries:
            if not name.endswith(".json"):
                continue
            parts = _SEPARATORS.split(self.relative_path(name))
            if len(parts) != 2 or not parts[0] or not parts[1]:
                continue
            yield parts[0], name
