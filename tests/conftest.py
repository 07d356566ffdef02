from __future__ import annotations

import json
import zipfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from slack_export_viewer.storage import SQLiteStore

ExportFactory = Callable[..., Path]

USERS = [{"id": "U1", "name": "alice", "real_name": "Alice Doe", "profile": {"image_48": "a.png"}}]
CHANNELS = [{"id": "C1", "name": "general", "is_general": True, "members": ["U1"]}]


def write_export(
    path: Path,
    *,
    users: Any = USERS,
    channels: Any = CHANNELS,
    days: dict[str, Any] | None = None,
    root: str = "",
    raw: dict[str, str] | None = None,
    skip: tuple[str, ...] = (),
) -> Path:
    """Write a Slack export zip. ``days`` maps ``<dir>/<file>.json`` to a JSON payload."""
    with zipfile.ZipFile(path, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        if "users.json" not in skip:
            archive.writestr(root + "users.json", json.dumps(users))
        if "channels.json" not in skip:
            archive.writestr(root + "channels.json", json.dumps(channels))
        for name, payload in (days or {}).items():
            archive.writestr(root + name, json.dumps(payload))
        for name, text in (raw or {}).items():
            archive.writestr(root + name, text)
    return path


@pytest.fixture
def make_export(tmp_path: Path) -> ExportFactory:
    counter = iter(range(1_000_000))

    def _make(name: str | None = None, **kwargs: Any) -> Path:
        filename = name or f"export-{next(counter)}.zip"
        return write_export(tmp_path / filename, **kwargs)

    return _make


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SQLiteStore]:
    db = SQLiteStore(str(tmp_path / "viewer.db"))
    try:
        yield db
    finally:
        db.close()
