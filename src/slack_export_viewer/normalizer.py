from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Any

from .models import INT64_MAX, Channel, Document, User, Workspace
from .plugins import PluginRegistry

logger = logging.getLogger(__name__)


def workspace_name_from_source(source: str | Path) -> str:
    """Display name for an archive: its file name without the extension."""
    return Path(source).stem or "workspace"


def new_workspace(name: str, *, imported_at: int | None = None) -> Workspace:
    return Workspace(
        id=uuid.uuid4().hex,
        name=name,
        imported_at=int(time.time()) if imported_at is None else imported_at,
    )


def _origin_fields(raw: dict[str, Any]) -> Document:
    # The origin "id" moves to slack_id; storage assigns the local row id.
    return {key: value for key, value in raw.items() if key != "id"}


def _doc(value: object) -> Document:
    return dict(value) if isinstance(value, dict) else {}


def _str(value: object, default: str = "") -> str:
    return default if value is None else str(value)


def _int(value: object) -> int:
    # JSON allows Infinity and 1e30; neither fits a SQLite INTEGER.
    try:
        number = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError, OverflowError):
        return 0
    return number if -INT64_MAX - 1 <= number <= INT64_MAX else 0


def normalize_users(
    raw_users: list[Any], workspace_id: str, plugins: PluginRegistry | None = None
) -> list[User]:
    users: list[User] = []
    for raw in raw_users:
        if not isinstance(raw, dict):
            logger.warning("Skipping non-object entry in users.json: %r", raw)
            continue
        payload = plugins.on_user(dict(raw)) if plugins else raw
        if payload is None:
            continue
        users.append(
            User(
                workspace_id=workspace_id,
                slack_id=_str(payload.get("id")),
                name=_str(payload.get("name")),
                real_name=_str(payload.get("real_name")),
                profile=_doc(payload.get("profile")),
                is_admin=bool(payload.get("is_admin", False)),
                is_owner=bool(payload.get("is_owner", False)),
                is_bot=bool(payload.get("is_bot", False)),
                deleted=bool(payload.get("deleted", False)),
                data=_origin_fields(payload),
            )
        )
    return users


def normalize_channels(
    raw_channels: list[Any], workspace_id: str, plugins: PluginRegistry | None = None
) -> list[Channel]:
    channels: list[Channel] = []
    for raw in raw_channels:
        if not isinstance(raw, dict):
            logger.warning("Skipping non-object entry in channels.json: %r", raw)
            continue
        payload = plugins.on_channel(dict(raw)) if plugins else raw
        if payload is None:
            continue
        members = payload.get("members")
        channels.append(
            Channel(
                workspace_id=workspace_id,
                slack_id=_str(payload.get("id")),
                name=_str(payload.get("name")),
                created=_int(payload.get("created")),
                creator=_str(payload.get("creator")),
                is_archived=bool(payload.get("is_archived", False)),
                is_general=bool(payload.get("is_general", False)),
                members=[str(m) for m in members] if isinstance(members, list) else [],
                topic=_doc(payload.get("topic")),
                purpose=_doc(payload.get("purpose")),
                data=_origin_fields(payload),
            )
        )
    return channels
