from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

# Origin fields the pipeline never interprets (profiles, topics, blocks, ...).
Document = dict[str, Any]

# SQLite INTEGER is a signed 64-bit value.
INT64_MAX = 2**63 - 1

_DIGITS = re.compile(r"[0-9]+")


def parse_ts(value: object) -> tuple[int, int]:
    """Split a Slack ``<seconds>.<microseconds>`` timestamp into an integer pair.

    Unparsable values sort first as ``(0, 0)``.
    """
    if not isinstance(value, str | int | float):
        return 0, 0
    raw = str(value).strip()
    seconds, _, fraction = raw.partition(".")
    if not _DIGITS.fullmatch(seconds) or (fraction and not _DIGITS.fullmatch(fraction)):
        return 0, 0
    # int() refuses digit strings past sys.get_int_max_str_digits().
    if len(seconds.lstrip("0")) > 19 or int(seconds) > INT64_MAX:
        return 0, 0
    micros = int(fraction.ljust(6, "0")[:6]) if fraction else 0
    return int(seconds), micros


@dataclass(frozen=True)
class Workspace:
    id: str
    name: str
    imported_at: int

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "imported_at": self.imported_at}


@dataclass(frozen=True)
class User:
    workspace_id: str
    slack_id: str
    name: str
    real_name: str
    profile: Document
    is_admin: bool
    is_owner: bool
    is_bot: bool
    deleted: bool
    data: Document = field(default_factory=dict)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "slack_id": self.slack_id,
            "name": self.name,
            "real_name": self.real_name,
            "profile": self.profile,
            "is_admin": self.is_admin,
            "is_owner": self.is_owner,
            "is_bot": self.is_bot,
            "deleted": self.deleted,
        }


@dataclass(frozen=True)
class Channel:
    workspace_id: str
    slack_id: str
    name: str
    created: int
    creator: str
    is_archived: bool
    is_general: bool
    members: list[str]
    topic: Document
    purpose: Document
    data: Document = field(default_factory=dict)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "slack_id": self.slack_id,
            "name": self.name,
            "created": self.created,
            "creator": self.creator,
            "is_archived": self.is_archived,
            "is_general": self.is_general,
            "members": self.members,
            "topic": self.topic,
            "purpose": self.purpose,
        }


@dataclass(frozen=True)
class Message:
    workspace_id: str
    # Origin channel id, not the local channel row id.
    channel_id: str
    ts: str
    type: str
    text: str
    subtype: str | None = None
    user: str | None = None
    bot_id: str | None = None
    username: str | None = None
    thread_ts: str | None = None
    files: list[Document] | None = None
    data: Document = field(default_factory=dict)
    id: int | None = None

    @property
    def ts_key(self) -> tuple[int, int]:
        return parse_ts(self.ts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "channel_id": self.channel_id,
            "ts": self.ts,
            "type": self.type,
            "subtype": self.subtype,
            "user": self.user,
            "bot_id": self.bot_id,
            "username": self.username,
            "text": self.text,
            "thread_ts": self.thread_ts,
            "files": self.files,
        }


@dataclass(frozen=True)
class FileCache:
    workspace_id: str
    file_id: str
    mime_type: str
    blob: bytes
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "file_id": self.file_id,
            "mime_type": self.mime_type,
            "size": len(self.blob),
        }


@dataclass(frozen=True)
class AssetRef:
    url: str
    mimetype: str
