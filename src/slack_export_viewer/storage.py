from __future__ import annotations

import base64
import json
import logging
import re
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .errors import PersistenceError
from .models import Channel, FileCache, Message, User, Workspace

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Tables holding rows owned by a workspace, children first.
_WORKSPACE_TABLES = ("file_cache", "messages", "channels", "users", "workspace_meta")

_BOOL_COLUMNS = {"is_admin", "is_owner", "is_bot", "deleted", "is_archived", "is_general"}


def _encode(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _row_to_dict(row: sqlite3.Row) -> dict[str, object]:
    out: dict[str, object] = {}
    for key in row.keys():
        value = row[key]
        if key.endswith("_json"):
            out[key[: -len("_json")]] = json.loads(value) if value is not None else None
        elif key in _BOOL_COLUMNS:
            out[key] = bool(value)
        else:
            out[key] = value
    return out


def channel_sort_key(name: str) -> str:
    return re.sub(r"^[_#-]+", "", name).lower()


class SQLiteStore:
    def __init__(self, path: str, *, read_only: bool = False) -> None:
        self.path = path
        self.read_only = read_only
        if read_only:
            self.conn = _sqlite_connect_readonly(path)
            self.conn.row_factory = sqlite3.Row
            return

        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(path)
        self.conn.row_factory = sqlite3.Row
        self._configure()
        self._init_schema()

    def _configure(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA temp_store=MEMORY")
        cursor.execute("PRAGMA cache_size=20000")
        self.conn.commit()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS workspaces (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                imported_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS workspace_meta (
                workspace_id TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (workspace_id, key)
            );

            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workspace_id TEXT NOT NULL,
                slack_id TEXT NOT NULL,
                name TEXT NOT NULL,
                real_name TEXT NOT NULL,
                is_admin INTEGER NOT NULL,
                is_owner INTEGER NOT NULL,
                is_bot INTEGER NOT NULL,
                deleted INTEGER NOT NULL,
                profile_json TEXT NOT NULL,
                data_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS channels (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workspace_id TEXT NOT NULL,
                slack_id TEXT NOT NULL,
                name TEXT NOT NULL,
                created INTEGER NOT NULL,
                creator TEXT NOT NULL,
                is_archived INTEGER NOT NULL,
                is_general INTEGER NOT NULL,
                members_json TEXT NOT NULL,
                topic_json TEXT NOT NULL,
                purpose_json TEXT NOT NULL,
                data_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workspace_id TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                ts TEXT NOT NULL,
                ts_sec INTEGER NOT NULL,
                ts_usec INTEGER NOT NULL,
                type TEXT NOT NULL,
                subtype TEXT,
                user TEXT,
                bot_id TEXT,
                username TEXT,
                text TEXT NOT NULL,
                thread_ts TEXT,
                files_json TEXT,
                data_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS file_cache (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workspace_id TEXT NOT NULL,
                file_id TEXT NOT NULL,
                mime_type TEXT NOT NULL,
                blob BLOB NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_users_workspace ON users(workspace_id, slack_id);
            CREATE INDEX IF NOT EXISTS idx_channels_workspace ON channels(workspace_id, slack_id);
            CREATE INDEX IF NOT EXISTS idx_messages_workspace ON messages(workspace_id);
            CREATE INDEX IF NOT EXISTS idx_messages_channel_ts ON messages(
                workspace_id, channel_id, ts_sec, ts_usec, id
            );
            CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(
                workspace_id, channel_id, thread_ts
            );
            CREATE UNIQUE INDEX IF NOT EXISTS idx_file_cache_workspace_file ON file_cache(
                workspace_id, file_id
            );
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def _write(self, operation: str) -> Iterator[sqlite3.Connection]:
        # Values SQLite cannot bind (lone surrogates, integers past 64 bits) surface
        # as ValueError/OverflowError rather than sqlite3.Error.
        try:
            yield self.conn
            self.conn.commit()
        except (sqlite3.Error, ValueError, OverflowError) as exc:
            self.conn.rollback()
            raise PersistenceError(f"{operation} failed: {exc}") from exc

    def insert_workspace(self, workspace: Workspace) -> None:
        with self._write("insert workspace") as conn:
            conn.execute(
                "INSERT INTO workspaces (id, name, imported_at) VALUES (?, ?, ?)",
                (workspace.id, workspace.name, workspace.imported_at),
            )

    def insert_users(self, users: Iterable[User]) -> int:
        with self._write("bulk insert users") as conn:
            rows = [
                (
                    u.workspace_id,
                    u.slack_id,
                    u.name,
                    u.real_name,
                    int(u.is_admin),
                    int(u.is_owner),
                    int(u.is_bot),
                    int(u.deleted),
                    _encode(u.profile),
                    _encode(u.data),
                )
                for u in users
            ]
            conn.executemany(
                (
                    "INSERT INTO users (workspace_id, slack_id, name, real_name, is_admin, "
                    "is_owner, is_bot, deleted, profile_json, data_json) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
                ),
                rows,
            )
        return len(rows)

    def insert_channels(self, channels: Iterable[Channel]) -> int:
        with self._write("bulk insert channels") as conn:
            rows = [
                (
                    c.workspace_id,
                    c.slack_id,
                    c.name,
                    c.created,
                    c.creator,
                    int(c.is_archived),
                    int(c.is_general),
                    _encode(c.members),
                    _encode(c.topic),
                    _encode(c.purpose),
                    _encode(c.data),
                )
                for c in channels
            ]
            conn.executemany(
                (
                    "INSERT INTO channels (workspace_id, slack_id, name, created, creator, "
                    "is_archived, is_general, members_json, topic_json, purpose_json, data_json) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
                ),
                rows,
            )
        return len(rows)

    def insert_messages(self, messages: Iterable[Message]) -> int:
        with self._write("bulk insert messages") as conn:
            rows = []
            for m in messages:
                ts_sec, ts_usec = m.ts_key
                rows.append(
                    (
                        m.workspace_id,
                        m.channel_id,
                        m.ts,
                        ts_sec,
                        ts_usec,
                        m.type,
                        m.subtype,
                        m.user,
                        m.bot_id,
                        m.username,
                        m.text,
                        m.thread_ts,
                        _encode(m.files) if m.files is not None else None,
                        _encode(m.data),
                    )
                )
            conn.executemany(
                (
                    "INSERT INTO messages (workspace_id, channel_id, ts, ts_sec, ts_usec, type, "
                    "subtype, user, bot_id, username, text, thread_ts, files_json, data_json) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
                ),
                rows,
            )
        return len(rows)

    def insert_file_cache(self, entry: FileCache) -> None:
        with self._write(f"insert file cache {entry.file_id}") as conn:
            conn.execute(
                (
                    "INSERT OR REPLACE INTO file_cache (workspace_id, file_id, mime_type, blob) "
                    "VALUES (?, ?, ?, ?)"
                ),
                (entry.workspace_id, entry.file_id, entry.mime_type, sqlite3.Binary(entry.blob)),
            )

    def delete_workspace(self, workspace_id: str) -> dict[str, int] | None:
        """Delete a workspace and every row it owns in one transaction.

        Returns per-table deleted row counts, or None when the workspace is unknown.
        """
        if self.conn.in_transaction:
            self.conn.commit()
        try:
            self.conn.execute("BEGIN IMMEDIATE")
            deleted = self.conn.execute(
                "DELETE FROM workspaces WHERE id = ?", (workspace_id,)
            ).rowcount
            if not deleted:
                self.conn.rollback()
                return None
            counts = {"workspaces": deleted}
            for table in _WORKSPACE_TABLES:
                counts[table] = self.conn.execute(
                    f"DELETE FROM {table} WHERE workspace_id = ?", (workspace_id,)
                ).rowcount
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise PersistenceError(f"delete workspace {workspace_id} failed: {exc}") from exc
        logger.info("Deleted workspace %s: %s", workspace_id, counts)
        return counts

    def set_workspace_meta(self, workspace_id: str, meta: dict[str, object]) -> None:
        rows: list[tuple[str, str, str]] = []
        for key, value in meta.items():
            try:
                encoded = json.dumps(value, ensure_ascii=False)
            except TypeError:
                encoded = json.dumps(str(value), ensure_ascii=False)
            rows.append((workspace_id, key, encoded))
        with self._write("set workspace meta") as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO workspace_meta (workspace_id, key, value) VALUES (?, ?, ?)",
                rows,
            )

    def get_workspace_meta(self, workspace_id: str) -> dict[str, object]:
        cursor = self.conn.execute(
            "SELECT key, value FROM workspace_meta WHERE workspace_id = ? ORDER BY key ASC",
            (workspace_id,),
        )
        return {str(row["key"]): _decode_meta(str(row["value"])) for row in cursor.fetchall()}

    def list_workspaces(self) -> list[dict[str, object]]:
        cursor = self.conn.execute("SELECT * FROM workspaces ORDER BY imported_at DESC, id ASC")
        return [dict(row) for row in cursor.fetchall()]

    def latest_workspace_id(self) -> str | None:
        row = self.conn.execute(
            "SELECT id FROM workspaces ORDER BY imported_at DESC, rowid DESC LIMIT 1"
        ).fetchone()
        if not row:
            return None
        return str(row["id"])

    def get_workspace(self, workspace_id: str) -> dict[str, object] | None:
        cursor = self.conn.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def list_users(self, workspace_id: str, limit: int, offset: int) -> list[dict[str, object]]:
        cursor = self.conn.execute(
            "SELECT * FROM users WHERE workspace_id = ? ORDER BY id ASC LIMIT ? OFFSET ?",
            (workspace_id, limit, offset),
        )
        return [_row_to_dict(row) for row in cursor.fetchall()]

    def list_channels(self, workspace_id: str) -> list[dict[str, object]]:
        cursor = self.conn.execute("SELECT * FROM channels WHERE workspace_id = ?", (workspace_id,))
        rows = [_row_to_dict(row) for row in cursor.fetchall()]
        return sorted(rows, key=lambda row: channel_sort_key(str(row["name"])))

    def get_channel(self, workspace_id: str, channel_id: str) -> dict[str, object] | None:
        """Look up a channel by its origin id."""
        row = self.conn.execute(
            "SELECT * FROM channels WHERE workspace_id = ? AND slack_id = ? ORDER BY id LIMIT 1",
            (workspace_id, channel_id),
        ).fetchone()
        return _row_to_dict(row) if row else None

    def list_messages_page(
        self,
        workspace_id: str,
        channel_id: str,
        *,
        limit: int,
        cursor: str | None = None,
        thread_ts: str | None = None,
    ) -> tuple[list[dict[str, object]], str | None]:
        """Messages of one channel (by origin id) in ascending ts order."""
        where = ["workspace_id = ?", "channel_id = ?"]
        params: list[object] = [workspace_id, channel_id]

        if thread_ts is not None:
            where.append("thread_ts = ?")
            params.append(thread_ts)

        decoded = decode_cursor(cursor) if cursor else None
        if decoded:
            where.append(
                "(ts_sec > ? OR (ts_sec = ? AND (ts_usec > ? OR (ts_usec = ? AND id > ?))))"
            )
            params.extend(
                [decoded["sec"], decoded["sec"], decoded["usec"], decoded["usec"], decoded["id"]]
            )

        sql = (
            "SELECT * FROM messages"
            f" WHERE {' AND '.join(where)}"
            " ORDER BY ts_sec ASC, ts_usec ASC, id ASC"
            " LIMIT ?"
        )
        params.append(limit + 1)
        rows = self.conn.execute(sql, params).fetchall()

        next_cursor = None
        if len(rows) > limit:
            last = rows[limit - 1]
            next_cursor = encode_cursor(int(last["ts_sec"]), int(last["ts_usec"]), int(last["id"]))
            rows = rows[:limit]
        return [_message_row(row) for row in rows], next_cursor

    def iter_messages(
        self, workspace_id: str, *, chunk_size: int = 2000
    ) -> Iterable[dict[str, object]]:
        cursor = self.conn.execute(
            (
                "SELECT * FROM messages WHERE workspace_id = ?"
                " ORDER BY channel_id ASC, ts_sec ASC, ts_usec ASC, id ASC"
            ),
            (workspace_id,),
        )
        while True:
            rows = cursor.fetchmany(chunk_size)
            if not rows:
                return
            for row in rows:
                yield _message_row(row)

    def get_file_cache(self, workspace_id: str, file_id: str) -> FileCache | None:
        row = self.conn.execute(
            "SELECT * FROM file_cache WHERE workspace_id = ? AND file_id = ?",
            (workspace_id, file_id),
        ).fetchone()
        if not row:
            return None
        return FileCache(
            id=int(row["id"]),
            workspace_id=str(row["workspace_id"]),
            file_id=str(row["file_id"]),
            mime_type=str(row["mime_type"]),
            blob=bytes(row["blob"]),
        )

    def cached_file_ids(self, workspace_id: str) -> set[str]:
        cursor = self.conn.execute(
            "SELECT file_id FROM file_cache WHERE workspace_id = ?", (workspace_id,)
        )
        return {str(row["file_id"]) for row in cursor.fetchall()}

    def stats(self, workspace_id: str) -> dict[str, int]:
        cursor = self.conn.cursor()
        counts = {}
        for table in ("users", "channels", "messages", "file_cache"):
            res = cursor.execute(
                f"SELECT COUNT(*) as count FROM {table} WHERE workspace_id = ?",
                (workspace_id,),
            ).fetchone()
            counts[table] = res["count"] if res else 0
        return counts

    def export_summary(self, workspace_id: str) -> dict[str, object]:
        workspace = self.get_workspace(workspace_id)
        if not workspace:
            raise ValueError("workspace not found")
        return {
            "workspace": workspace,
            "meta": self.get_workspace_meta(workspace_id),
            "counts": self.stats(workspace_id),
        }


def _message_row(row: sqlite3.Row) -> dict[str, object]:
    out = _row_to_dict(row)
    out.pop("ts_sec", None)
    out.pop("ts_usec", None)
    return out


def _decode_meta(raw: str) -> object:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


_REQUIRED_TABLES: dict[str, set[str]] = {
    "workspaces": {"id", "name", "imported_at"},
    "workspace_meta": {"workspace_id", "key", "value"},
    "users": {"id", "workspace_id", "slack_id", "name", "real_name", "profile_json", "data_json"},
    "channels": {"id", "workspace_id", "slack_id", "name", "members_json", "data_json"},
    "messages": {
        "id",
        "workspace_id",
        "channel_id",
        "ts",
        "ts_sec",
        "ts_usec",
        "type",
        "text",
        "thread_ts",
        "files_json",
        "data_json",
    },
    "file_cache": {"id", "workspace_id", "file_id", "mime_type", "blob"},
}

# index name -> (table, leading columns, unique)
_REQUIRED_INDEXES: dict[str, tuple[str, tuple[str, ...], bool]] = {
    "idx_messages_channel_ts": ("messages", ("workspace_id", "channel_id", "ts_sec"), False),
    "idx_file_cache_workspace_file": ("file_cache", ("workspace_id", "file_id"), True),
}


def _sqlite_connect_readonly(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


def _version_tuple(value: object) -> tuple[int, ...] | None:
    if not isinstance(value, str):
        return None
    match = re.match(r"^(\d+)\.(\d+)\.(\d+)", value.strip())
    return tuple(int(part) for part in match.groups()) if match else None


def _check_tables(conn: sqlite3.Connection, tables: set[str], errors: list[str]) -> None:
    for table, required_cols in _REQUIRED_TABLES.items():
        if table not in tables:
            errors.append(f"Missing table: {table}")
            continue
        cols = {str(r["name"]) for r in conn.execute(f"PRAGMA table_info({table})")}
        missing = sorted(required_cols - cols)
        if missing:
            errors.append(f"Table {table} missing columns: {', '.join(missing)}")


def _check_indexes(conn: sqlite3.Connection, tables: set[str], errors: list[str]) -> None:
    for index, (table, columns, unique) in _REQUIRED_INDEXES.items():
        if table not in tables:
            continue
        rows = conn.execute(f"PRAGMA index_list({table})").fetchall()
        listed = {str(r["name"]): bool(r["unique"]) for r in rows}
        if index not in listed:
            errors.append(f"Missing index: {index}")
            continue
        indexed = tuple(str(r["name"]) for r in conn.execute(f"PRAGMA index_info({index})"))
        if indexed[: len(columns)] != columns:
            errors.append(f"Index {index} should start with ({', '.join(columns)})")
        if unique and not listed[index]:
            # insert_file_cache relies on INSERT OR REPLACE hitting this index.
            errors.append(f"Index {index} must be UNIQUE")


def _check_meta(
    conn: sqlite3.Connection,
    tables: set[str],
    workspace_id: str,
    tool_version: str | None,
    errors: list[str],
    warnings: list[str],
) -> dict[str, object]:
    rows = conn.execute(
        "SELECT key, value FROM workspace_meta WHERE workspace_id = ? ORDER BY key ASC",
        (workspace_id,),
    ).fetchall()
    meta = {str(r["key"]): _decode_meta(str(r["value"])) for r in rows}

    importer_version = meta.get("importer_version")
    db_version = _version_tuple(importer_version)
    tool = _version_tuple(tool_version)
    if not importer_version:
        warnings.append("Missing workspace_meta importer_version.")
    elif db_version and tool and db_version > tool:
        warnings.append(
            f"Workspace was imported by slack-export-viewer {importer_version}, "
            f"newer than this tool ({tool_version})."
        )

    schema_version = meta.get("schema_version")
    if schema_version is None:
        warnings.append("Missing workspace_meta schema_version.")
    elif not isinstance(schema_version, int) or isinstance(schema_version, bool):
        warnings.append(f"Unrecognized schema_version: {schema_version!r}")
    elif schema_version > SCHEMA_VERSION:
        errors.append(
            f"DB schema_version {schema_version} is newer than supported {SCHEMA_VERSION}."
        )

    recorded = meta.get("counts")
    if isinstance(recorded, dict):
        for table, expected in recorded.items():
            if table not in ("users", "channels", "messages") or table not in tables:
                continue
            actual = conn.execute(
                f"SELECT COUNT(*) AS n FROM {table} WHERE workspace_id = ?", (workspace_id,)
            ).fetchone()["n"]
            if actual != expected:
                warnings.append(f"{table}: {actual} rows stored, import recorded {expected}.")
    return meta


def validate_db(
    path: str,
    *,
    workspace_id: str | None = None,
    require_workspace: bool = False,
    tool_version: str | None = None,
) -> dict[str, object]:
    """Read-only check that a SQLite DB holds imports this tool can serve.

    Verifies tables, the ts ordering and file cache indexes, and the meta of
    one workspace (the latest import unless ``workspace_id`` is given).
    """
    db_path = Path(path)
    errors: list[str] = []
    warnings: list[str] = []
    report: dict[str, object] = {
        "db": str(db_path),
        "ok": False,
        "workspace_id": workspace_id,
        "errors": errors,
        "warnings": warnings,
        "meta": {},
        "tool_version": tool_version,
        "required_schema_version": SCHEMA_VERSION,
    }

    if not db_path.exists():
        errors.append(f"DB file not found: {db_path}")
        return report
    try:
        conn = _sqlite_connect_readonly(str(db_path))
    except sqlite3.OperationalError as exc:
        errors.append(f"Unable to open DB read-only: {exc}")
        return report

    try:
        try:
            tables = {
                str(r["name"])
                for r in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
                )
            }
        except sqlite3.DatabaseError as exc:
            errors.append(f"Not a usable SQLite database: {exc}")
            return report
        if not tables:
            errors.append("DB has no tables (did you point at the right SQLite file?).")
            return report

        _check_tables(conn, tables, errors)
        _check_indexes(conn, tables, errors)

        if {"workspaces", "workspace_meta"} <= tables:
            if workspace_id:
                found = conn.execute(
                    "SELECT 1 FROM workspaces WHERE id = ?", (workspace_id,)
                ).fetchone()
                if not found:
                    errors.append(f"Workspace not found: {workspace_id}")
                resolved = workspace_id if found else None
            else:
                row = conn.execute(
                    "SELECT id FROM workspaces ORDER BY imported_at DESC, rowid DESC LIMIT 1"
                ).fetchone()
                resolved = str(row["id"]) if row else None
                report["workspace_id"] = resolved

            if resolved:
                report["meta"] = _check_meta(
                    conn, tables, resolved, tool_version, errors, warnings
                )
            elif require_workspace and not workspace_id:
                errors.append("No workspaces found in DB.")
    finally:
        conn.close()

    report["ok"] = not errors
    return report


def dump_json(path: str, payload: object) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)


def encode_cursor(ts_sec: int, ts_usec: int, row_id: int) -> str:
    payload = json.dumps(
        {"sec": ts_sec, "usec": ts_usec, "id": row_id}, separators=(",", ":")
    ).encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> dict[str, int] | None:
    if not cursor:
        return None
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        decoded: Any = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeError):
        raise ValueError("invalid cursor") from None
    if not isinstance(decoded, dict):
        raise ValueError("invalid cursor")
    values = [decoded.get(key) for key in ("sec", "usec", "id")]
    if not all(isinstance(v, int) and not isinstance(v, bool) for v in values):
        raise ValueError("invalid cursor")
    return {"sec": values[0], "usec": values[1], "id": values[2]}
