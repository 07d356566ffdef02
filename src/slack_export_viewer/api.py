from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator

import httpx
from bs4 import BeautifulSoup
from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from .errors import PersistenceError
from .storage import SQLiteStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Slack Export Viewer")

DB_ENV_VAR = "SLACK_VIEWER_DB"
LINK_PREVIEW_USER_AGENT = "Slackbot-LinkExpanding 1.0 (+https://api.slack.com/robots)"
PROXY_CACHE_CONTROL = "public, max-age=31536000, immutable"
OGP_CACHE_CONTROL = "public, max-age=86400, stale-while-revalidate=43200"


async def get_http_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
        yield client


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


def _resolve_db(db: str | None) -> str:
    resolved = db or os.environ.get(DB_ENV_VAR)
    if not resolved:
        raise HTTPException(status_code=400, detail="db path required")
    return resolved


def _store(db: str | None) -> SQLiteStore:
    return SQLiteStore(_resolve_db(db))


def _require_workspace(store: SQLiteStore, workspace_id: str) -> None:
    if not store.get_workspace(workspace_id):
        raise HTTPException(status_code=404, detail="workspace not found")


@app.get("/workspaces")
def list_workspaces(
    db: str | None = Query(None, description="Path to SQLite DB"),
) -> list[dict[str, object]]:
    store = _store(db)
    try:
        return store.list_workspaces()
    finally:
        store.close()


@app.get("/workspaces/{workspace_id}")
def get_workspace(
    workspace_id: str, db: str | None = Query(None, description="Path to SQLite DB")
) -> dict[str, object]:
    store = _store(db)
    try:
        _require_workspace(store, workspace_id)
        return store.export_summary(workspace_id)
    finally:
        store.close()


@app.delete("/workspaces/{workspace_id}")
def delete_workspace(
    workspace_id: str, db: str | None = Query(None, description="Path to SQLite DB")
) -> dict[str, object]:
    store = _store(db)
    try:
        try:
            deleted = store.delete_workspace(workspace_id)
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=str(e)) from None
        if deleted is None:
            raise HTTPException(status_code=404, detail="workspace not found")
        return {"workspace_id": workspace_id, "deleted": deleted}
    finally:
        store.close()


@app.get("/workspaces/{workspace_id}/users")
def list_users(
    workspace_id: str,
    db: str | None = Query(None, description="Path to SQLite DB"),
    limit: int = Query(500, ge=1, le=5000),
    offset: int = Query(0, ge=0),
) -> list[dict[str, object]]:
    store = _store(db)
    try:
        _require_workspace(store, workspace_id)
        return store.list_users(workspace_id, limit, offset)
    finally:
        store.close()


@app.get("/workspaces/{workspace_id}/channels")
def list_channels(
    workspace_id: str,
    db: str | None = Query(None, description="Path to SQLite DB"),
    include_archived: bool = Query(True),
) -> list[dict[str, object]]:
    store = _store(db)
    try:
        _require_workspace(store, workspace_id)
        channels = store.list_channels(workspace_id)
        if not include_archived:
            channels = [c for c in channels if not c["is_archived"]]
        return channels
    finally:
        store.close()


@app.get("/workspaces/{workspace_id}/channels/{channel_id}/messages")
def list_messages(
    workspace_id: str,
    channel_id: str,
    response: Response,
    db: str | None = Query(None, description="Path to SQLite DB"),
    limit: int = Query(200, ge=1, le=5000),
    cursor: str | None = Query(None, description="Keyset cursor from X-Next-Cursor"),
    thread_ts: str | None = Query(None, description="Only messages of this thread"),
) -> list[dict[str, object]]:
    """Messages of a channel, addressed by its origin id, oldest first."""
    store = _store(db)
    try:
        _require_workspace(store, workspace_id)
        try:
            rows, next_cursor = store.list_messages_page(
                workspace_id, channel_id, limit=limit, cursor=cursor, thread_ts=thread_ts
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from None
        if next_cursor:
            response.headers["X-Next-Cursor"] = next_cursor
        return rows
    finally:
        store.close()


@app.get("/workspaces/{workspace_id}/files/{file_id}")
def get_cached_file(
    workspace_id: str,
    file_id: str,
    db: str | None = Query(None, description="Path to SQLite DB"),
) -> Response:
    store = _store(db)
    try:
        entry = store.get_file_cache(workspace_id, file_id)
    finally:
        store.close()
    if entry is None:
        raise HTTPException(status_code=404, detail="file not cached")
    return Response(content=entry.blob, media_type=entry.mime_type)


@app.get("/proxy")
async def proxy(
    url: str | None = Query(None, description="Origin asset URL"),
    token: str | None = Query(None, description="Bearer token added upstream"),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> Response:
    if not url:
        return PlainTextResponse("Missing url parameter", status_code=400)

    headers = {"Authorization": f"Bearer {token}"} if token else {}
    try:
        upstream = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:
        logger.error("Proxy error for %s: %s", url, exc)
        return PlainTextResponse("Internal Server Error", status_code=500)

    if not upstream.is_success:
        return PlainTextResponse(
            f"Failed to fetch from Slack: {upstream.status_code} {upstream.reason_phrase}",
            status_code=upstream.status_code,
        )

    return Response(
        content=upstream.content,
        media_type=upstream.headers.get("content-type", "application/octet-stream"),
        headers={"Cache-Control": PROXY_CACHE_CONTROL},
    )


def extract_link_metadata(html: str, url: str) -> dict[str, str | None]:
    soup = BeautifulSoup(html, "html.parser")

    def meta(key: str) -> str | None:
        for attr in ("property", "name"):
            tag = soup.find("meta", attrs={attr: key})
            if tag is not None and tag.get("content"):
                return str(tag.get("content"))
        return None

    title = meta("og:title")
    if title is None and soup.title is not None:
        title = soup.title.get_text()
    return {
        "title": title,
        "description": meta("og:description") or meta("description"),
        "image": meta("og:image"),
        "url": url,
        "siteName": meta("og:site_name"),
    }


@app.get("/ogp")
async def ogp(
    url: str | None = Query(None, description="Page to describe"),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> Response:
    if not url:
        return PlainTextResponse("Missing url parameter", status_code=400)

    try:
        upstream = await client.get(url, headers={"User-Agent": LINK_PREVIEW_USER_AGENT})
        if not upstream.is_success:
            return PlainTextResponse("Failed to fetch URL", status_code=upstream.status_code)
        payload = extract_link_metadata(upstream.text, url)
    except httpx.HTTPError as exc:
        logger.error("OGP fetch error for %s: %s", url, exc)
        return PlainTextResponse("Internal Server Error", status_code=500)

    return JSONResponse(payload, headers={"Cache-Control": OGP_CACHE_CONTROL})
