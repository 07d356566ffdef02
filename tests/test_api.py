import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from slack_export_viewer.api import DB_ENV_VAR, app, extract_link_metadata, get_http_client
from slack_export_viewer.fetcher import AssetFetchConfig
from slack_export_viewer.importer import import_archive
from slack_export_viewer.models import FileCache
from slack_export_viewer.storage import SQLiteStore


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def workspace(tmp_path, make_export, monkeypatch):
    db_path = tmp_path / "api.db"
    path = make_export(
        channels=[
            {"id": "C1", "name": "general", "is_general": True},
            {"id": "C2", "name": "_announce", "is_archived": True},
            {"id": "C3", "name": "Design"},
        ],
        days={
            "general/2024-01-01.json": [
                {"type": "message", "user": "U1", "text": f"m{i}", "ts": f"17000000{i:02d}.0"}
                for i in range(5)
            ]
        },
    )
    store = SQLiteStore(str(db_path))
    try:
        result = asyncio.run(
            import_archive(store, path, fetch_config=AssetFetchConfig(enabled=False))
        )
        store.insert_file_cache(
            FileCache(
                workspace_id=result.workspace_id,
                file_id="F1",
                mime_type="image/png",
                blob=b"\x89PNG",
            )
        )
    finally:
        store.close()
    monkeypatch.setenv(DB_ENV_VAR, str(db_path))
    return result.workspace_id


def _mock_upstream(handler):
    async def override():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            yield http

    app.dependency_overrides[get_http_client] = override


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_workspace_listing_and_summary(client, workspace):
    listed = client.get("/workspaces").json()
    assert [w["id"] for w in listed] == [workspace]

    summary = client.get(f"/workspaces/{workspace}").json()
    assert summary["counts"]["messages"] == 5
    assert summary["meta"]["schema_version"] == 1


def test_unknown_workspace_is_404(client, workspace):
    assert client.get("/workspaces/nope").status_code == 404
    assert client.get("/workspaces/nope/channels").status_code == 404
    assert client.delete("/workspaces/nope").status_code == 404


def test_missing_db_is_400(client, monkeypatch):
    monkeypatch.delenv(DB_ENV_VAR, raising=False)
    assert client.get("/workspaces").status_code == 400


def test_channels_sorted_and_filtered(client, workspace):
    names = [c["name"] for c in client.get(f"/workspaces/{workspace}/channels").json()]
    assert names == ["_announce", "Design", "general"]

    active = client.get(
        f"/workspaces/{workspace}/channels", params={"include_archived": False}
    ).json()
    assert [c["name"] for c in active] == ["Design", "general"]


def test_users_listing(client, workspace):
    users = client.get(f"/workspaces/{workspace}/users").json()
    assert [u["slack_id"] for u in users] == ["U1"]


def test_messages_paginate_by_origin_channel_id(client, workspace):
    url = f"/workspaces/{workspace}/channels/C1/messages"
    first = client.get(url, params={"limit": 3})
    assert [m["text"] for m in first.json()] == ["m0", "m1", "m2"]
    cursor = first.headers["X-Next-Cursor"]

    rest = client.get(url, params={"limit": 3, "cursor": cursor})
    assert [m["text"] for m in rest.json()] == ["m3", "m4"]
    assert "X-Next-Cursor" not in rest.headers

    assert client.get(url, params={"cursor": "bm90LWpzb24"}).status_code == 400


def test_cached_file_served_with_mime_type(client, workspace):
    response = client.get(f"/workspaces/{workspace}/files/F1")
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content == b"\x89PNG"
    assert client.get(f"/workspaces/{workspace}/files/F9").status_code == 404


def test_delete_workspace(client, workspace):
    response = client.delete(f"/workspaces/{workspace}")
    assert response.status_code == 200
    assert response.json()["deleted"]["messages"] == 5
    assert client.get("/workspaces").json() == []


def test_proxy_requires_url(client):
    response = client.get("/proxy")
    assert response.status_code == 400
    assert response.text == "Missing url parameter"


def test_proxy_adds_bearer_token_and_cache_header(client):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"img", headers={"content-type": "image/jpeg"})

    _mock_upstream(handler)
    response = client.get(
        "/proxy", params={"url": "https://files.slack.com/a.jpg", "token": "xoxp-1"}
    )

    assert response.status_code == 200
    assert response.content == b"img"
    assert response.headers["content-type"] == "image/jpeg"
    assert response.headers["cache-control"] == "public, max-age=31536000, immutable"
    assert seen[0].headers["authorization"] == "Bearer xoxp-1"


def test_proxy_passes_upstream_status_through(client):
    _mock_upstream(lambda request: httpx.Response(403))
    response = client.get("/proxy", params={"url": "https://files.slack.com/a.jpg"})
    assert response.status_code == 403
    assert response.text.startswith("Failed to fetch from Slack: 403")


def test_proxy_network_error_is_500(client):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    _mock_upstream(handler)
    assert client.get("/proxy", params={"url": "https://x.invalid/"}).status_code == 500


def test_ogp_returns_metadata(client):
    html = """
    <html><head>
      <title>Fallback</title>
      <meta property="og:title" content="Release notes">
      <meta name="description" content="What changed">
      <meta property="og:image" content="https://example.com/card.png">
      <meta property="og:site_name" content="Example">
    </head></html>
    """
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=html)

    _mock_upstream(handler)
    response = client.get("/ogp", params={"url": "https://example.com/post"})

    assert response.status_code == 200
    assert response.json() == {
        "title": "Release notes",
        "description": "What changed",
        "image": "https://example.com/card.png",
        "url": "https://example.com/post",
        "siteName": "Example",
    }
    assert response.headers["cache-control"] == (
        "public, max-age=86400, stale-while-revalidate=43200"
    )
    assert seen[0].headers["user-agent"].startswith("Slackbot-LinkExpanding")


def test_ogp_upstream_failure(client):
    assert client.get("/ogp").status_code == 400
    _mock_upstream(lambda request: httpx.Response(404))
    assert client.get("/ogp", params={"url": "https://example.com/"}).status_code == 404


def test_extract_link_metadata_falls_back_to_title_tag():
    meta = extract_link_metadata("<title>Plain page</title>", "https://example.com")
    assert meta["title"] == "Plain page"
    assert meta["description"] is None
    assert meta["image"] is None
