from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

import httpx

from .errors import AssetFetchError, PersistenceError
from .models import AssetRef, FileCache
from .storage import SQLiteStore

logger = logging.getLogger(__name__)

DEFAULT_PROXY_URL = "http://127.0.0.1:8080"
DEFAULT_CONCURRENCY = 5
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class AssetFetchConfig:
    """How cache_assets reaches the origin media host.

    With a token, every fetch goes through the proxy endpoint, which adds the
    Authorization header server-side. Without one, the origin URL is fetched
    directly and access-controlled assets will usually fail.
    """

    token: str | None = None
    proxy_url: str = DEFAULT_PROXY_URL
    concurrency: int = DEFAULT_CONCURRENCY
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    enabled: bool = True

    @property
    def use_proxy(self) -> bool:
        return bool(self.token)

    def proxy_endpoint(self) -> str:
        return f"{self.proxy_url.rstrip('/')}/proxy"


@dataclass
class AssetCacheReport:
    cached: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.cached) + len(self.failed)


async def _download(
    client: httpx.AsyncClient,
    file_id: str,
    asset: AssetRef,
    config: AssetFetchConfig,
    use_proxy: bool,
) -> bytes:
    try:
        if use_proxy:
            response = await client.get(
                config.proxy_endpoint(),
                params={"url": asset.url, "token": config.token or ""},
            )
        else:
            response = await client.get(asset.url)
        if not response.is_success:
            raise AssetFetchError(file_id, f"HTTP {response.status_code}")
        return response.content
    except httpx.HTTPError as exc:
        raise AssetFetchError(file_id, f"{type(exc).__name__}: {exc}") from exc


async def _cache_one(
    store: SQLiteStore,
    client: httpx.AsyncClient,
    workspace_id: str,
    file_id: str,
    asset: AssetRef,
    config: AssetFetchConfig,
    use_proxy: bool,
) -> None:
    blob = await _download(client, file_id, asset, config, use_proxy)
    try:
        store.insert_file_cache(
            FileCache(
                workspace_id=workspace_id,
                file_id=file_id,
                mime_type=asset.mimetype,
                blob=blob,
            )
        )
    except PersistenceError as exc:
        raise AssetFetchError(file_id, str(exc)) from exc


async def cache_assets(
    store: SQLiteStore,
    workspace_id: str,
    assets: Mapping[str, AssetRef],
    config: AssetFetchConfig,
    *,
    client: httpx.AsyncClient | None = None,
) -> AssetCacheReport:
    """Fetch and store each asset, at most ``config.concurrency`` at a time.

    Per-asset failures are logged and skipped; nothing is raised for them.
    """
    if config.concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    report = AssetCacheReport()
    items = list(assets.items())
    if not items:
        return report

    use_proxy = config.use_proxy
    logger.info(
        "Caching %d assets for workspace %s via %s",
        len(items),
        workspace_id,
        "proxy" if use_proxy else "direct fetch",
    )

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=config.timeout_seconds, follow_redirects=True)
    try:
        for start in range(0, len(items), config.concurrency):
            chunk = items[start : start + config.concurrency]
            results = await asyncio.gather(
                *[
                    asyncio.wait_for(
                        _cache_one(store, http, workspace_id, file_id, asset, config, use_proxy),
                        timeout=config.timeout_seconds,
                    )
                    for file_id, asset in chunk
                ],
                return_exceptions=True,
            )
            for (file_id, asset), result in zip(chunk, results, strict=True):
                if isinstance(result, Exception):
                    logger.warning(
                        "Could not cache file %s from %s: %s", file_id, asset.url, result
                    )
                    report.failed.append(file_id)
                elif isinstance(result, BaseException):
                    raise result
                else:
                    report.cached.append(file_id)
    finally:
        if owns_client:
            await http.aclose()

    logger.info("Cached %d/%d assets", len(report.cached), report.attempted)
    return report
