"""Single-attempt subscription download with last-known-good cache fallback."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Mapping

import aiohttp

from .cache import CacheStore, cache_key
from .errors import CacheCorruptError, DownloadError

DEFAULT_TIMEOUT_SEC = 15
DEFAULT_USER_AGENT = "ClashSubscriptionConverter/1.0 (Clash)"


@dataclass(frozen=True, slots=True)
class ManifestSource:
    url: str


@dataclass(slots=True)
class FetchResult:
    body: str
    response_metadata: dict[str, str] = field(default_factory=dict)
    from_cache: bool = False


def normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Flatten response headers into a lower-cased plain dict (last value wins)."""
    return {str(k).lower(): str(v) for k, v in headers.items()}


class Fetcher:
    """Download manifests, refreshing the cache on every success."""

    def __init__(
        self,
        cache: CacheStore,
        session: aiohttp.ClientSession | None = None,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.cache = cache
        self.session = session
        self.timeout_sec = timeout_sec
        self.user_agent = user_agent

    async def fetch(self, source: ManifestSource, allow_cache_fallback: bool) -> FetchResult:
        """Fetch source once; on failure fall back to the cache when allowed."""
        key = cache_key(source.url)
        try:
            body, metadata = await self._download(source.url)
        except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError) as exc:
            logging.error("Download failed %s: %s", source.url, exc)
            if not allow_cache_fallback:
                raise DownloadError(source.url, exc) from exc
            return self._from_cache(source, key, exc)

        try:
            self.cache.put(key, body, metadata)
        except OSError as exc:
            logging.error("Could not cache %s: %s", source.url, exc)
        else:
            logging.info("Downloaded and cached %s", source.url)
        return FetchResult(body=body, response_metadata=metadata)

    async def _download(self, url: str) -> tuple[str, dict[str, str]]:
        if self.session is not None:
            return await self._get(self.session, url)
        async with aiohttp.ClientSession() as session:
            return await self._get(session, url)

    async def _get(self, session: aiohttp.ClientSession, url: str) -> tuple[str, dict[str, str]]:
        logging.info("Downloading subscription %s", url)
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        headers = {"User-Agent": self.user_agent}
        async with session.get(url, timeout=timeout, headers=headers) as resp:
            resp.raise_for_status()
            data = await resp.read()
            return data.decode("utf-8"), normalize_headers(resp.headers)

    def _from_cache(self, source: ManifestSource, key: str, cause: BaseException) -> FetchResult:
        try:
            entry = self.cache.get(key)
        except UnicodeDecodeError as exc:
            raise CacheCorruptError(f"cached body for {source.url} is not valid UTF-8: {exc}") from exc
        except OSError as exc:
            raise DownloadError(source.url, f"{cause} (cached copy unreadable: {exc})") from exc
        if entry is None:
            raise DownloadError(source.url, f"{cause} (no cached copy)") from cause

        logging.warning("Using cached copy of %s written at %s", source.url, entry.written_at)
        if entry.body.lstrip().startswith("{"):
            try:
                json.loads(entry.body)
            except json.JSONDecodeError as exc:
                raise CacheCorruptError(
                    f"cached body for {source.url} looks like JSON but does not parse: {exc}"
                ) from exc
        return FetchResult(body=entry.body, response_metadata=entry.response_metadata, from_cache=True)
