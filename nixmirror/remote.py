"""HTTP side of the mirror: request pacing, status mapping, narinfo fetch."""

from __future__ import annotations

import asyncio
import logging
import time
from urllib.parse import urljoin

import aiohttp

from .errors import NotFound, TransientError
from .ids import ArtifactId
from .narinfo import ArtifactMetadata, parse_narinfo

RETRYABLE_STATUSES = {408, 425, 429}


class RequestScheduler:
    """Ensure a minimum delay between request starts."""

    def __init__(self, delay_sec: float) -> None:
        self.delay_sec = max(0.0, delay_sec)
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    async def wait_turn(self) -> None:
        """Sleep as needed so requests are spaced by configured delay."""
        if self.delay_sec <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            wait_for = self._next_allowed - now
            if wait_for > 0:
                await asyncio.sleep(wait_for)
                now = time.monotonic()
            self._next_allowed = now + self.delay_sec


def classify_status(status: int, url: str) -> None:
    """Raise the error matching a non-2xx ``status``; return for 2xx."""
    if 200 <= status < 300:
        return
    if status >= 500 or status in RETRYABLE_STATUSES:
        raise TransientError(f"HTTP {status} for {url}", status=status)
    raise NotFound(f"HTTP {status} for {url}", status=status)


def narinfo_url(cache_url: str, artifact_id: ArtifactId) -> str:
    return f"{cache_url.rstrip('/')}/{artifact_id}.narinfo"


def content_url(cache_url: str, url: str) -> str:
    """Resolve a narinfo ``URL`` value against the cache root."""
    return urljoin(f"{cache_url.rstrip('/')}/", url)


async def fetch_bytes(
    session: aiohttp.ClientSession,
    scheduler: RequestScheduler,
    url: str,
    timeout: aiohttp.ClientTimeout,
) -> bytes:
    """Single GET attempt returning the whole body."""
    await scheduler.wait_turn()
    try:
        async with session.get(url, timeout=timeout) as resp:
            classify_status(resp.status, url)
            return await resp.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise TransientError(f"request failed: {url} ({exc!r})") from exc


async def fetch_metadata(
    session: aiohttp.ClientSession,
    scheduler: RequestScheduler,
    cache_url: str,
    artifact_id: ArtifactId,
    timeout: aiohttp.ClientTimeout,
) -> ArtifactMetadata:
    """Fetch and parse the narinfo record for ``artifact_id``."""
    url = narinfo_url(cache_url, artifact_id)
    body = await fetch_bytes(session, scheduler, url, timeout)
    logging.debug("Fetched %s (%s bytes)", url, len(body))
    return parse_narinfo(artifact_id, body)
