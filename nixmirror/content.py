"""Streaming NAR download with on-the-fly verification."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator

import aiohttp

from .errors import IntegrityMismatch, TransientError
from .narinfo import ArtifactMetadata
from .remote import RequestScheduler, classify_status

CHUNK_SIZE = 256 * 1024


class VerifiedStream:
    """Async iterable over one NAR body, hashed and counted as it is read.

    Iteration raises :class:`IntegrityMismatch` instead of finishing when
    the byte count or digest does not match the narinfo, so anything that
    writes chunks while iterating never gets to commit bad content.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        scheduler: RequestScheduler,
        url: str,
        metadata: ArtifactMetadata,
        timeout: aiohttp.ClientTimeout,
        fresh_connection: bool = False,
    ) -> None:
        self.session = session
        self.scheduler = scheduler
        self.url = url
        self.metadata = metadata
        self.timeout = timeout
        self.fresh_connection = fresh_connection
        self.bytes_read = 0
        self.digest: bytes | None = None

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    @contextlib.asynccontextmanager
    async def _client(self) -> AsyncIterator[aiohttp.ClientSession]:
        """The shared session, or a one-off one whose connection is never pooled."""
        if not self.fresh_connection:
            yield self.session
            return
        connector = aiohttp.TCPConnector(force_close=True)
        async with aiohttp.ClientSession(connector=connector, auto_decompress=False) as session:
            yield session

    async def _iterate(self) -> AsyncIterator[bytes]:
        expected_size = self.metadata.file_size
        hasher = self.metadata.file_hash.new_hasher()
        await self.scheduler.wait_turn()
        try:
            async with self._client() as session, session.get(self.url, timeout=self.timeout) as resp:
                classify_status(resp.status, self.url)
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    self.bytes_read += len(chunk)
                    if self.bytes_read > expected_size:
                        raise IntegrityMismatch(
                            f"{self.metadata.id}: {self.url} exceeds FileSize {expected_size}"
                        )
                    hasher.update(chunk)
                    yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientError(
                f"transfer failed after {self.bytes_read} bytes: {self.url} ({exc!r})"
            ) from exc

        if self.bytes_read != expected_size:
            raise IntegrityMismatch(
                f"{self.metadata.id}: size of {self.url} is {self.bytes_read}, expected {expected_size}"
            )
        self.digest = hasher.digest()
        if not self.metadata.file_hash.matches(self.digest):
            raise IntegrityMismatch(
                f"{self.metadata.id}: hash of {self.url} failed, expected {self.metadata.file_hash}"
            )
        logging.debug("Verified %s (%s bytes)", self.url, self.bytes_read)


def fetch_and_verify(
    session: aiohttp.ClientSession,
    scheduler: RequestScheduler,
    url: str,
    metadata: ArtifactMetadata,
    timeout: aiohttp.ClientTimeout,
    fresh_connection: bool = False,
) -> VerifiedStream:
    """Build a verified stream for ``metadata``'s archive at ``url``.

    ``fresh_connection`` bypasses the session's keep-alive pool, used when
    re-downloading after a mismatch.
    """
    return VerifiedStream(session, scheduler, url, metadata, timeout, fresh_connection)
