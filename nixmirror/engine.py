"""Worker pool and run orchestration.

The dependency graph is never materialised: workers pull ids from the
:class:`ClosureTracker`, and every narinfo they read offers its references
back to it. The run ends when the frontier is empty and no worker holds a
claim.
"""

from __future__ import annotations

import asyncio
import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import aiohttp

from .atomic import AtomicWriter
from .closure import ClosureTracker, CompletionRecord
from .config import Config
from .content import fetch_and_verify
from .errors import CANCELLED, INTERNAL_ERROR, CorruptMetadata, IntegrityMismatch, IOFailure, MirrorError
from .ids import ArtifactId
from .narinfo import ArtifactMetadata, parse_narinfo
from .remote import RequestScheduler, content_url, fetch_metadata
from .retry import run_with_retry

NIX_CACHE_INFO = "nix-cache-info"
NIX_CACHE_INFO_BODY = b"StoreDir: /nix/store\nWantMassQuery: 1\nPriority: 40\n"


@dataclass(slots=True)
class MirrorSummary:
    records: dict[ArtifactId, CompletionRecord] = field(default_factory=dict)
    invalid_references: list[tuple[ArtifactId, str]] = field(default_factory=list)
    invalid_seeds: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.records.values() if r.succeeded)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.records.values() if r.skipped)

    @property
    def failed(self) -> list[CompletionRecord]:
        return sorted((r for r in self.records.values() if not r.succeeded), key=lambda r: r.id)

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(r.succeeded for r in self.records.values())

    def write_report(self, path: Path) -> None:
        """Write one TSV row per artifact, failures first."""
        path.parent.mkdir(parents=True, exist_ok=True)
        rows = sorted(self.records.values(), key=lambda r: (r.succeeded, r.id))
        with path.open("w", encoding="utf-8", newline="") as fh:
            writer = csv.writer(fh, delimiter="\t")
            writer.writerow(["id", "status", "kind", "reason"])
            for r in rows:
                status = ("skipped" if r.skipped else "ok") if r.succeeded else "failed"
                writer.writerow([r.id, status, r.kind, r.reason])
            for parent, token in self.invalid_references:
                writer.writerow([parent, "invalid-reference", "", token])
            for line in self.invalid_seeds:
                writer.writerow(["", "invalid-seed", "", line])


def client_timeouts(config: Config) -> tuple[aiohttp.ClientTimeout, aiohttp.ClientTimeout]:
    """Return (metadata, content) timeouts; content has no total bound."""
    metadata = aiohttp.ClientTimeout(total=config.timeout_sec)
    content = aiohttp.ClientTimeout(total=None, sock_connect=config.timeout_sec, sock_read=config.timeout_sec)
    return metadata, content


def open_session(config: Config) -> aiohttp.ClientSession:
    """Client session sized for ``config.concurrency``; bodies kept as served."""
    connector = aiohttp.TCPConnector(limit=max(8, config.concurrency * 2))
    return aiohttp.ClientSession(connector=connector, auto_decompress=False)


class Mirror:
    """Mirror the closure of a seed set from ``config.cache_url`` into ``config.mirror_dir``."""

    def __init__(
        self,
        config: Config,
        session: aiohttp.ClientSession,
        scheduler: RequestScheduler | None = None,
    ) -> None:
        self.config = config
        self.session = session
        self.scheduler = scheduler or RequestScheduler(config.delay_sec)
        self.writer = AtomicWriter(Path(config.mirror_dir))
        self.policy = config.retry_policy()
        self.metadata_timeout, self.content_timeout = client_timeouts(config)
        self.tracker = ClosureTracker()
        self.summary = MirrorSummary()
        self._cache_info_ready = False

    async def run(self, seeds: Iterable[ArtifactId], stop: asyncio.Event | None = None) -> MirrorSummary:
        """Process every id reachable from ``seeds``; return the aggregated summary."""
        await self._prepare_root()
        for artifact_id in seeds:
            self.tracker.offer(artifact_id)
        logging.info("Seeded %s store paths, %s workers", self.tracker.seen, self.config.concurrency)

        workers = [asyncio.create_task(self._worker(n), name=f"mirror-worker-{n}") for n in range(self.config.concurrency)]
        pool = asyncio.gather(*workers)
        stop_wait = asyncio.create_task(stop.wait()) if stop is not None else None
        try:
            if stop_wait is None:
                await pool
            else:
                await asyncio.wait({pool, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
                if not pool.done():
                    logging.warning("Stop requested, abandoning in-flight work")
                    await self._cancel(pool, workers)
                else:
                    pool.result()
        except asyncio.CancelledError:
            await self._cancel(pool, workers)
            raise
        finally:
            if stop_wait is not None:
                stop_wait.cancel()

        self.summary.records = self.tracker.records
        return self.summary

    async def _cancel(self, pool: asyncio.Future, workers: list[asyncio.Task]) -> None:
        self.tracker.close()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, pool, return_exceptions=True)
        leftover = self.tracker.abandon(CANCELLED, "run interrupted")
        self.summary.cancelled = True
        self.summary.records = self.tracker.records
        logging.warning("Cancelled with %s store paths unfinished", len(leftover))

    async def _prepare_root(self) -> None:
        try:
            Path(self.config.mirror_dir).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(f"cannot create mirror directory {self.config.mirror_dir}: {exc}") from exc

    async def _ensure_cache_info(self) -> None:
        """Publish ``nix-cache-info`` once the mirror holds at least one artifact."""
        if self._cache_info_ready:
            return
        self._cache_info_ready = True
        if self.writer.is_committed(NIX_CACHE_INFO):
            return
        try:
            await self.writer.commit_bytes(NIX_CACHE_INFO, NIX_CACHE_INFO_BODY)
        except BaseException:
            self._cache_info_ready = False
            raise

    async def _worker(self, n: int) -> None:
        while True:
            artifact_id = await self.tracker.drain_next()
            if artifact_id is None:
                return
            try:
                record = await self.process(artifact_id)
            except MirrorError as exc:
                logging.error("%s: %s: %s", artifact_id, exc.kind, exc)
                record = CompletionRecord.failure(artifact_id, exc.kind, str(exc))
            except Exception as exc:
                logging.exception("%s: unexpected error in worker %s", artifact_id, n)
                record = CompletionRecord.failure(artifact_id, INTERNAL_ERROR, repr(exc))
            self.tracker.mark_done(record)
            self._report_progress()

    async def process(self, artifact_id: ArtifactId) -> CompletionRecord:
        """Metadata, references, NAR, then the narinfo itself."""
        narinfo_rel = f"{artifact_id}.narinfo"
        metadata = self._load_local_metadata(artifact_id, narinfo_rel)
        have_narinfo = metadata is not None
        if metadata is None:
            metadata = await run_with_retry(
                lambda attempt: fetch_metadata(
                    self.session, self.scheduler, self.config.cache_url, artifact_id, self.metadata_timeout
                ),
                self.policy,
                f"{artifact_id}.narinfo",
            )

        for ref in metadata.references:
            if self.tracker.offer(ref):
                logging.debug("%s: discovered %s", artifact_id, ref)
        for token in metadata.invalid_references:
            logging.warning("%s: ignoring invalid reference %r", artifact_id, token)
            self.summary.invalid_references.append((artifact_id, token))

        nar_rel = metadata.nar_relpath
        have_nar = self.writer.is_committed(nar_rel, metadata.file_size)
        if not have_nar:
            mismatched = False

            async def download(attempt: int) -> Path:
                nonlocal mismatched
                try:
                    return await self._download_nar(metadata, nar_rel, attempt, fresh_connection=mismatched)
                except IntegrityMismatch:
                    mismatched = True
                    raise

            await run_with_retry(download, self.policy, nar_rel)
        if not have_narinfo:
            await self.writer.commit_bytes(narinfo_rel, metadata.raw)
        await self._ensure_cache_info()

        skipped = have_nar and have_narinfo
        logging.debug("%s: %s", artifact_id, "already mirrored" if skipped else "mirrored")
        return CompletionRecord.success(artifact_id, skipped=skipped)

    async def _download_nar(
        self, metadata: ArtifactMetadata, nar_rel: str, attempt: int, fresh_connection: bool = False
    ) -> Path:
        url = content_url(self.config.cache_url, metadata.url)
        stream = fetch_and_verify(
            self.session, self.scheduler, url, metadata, self.content_timeout, fresh_connection
        )
        return await self.writer.commit(nar_rel, stream, attempt, owner=metadata.id)

    def _load_local_metadata(self, artifact_id: ArtifactId, narinfo_rel: str) -> ArtifactMetadata | None:
        path = self.writer.final_path(narinfo_rel)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logging.warning("%s: cannot read %s, refetching: %s", artifact_id, path, exc)
            return None
        try:
            return parse_narinfo(artifact_id, raw)
        except CorruptMetadata as exc:
            logging.warning("%s: local narinfo unusable, refetching: %s", artifact_id, exc)
            return None

    def _report_progress(self) -> None:
        every = self.config.progress_every
        done = self.tracker.seen - self.tracker.pending - self.tracker.in_flight
        if every > 0 and done % every == 0:
            logging.info("Progress: %s/%s store paths done", done, self.tracker.seen)
