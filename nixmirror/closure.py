"""Visited set, frontier and completion records for one mirroring run."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass

from .ids import ArtifactId


@dataclass(slots=True, frozen=True)
class CompletionRecord:
    id: ArtifactId
    succeeded: bool
    kind: str = ""
    reason: str = ""
    skipped: bool = False

    @classmethod
    def success(cls, artifact_id: ArtifactId, skipped: bool = False) -> "CompletionRecord":
        return cls(artifact_id, True, skipped=skipped)

    @classmethod
    def failure(cls, artifact_id: ArtifactId, kind: str, reason: str) -> "CompletionRecord":
        return cls(artifact_id, False, kind, reason)


class ClosureTracker:
    """Dedup set and work queue shared by all workers of a run.

    All state changes happen in plain (non-awaiting) methods, so on a single
    event loop each one is atomic with respect to every worker: ``offer``
    checks and inserts in one step and can return True only once per id.
    """

    def __init__(self) -> None:
        self._seen: set[ArtifactId] = set()
        self._frontier: deque[ArtifactId] = deque()
        self._claimed: set[ArtifactId] = set()
        self._records: dict[ArtifactId, CompletionRecord] = {}
        self._changed = asyncio.Event()
        self._closed = False

    @property
    def seen(self) -> int:
        return len(self._seen)

    @property
    def pending(self) -> int:
        return len(self._frontier)

    @property
    def in_flight(self) -> int:
        return len(self._claimed)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def records(self) -> dict[ArtifactId, CompletionRecord]:
        return dict(self._records)

    def offer(self, artifact_id: ArtifactId) -> bool:
        """Queue ``artifact_id`` unless it was seen before. First discovery wins."""
        if artifact_id in self._seen or self._closed:
            return False
        self._seen.add(artifact_id)
        self._frontier.append(artifact_id)
        self._changed.set()
        return True

    def try_claim(self) -> ArtifactId | None:
        if self._closed or not self._frontier:
            return None
        artifact_id = self._frontier.popleft()
        self._claimed.add(artifact_id)
        return artifact_id

    def finished(self) -> bool:
        """True once nothing is pending and nothing is in flight (or closed)."""
        return self._closed or (not self._frontier and not self._claimed)

    async def drain_next(self) -> ArtifactId | None:
        """Claim the next pending id, waiting while other workers may still add more.

        Returns None when the run is over.
        """
        while True:
            artifact_id = self.try_claim()
            if artifact_id is not None:
                return artifact_id
            if self.finished():
                self._changed.set()
                return None
            self._changed.clear()
            await self._changed.wait()

    def mark_done(self, record: CompletionRecord) -> None:
        artifact_id = record.id
        if artifact_id in self._records:
            raise RuntimeError(f"{artifact_id} already has a completion record")
        if artifact_id not in self._claimed:
            raise RuntimeError(f"{artifact_id} was never claimed")
        self._claimed.discard(artifact_id)
        self._records[artifact_id] = record
        self._changed.set()

    def close(self) -> None:
        """Stop handing out work; wakes every waiting worker."""
        self._closed = True
        self._changed.set()

    def abandon(self, kind: str, reason: str) -> list[ArtifactId]:
        """Record a failure for every id still pending or in flight."""
        self.close()
        leftover = list(self._claimed) + list(self._frontier)
        self._claimed.clear()
        self._frontier.clear()
        for artifact_id in leftover:
            self._records[artifact_id] = CompletionRecord.failure(artifact_id, kind, reason)
        return leftover
