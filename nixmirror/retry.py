"""Per-artifact retry state machine.

``PENDING -> FETCHING -> RETRYING -> FETCHING -> ... -> SUCCEEDED | FAILED``

Transient errors and integrity mismatches have separate budgets. A
mismatch may come from a flaky connection or from a tampered mirror, so it
gets at most ``integrity_retries`` fresh attempts and is never accepted.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from .errors import IntegrityMismatch, MirrorError, TransientError

T = TypeVar("T")


class Phase(enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 4
    integrity_retries: int = 1
    backoff_base_sec: float = 0.5
    backoff_max_sec: float = 30.0

    def delay(self, retry_number: int) -> float:
        """Backoff before the ``retry_number``-th retry (1-based)."""
        if retry_number < 1:
            return 0.0
        return min(self.backoff_max_sec, self.backoff_base_sec * (2 ** (retry_number - 1)))


@dataclass(slots=True)
class RetryState:
    policy: RetryPolicy
    phase: Phase = Phase.PENDING
    attempt: int = 0
    transient_failures: int = 0
    integrity_failures: int = 0
    errors: list[BaseException] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(0, self.attempt - 1)

    @property
    def last_error(self) -> BaseException | None:
        return self.errors[-1] if self.errors else None

    def begin(self) -> int:
        if self.phase not in (Phase.PENDING, Phase.RETRYING):
            raise RuntimeError(f"cannot start an attempt from {self.phase.name}")
        self.phase = Phase.FETCHING
        self.attempt += 1
        return self.attempt

    def succeed(self) -> None:
        if self.phase is not Phase.FETCHING:
            raise RuntimeError(f"cannot succeed from {self.phase.name}")
        self.phase = Phase.SUCCEEDED

    def fail(self, exc: BaseException) -> bool:
        """Record a failed attempt. Return True if another attempt is allowed."""
        if self.phase is not Phase.FETCHING:
            raise RuntimeError(f"cannot fail from {self.phase.name}")
        self.errors.append(exc)
        if isinstance(exc, TransientError):
            self.transient_failures += 1
            allowed = self.transient_failures <= self.policy.max_retries
        elif isinstance(exc, IntegrityMismatch):
            self.integrity_failures += 1
            allowed = self.integrity_failures <= self.policy.integrity_retries
        else:
            allowed = False
        self.phase = Phase.RETRYING if allowed else Phase.FAILED
        return allowed


async def run_with_retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    label: str,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Run ``operation(attempt)`` until it succeeds or the policy gives up.

    The last error is re-raised when the state machine reaches FAILED.
    """
    state = RetryState(policy)
    while True:
        attempt = state.begin()
        try:
            result = await operation(attempt)
        except MirrorError as exc:
            if not state.fail(exc):
                raise
            delay = policy.delay(state.retries + 1)
            logging.warning("%s: attempt %s failed (%s: %s), retrying in %.2fs", label, attempt, exc.kind, exc, delay)
            await sleep(delay)
            continue
        state.succeed()
        return result
