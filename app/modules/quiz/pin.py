"""Game code (PIN) allocation.

``CodeAllocator.allocate`` draws random 6-digit candidates and checks them
against storage, falls back to a clock-derived candidate plus one offset
attempt, and gives up with ``AllocationUnavailableError`` rather than looping.
Every existence check runs under a timeout and is retried on transient
storage failures. The check is advisory only: the unique index on
``quiz_sessions.code`` is what actually guarantees uniqueness, and the
registry retries the insert when it loses a race.

Logging is attached by ``log_allocation``; the allocation itself only returns
an ``AllocationResult`` or raises.
"""

from __future__ import annotations

import asyncio
import functools
import random
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import exc as sa_exc

from app.core.logging import get_logger, log_context
from app.modules.quiz.errors import (
    AllocationUnavailableError,
    QuizSessionError,
    TransientInfraError,
)

logger = get_logger(__name__)

CODE_PATTERN = re.compile(r"^[0-9]{6}$")
CODE_MIN = 100_000
CODE_MAX = 999_999

T = TypeVar("T")
CodeExists = Callable[[str], Awaitable[bool]]


def is_valid_code(code: str) -> bool:
    return bool(CODE_PATTERN.match(code or ""))


def is_transient(error: BaseException) -> bool:
    """Storage failures worth retrying (timeouts, dropped connections)."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, sa_exc.TimeoutError)):
        return True
    if isinstance(error, sa_exc.OperationalError):
        return True
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return True
    return False


async def call_with_retry(
    op: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    retries: int,
    backoff_ms: int = 0,
    rng: Optional[random.Random] = None,
) -> tuple[T, int]:
    """Run ``op`` under a timeout, retrying transient failures.

    Returns ``(result, transient_failures)``. Raises TransientInfraError once
    ``retries`` attempts have all failed transiently.
    """
    failures = 0
    last: Optional[BaseException] = None
    for _ in range(max(1, retries)):
        try:
            return await asyncio.wait_for(op(), timeout=timeout), failures
        except Exception as e:
            if not is_transient(e):
                raise
            failures += 1
            last = e
            if backoff_ms:
                await asyncio.sleep((rng or random).uniform(0, backoff_ms) / 1000)
    raise TransientInfraError(f"Storage unavailable: {last!r}")


@dataclass
class AllocationResult:
    code: str
    attempts: int
    strategy: str
    transient_failures: int = 0


def log_allocation(fn: Callable[..., Awaitable[AllocationResult]]):
    """Structured logging around an allocation coroutine."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs) -> AllocationResult:
        started = time.perf_counter()
        try:
            result = await fn(*args, **kwargs)
        except QuizSessionError as e:
            logger.error(
                "Code allocation failed: %s",
                e.message,
                extra=log_context(kind=e.kind),
            )
            raise
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        level = "warning" if result.strategy != "random" or result.transient_failures else "debug"
        getattr(logger, level)(
            "Allocated code via %s after %d attempt(s), %d transient failure(s), %dms",
            result.strategy,
            result.attempts,
            result.transient_failures,
            elapsed_ms,
            extra=log_context(code=result.code),
        )
        return result

    return wrapper


class CodeAllocator:
    def __init__(
        self,
        exists: CodeExists,
        *,
        random_attempts: int = 10,
        storage_timeout: float = 5.0,
        storage_retries: int = 3,
        backoff_ms: int = 100,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        self.exists = exists
        self.random_attempts = max(1, int(random_attempts))
        self.storage_timeout = storage_timeout
        self.storage_retries = max(1, int(storage_retries))
        self.backoff_ms = backoff_ms
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    def random_candidate(self) -> str:
        return str(self.rng.randint(CODE_MIN, CODE_MAX))

    def clock_candidate(self) -> str:
        micros = self.clock() // 1_000
        return f"{micros % 1_000_000:06d}"

    def offset_candidate(self, base: str) -> str:
        offset = self.rng.randrange(1000)
        return str((int(base) + offset) % 900_000 + CODE_MIN)

    async def _is_taken(self, code: str) -> tuple[bool, int]:
        return await call_with_retry(
            lambda: self.exists(code),
            timeout=self.storage_timeout,
            retries=self.storage_retries,
            backoff_ms=self.backoff_ms,
            rng=self.rng,
        )

    @log_allocation
    async def allocate(self) -> AllocationResult:
        attempts = 0
        failures = 0
        for _ in range(self.random_attempts):
            attempts += 1
            candidate = self.random_candidate()
            taken, failed = await self._is_taken(candidate)
            failures += failed
            if not taken:
                return AllocationResult(candidate, attempts, "random", failures)

        for candidate, strategy in self._fallbacks():
            attempts += 1
            taken, failed = await self._is_taken(candidate)
            failures += failed
            if not taken:
                return AllocationResult(candidate, attempts, strategy, failures)

        raise AllocationUnavailableError(
            f"No free game code after {attempts} attempts"
        )

    def _fallbacks(self):
        base = self.clock_candidate()
        yield base, "clock"
        yield self.offset_candidate(base), "clock-offset"
