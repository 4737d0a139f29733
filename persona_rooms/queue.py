"""Rate-limited request queue: one per (provider, tier).

Every outbound generation call is wrapped in a task closure and enqueued.
A single processing loop per queue runs tasks strictly in order, spacing
their start times so the requests-per-minute budget is never exceeded:

    min_interval = ceil(60000 / rpm) ms
    wait         = max(0, min_interval - since_last_start) + uniform(0, jitter)

A task's failure rejects only that task's future; the loop keeps going.
clear() rejects everything that has not started yet with QueueCancelled.

The clock, sleep and random source are injectable so tests can drive the
spacing with a fake clock instead of real waiting.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel

from persona_rooms.config import get_config, queue_settings
from persona_rooms.errors import QueueCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class QueueRequest:
    task: Callable[[], Awaitable[Any]]
    description: str
    enqueued_at: float
    future: asyncio.Future = field(repr=False)


class QueueStatus(BaseModel):
    name: str
    pending: int
    processing: bool
    next_available_at: float  # clock() units, seconds


class RateLimitedQueue:
    """Serializes async tasks under a requests-per-minute budget.

    Args:
        name:      Queue name, used in logs and status, e.g. "gemini:main".
        rpm:       Requests per minute. Must be positive.
        jitter_ms: Upper bound of the random extra delay before each task.
        clock:     Monotonic clock in seconds. Defaults to time.monotonic.
        sleep:     Async sleep in seconds. Defaults to asyncio.sleep.
        rng:       Random source for the jitter.
    """

    def __init__(
        self,
        name: str,
        rpm: int,
        jitter_ms: int = 0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if rpm <= 0:
            raise ValueError(f"rpm must be positive, got {rpm}")
        self.name = name
        self.rpm = rpm
        self.jitter_ms = jitter_ms
        self.min_interval = math.ceil(60000 / rpm) / 1000
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._pending: deque[QueueRequest] = deque()
        self._waiting: QueueRequest | None = None
        self._processing = False
        self._last_start: float | None = None
        self._worker: asyncio.Task | None = None

    async def enqueue(self, task: Callable[[], Awaitable[T]], description: str = "") -> T:
        """Queue task and wait for its result (or its exception)."""
        loop = asyncio.get_running_loop()
        request = QueueRequest(
            task=task,
            description=description,
            enqueued_at=self._clock(),
            future=loop.create_future(),
        )
        self._pending.append(request)
        logger.debug("queue %s: enqueued %r (pending=%d)", self.name, description, len(self._pending))

        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run())
        return await request.future

    def _wait_time(self) -> float:
        wait = 0.0
        if self._last_start is not None:
            elapsed = self._clock() - self._last_start
            wait = max(0.0, self.min_interval - elapsed)
        if self.jitter_ms > 0:
            wait += self._rng.uniform(0, self.jitter_ms) / 1000
        return wait

    async def _run(self) -> None:
        self._processing = True
        try:
            while self._pending:
                request = self._pending.popleft()
                if request.future.done():
                    continue  # caller gave up

                wait = self._wait_time()
                if wait > 0:
                    self._waiting = request
                    logger.debug("queue %s: waiting %.2fs before %r", self.name, wait, request.description)
                    await self._sleep(wait)
                    self._waiting = None
                    if request.future.done():
                        continue  # cleared while waiting

                self._last_start = self._clock()
                logger.debug("queue %s: start %r", self.name, request.description)
                try:
                    result = await request.task()
                except Exception as e:
                    logger.warning("queue %s: %r failed: %s", self.name, request.description, e)
                    if not request.future.done():
                        request.future.set_exception(e)
                else:
                    logger.debug("queue %s: done %r", self.name, request.description)
                    if not request.future.done():
                        request.future.set_result(result)
        finally:
            self._processing = False
            self._waiting = None

    def get_status(self) -> QueueStatus:
        if self._last_start is None:
            next_available = self._clock()
        else:
            next_available = max(self._clock(), self._last_start + self.min_interval)
        return QueueStatus(
            name=self.name,
            pending=len(self._pending) + (1 if self._waiting else 0),
            processing=self._processing,
            next_available_at=next_available,
        )

    def clear(self) -> int:
        """Reject every not-yet-started request. Returns how many were dropped."""
        dropped = list(self._pending)
        self._pending.clear()
        if self._waiting is not None:
            dropped.append(self._waiting)
            self._waiting = None

        count = 0
        for request in dropped:
            if not request.future.done():
                request.future.set_exception(
                    QueueCancelled(f"Queue {self.name} cleared: {request.description}")
                )
                count += 1
        if count:
            logger.info("queue %s: cleared %d pending request(s)", self.name, count)
        return count


# ---------------------------------------------------------------------------
# Registry, one queue per (provider, tier)
# ---------------------------------------------------------------------------

_queues: dict[str, RateLimitedQueue] = {}


def get_queue(provider: str, tier: str = "main", config: dict[str, Any] | None = None) -> RateLimitedQueue:
    """Return the queue for (provider, tier), creating it from config on first use."""
    name = f"{provider}:{tier}"
    queue = _queues.get(name)
    if queue is None:
        settings = queue_settings(config if config is not None else get_config(), provider, tier)
        queue = RateLimitedQueue(name, int(settings["rpm"]), int(settings["jitter_ms"]))
        _queues[name] = queue
        logger.info("queue %s created: rpm=%s jitter_ms=%s", name, settings["rpm"], settings["jitter_ms"])
    return queue


def register_queue(queue: RateLimitedQueue) -> None:
    """Install a pre-built queue (e.g. one with a fake clock) under its name."""
    _queues[queue.name] = queue


def get_all_queue_status() -> list[QueueStatus]:
    return [q.get_status() for q in _queues.values()]


def clear_all_queues() -> int:
    return sum(q.clear() for q in _queues.values())


def reset_queues() -> None:
    _queues.clear()
