"""Message delivery with retry, backoff and per-recipient deduplication.

Each :class:`DispatchTask` moves through::

    Pending -> Sending -> Sent
                       -> Retrying -> Sending ...
                       -> Failed

Retries are scheduled with ``loop.call_later`` and re-submitted as fresh
asyncio tasks, so a backing-off delivery never occupies the event loop or
blocks deliveries to other recipients.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from revbot.config import RetryConfig
from revbot.errors import DeliveryFailed, PermanentError, TransientError
from revbot.interfaces import ChatProvider
from revbot.models import DeliveryState, DispatchTask

logger = logging.getLogger(__name__)


class DispatchOutcome(Enum):
    SENT = "sent"
    DUPLICATE = "duplicate"  # already delivered within the dedup window
    FAILED = "failed"
    ABANDONED = "abandoned"  # dropped during shutdown


@dataclass(frozen=True)
class DispatchResult:
    outcome: DispatchOutcome
    attempts: int
    delays: tuple[float, ...] = ()
    error: DeliveryFailed | None = None


class DedupWindow:
    """Process-wide ``dedup_key -> last_sent_at`` map with bounded retention.

    A key is *reserved* while its delivery is in flight so that concurrent
    or redelivered webhooks cannot send it a second time.
    """

    def __init__(self, retention: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.retention = retention
        self._clock = clock
        self._sent: dict[str, float] = {}  # insertion order is send order
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sent)

    def _evict(self, now: float) -> None:
        cutoff = now - self.retention
        while self._sent:
            key, sent_at = next(iter(self._sent.items()))
            if sent_at > cutoff:
                break
            del self._sent[key]

    def reserve(self, key: str) -> bool:
        """Claim ``key`` for a delivery. False if it was sent or is in flight."""
        with self._lock:
            self._evict(self._clock())
            if key in self._sent or key in self._in_flight:
                return False
            self._in_flight.add(key)
            return True

    def mark_sent(self, key: str) -> None:
        with self._lock:
            self._in_flight.discard(key)
            self._sent.pop(key, None)
            self._sent[key] = self._clock()

    def release(self, key: str) -> None:
        """Give up a reservation without recording a send."""
        with self._lock:
            self._in_flight.discard(key)

    def last_sent_at(self, key: str) -> float | None:
        with self._lock:
            self._evict(self._clock())
            return self._sent.get(key)


@dataclass
class BackoffPolicy:
    """Exponential backoff: ``base_delay * 2**n`` capped, plus jitter.

    ``n`` is the number of retries already made. Delays never shrink from
    one retry to the next. A server ``Retry-After`` hint is always honoured
    in full; a hint longer than ``max_delay`` means no retry at all.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.5
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_config(cls, config: RetryConfig) -> BackoffPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )

    def should_retry(self, attempts: int, retry_after: float | None = None) -> bool:
        if retry_after is not None and retry_after > self.max_delay:
            return False
        return attempts < self.max_attempts

    def delay(self, retries: int, previous: float = 0.0, retry_after: float | None = None) -> float:
        exponential = min(self.max_delay, self.base_delay * (2 ** retries))
        delay = exponential + (self.rng.uniform(0, self.jitter) if self.jitter else 0.0)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return max(delay, previous)


class Dispatcher:
    """Delivers composed messages through a :class:`ChatProvider`."""

    def __init__(self, provider: ChatProvider, dedup: DedupWindow, policy: BackoffPolicy) -> None:
        self._provider = provider
        self._dedup = dedup
        self._policy = policy
        self._closing = False
        self._running: set[asyncio.Task] = set()
        self._timers: dict[int, tuple[asyncio.TimerHandle, DispatchTask, asyncio.Future]] = {}
        self._delays: dict[int, list[float]] = {}

    # -- public API ----------------------------------------------------------

    def submit(self, task: DispatchTask) -> asyncio.Future:
        """Start delivering ``task``; the returned future yields a DispatchResult.

        Must be called from within a running event loop.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        if not self._dedup.reserve(task.dedup_key):
            logger.info(
                "Skipping duplicate %s notification for %s to %s",
                task.event_kind.value,
                task.change_identifier,
                task.recipient_account_id,
            )
            task.transition(DeliveryState.SENT)
            future.set_result(DispatchResult(DispatchOutcome.DUPLICATE, attempts=0))
            return future

        self._delays[id(task)] = []
        self._start(task, future)
        return future

    def abandon_retries(self) -> None:
        """Drop every scheduled retry and refuse to schedule new ones.

        Tasks submitted afterwards still get their first attempt.
        """
        self._closing = True
        for handle, task, future in list(self._timers.values()):
            handle.cancel()
            self._abandon(task, future)
        self._timers.clear()

    async def close(self, timeout: float) -> None:
        """Abandon scheduled retries and wait up to ``timeout`` for in-flight sends."""
        self.abandon_retries()

        if self._running:
            _, pending = await asyncio.wait(set(self._running), timeout=timeout)
            for running in pending:
                running.cancel()
            if pending:
                logger.warning("Cancelled %d in-flight deliveries at shutdown", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._running) + len(self._timers)

    # -- delivery ------------------------------------------------------------

    def _start(self, task: DispatchTask, future: asyncio.Future) -> None:
        running = asyncio.create_task(self._attempt(task, future))
        self._running.add(running)
        running.add_done_callback(self._running.discard)

    def _resubmit(self, task: DispatchTask, future: asyncio.Future) -> None:
        self._timers.pop(id(task), None)
        if self._closing:
            self._abandon(task, future)
            return
        self._start(task, future)

    async def _attempt(self, task: DispatchTask, future: asyncio.Future) -> None:
        task.transition(DeliveryState.SENDING)
        task.attempt_count += 1
        try:
            await asyncio.to_thread(
                self._provider.send, task.recipient_account_id, task.message_body
            )
        except asyncio.CancelledError:
            self._abandon(task, future)
            raise
        except TransientError as exc:
            self._retry_or_fail(task, future, exc)
        except PermanentError as exc:
            self._fail(task, future, exc)
        except Exception as exc:
            logger.exception("Unexpected error delivering %s", task.change_identifier)
            self._fail(task, future, exc)
        else:
            self._dedup.mark_sent(task.dedup_key)
            task.transition(DeliveryState.SENT)
            logger.info(
                "Sent %s notification for %s to %s (attempt %d)",
                task.event_kind.value,
                task.change_identifier,
                task.recipient_account_id,
                task.attempt_count,
            )
            self._finish(task, future, DispatchOutcome.SENT)

    def _retry_or_fail(self, task: DispatchTask, future: asyncio.Future, exc: TransientError) -> None:
        if not self._policy.should_retry(task.attempt_count, exc.retry_after):
            self._fail(task, future, exc)
            return
        if self._closing:
            self._abandon(task, future)
            return

        delay = self._policy.delay(
            task.attempt_count - 1, previous=task.last_delay, retry_after=exc.retry_after
        )
        task.last_delay = delay
        self._delays.setdefault(id(task), []).append(delay)
        task.transition(DeliveryState.RETRYING)
        logger.warning(
            "Transient failure sending %s to %s (attempt %d/%d): %s; retrying in %.2fs",
            task.change_identifier,
            task.recipient_account_id,
            task.attempt_count,
            self._policy.max_attempts,
            exc,
            delay,
        )

        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, self._resubmit, task, future)
        self._timers[id(task)] = (handle, task, future)

    def _fail(self, task: DispatchTask, future: asyncio.Future, exc: Exception) -> None:
        self._dedup.release(task.dedup_key)
        task.transition(DeliveryState.FAILED)
        error = DeliveryFailed(task.change_identifier, task.recipient_account_id, exc)
        logger.error(
            "Delivery failed for %s to %s after %d attempt(s): %s",
            task.change_identifier,
            task.recipient_account_id,
            task.attempt_count,
            type(exc).__name__,
        )
        self._finish(task, future, DispatchOutcome.FAILED, error)

    def _abandon(self, task: DispatchTask, future: asyncio.Future) -> None:
        self._dedup.release(task.dedup_key)
        if future.done():
            return
        logger.info("Abandoned delivery for %s at shutdown", task.change_identifier)
        self._finish(task, future, DispatchOutcome.ABANDONED)

    def _finish(
        self,
        task: DispatchTask,
        future: asyncio.Future,
        outcome: DispatchOutcome,
        error: DeliveryFailed | None = None,
    ) -> None:
        delays = tuple(self._delays.pop(id(task), ()))
        if not future.done():
            future.set_result(
                DispatchResult(outcome, attempts=task.attempt_count, delays=delays, error=error)
            )
