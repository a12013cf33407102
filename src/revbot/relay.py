"""Fan-out from a classified event to per-recipient deliveries."""

from __future__ import annotations

import asyncio
import logging

from revbot.composer import compose
from revbot.config import Config
from revbot.directory import DirectoryCache, DirectoryResolver
from revbot.dispatcher import (
    BackoffPolicy,
    DedupWindow,
    DispatchOutcome,
    DispatchResult,
    Dispatcher,
)
from revbot.errors import PermanentError, TransientError
from revbot.interfaces import ChatProvider
from revbot.models import DispatchTask, ResolvedRecipient, ReviewEvent
from revbot.redaction import fingerprint

logger = logging.getLogger(__name__)


class Relay:
    """Runs resolve -> compose -> dispatch for every recipient of an event.

    Each recipient gets its own asyncio task, so a slow lookup or a failing
    delivery for one person never holds up the others.
    """

    def __init__(
        self,
        resolver: DirectoryResolver,
        dispatcher: Dispatcher,
        policy: BackoffPolicy,
        drain_timeout: float = 10,
    ) -> None:
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._policy = policy
        self._drain_timeout = drain_timeout
        self._tasks: set[asyncio.Task] = set()
        self._closing = False
        self._stopping = asyncio.Event()

    def accept(self, event: ReviewEvent) -> list[asyncio.Task]:
        """Schedule delivery of ``event`` to all of its recipients.

        Returns immediately; must be called from within a running event loop.
        """
        if self._closing:
            logger.warning("Relay is shutting down; dropping %s", event.change_identifier)
            return []

        logger.info(
            "Accepted %s on %s for %d recipient(s)",
            event.event_kind.value,
            event.change_identifier,
            len(event.recipients),
        )
        scheduled = []
        for email in sorted(event.recipients):
            task = asyncio.create_task(self._deliver(event, email))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            scheduled.append(task)
        return scheduled

    async def drain(self) -> None:
        """Wait until every accepted event has finished (sent, skipped or failed)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Stop accepting work and wind down within the drain timeout.

        Scheduled retries are abandoned straight away; lookups and sends
        already under way get up to ``drain_timeout`` to finish.
        """
        self._closing = True
        self._stopping.set()
        self._dispatcher.abandon_retries()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._drain_timeout
        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=self._drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Cancelled %d unfinished notifications at shutdown", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        await self._dispatcher.close(timeout=max(0.0, deadline - loop.time()))

    # -- per-recipient pipeline ------------------------------------------------

    async def _deliver(self, event: ReviewEvent, email: str) -> DispatchResult | None:
        try:
            recipient = await self._resolve(email)
            if recipient is None:
                return None

            task = DispatchTask(
                event_kind=event.event_kind,
                change_identifier=event.change_identifier,
                recipient_account_id=recipient.account_id,
                message_body=compose(event, email),
            )
            result = await self._dispatcher.submit(task)
        except asyncio.CancelledError:
            raise
        except Exception:
            # One recipient's failure must never affect its siblings.
            logger.exception(
                "Unexpected error notifying %s about %s",
                fingerprint(email),
                event.change_identifier,
            )
            return None

        if result.outcome is DispatchOutcome.FAILED:
            logger.debug("Gave up on %s for %s", event.change_identifier, fingerprint(email))
        return result

    async def _resolve(self, email: str) -> ResolvedRecipient | None:
        """Resolve with the dispatcher's backoff policy for transient errors."""
        attempts = 0
        previous = 0.0
        while True:
            attempts += 1
            try:
                return await asyncio.to_thread(self._resolver.resolve, email)
            except PermanentError as exc:
                logger.warning("Directory lookup rejected for %s: %s", fingerprint(email), exc)
                return None
            except TransientError as exc:
                if self._closing or not self._policy.should_retry(attempts, exc.retry_after):
                    logger.error(
                        "Directory lookup for %s failed after %d attempt(s): %s",
                        fingerprint(email),
                        attempts,
                        exc,
                    )
                    return None
                previous = self._policy.delay(
                    attempts - 1, previous=previous, retry_after=exc.retry_after
                )
                logger.warning(
                    "Directory lookup for %s unavailable (%s); retrying in %.2fs",
                    fingerprint(email),
                    exc,
                    previous,
                )
                if await self._backoff(previous):
                    logger.info(
                        "Abandoned directory lookup for %s at shutdown", fingerprint(email)
                    )
                    return None

    async def _backoff(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; True if shutdown began in the meantime."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


def build_relay(config: Config, provider: ChatProvider) -> Relay:
    """Wire the resolver, dedup window and dispatcher described by ``config``."""
    policy = BackoffPolicy.from_config(config.retry)
    resolver = DirectoryResolver(provider, DirectoryCache(ttl=config.cache_ttl))
    dispatcher = Dispatcher(provider, DedupWindow(retention=config.dedup_window), policy)
    return Relay(resolver, dispatcher, policy, drain_timeout=config.drain_timeout)
