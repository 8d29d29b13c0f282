# app/core/dispatch/subscriptions.py
"""
Live change subscriptions, at most one per logical key.

A ``SubscriptionManager`` owns the key -> handle map.  Each handle runs a
pump task that reads snapshots from a change feed (an async iterator
opened lazily by the pump), optionally maps them into the public shape,
and hands them to ``on_change`` in the order the feed produced them.

Guarantees:
- ``subscribe`` on a key that already has a live handle retires the old
  handle first.  A retired handle never invokes its callbacks again, even
  if its pump task has not finished unwinding yet.
- ``unsubscribe`` / ``Subscription.cancel`` are idempotent.
- ``unsubscribe_all`` leaves the manager as if freshly constructed.
- Errors raised by the feed (or by a callback) go to ``on_error`` once and
  end the subscription.  There is no automatic retry or re-subscribe.

All mutations of the map happen under one ``asyncio.Lock``.  Pump tasks
are never awaited while that lock is held.
"""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

FeedFactory = Callable[[], AsyncIterator[Any]]
ChangeCallback = Callable[[Any], Awaitable[None] | None]
ErrorCallback = Callable[[BaseException], Awaitable[None] | None]
Transform = Callable[[Any], Awaitable[Any] | Any]


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def job_key(job_id: str) -> str:
    return f"job:{job_id}"


def creator_jobs_key(creator_id: str, signature: str = "all") -> str:
    return f"creator:{creator_id}:{signature}"


def agent_jobs_key(agent_id: str, signature: str = "all") -> str:
    return f"agent:{agent_id}:{signature}"


def available_jobs_key(agent_id: str) -> str:
    return f"available:{agent_id}"


def key_kind(key: str) -> str:
    return key.split(":", 1)[0]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class Subscription:
    """Handle for one live feed.  ``cancel()`` is safe to call any number of times."""
    key: str
    manager: "SubscriptionManager"
    open_feed: FeedFactory
    on_change: ChangeCallback
    on_error: ErrorCallback | None = None
    transform: Transform | None = None
    task: asyncio.Task | None = field(default=None, repr=False)
    _active: bool = field(default=True, repr=False)
    delivered: int = 0

    @property
    def active(self) -> bool:
        return self._active

    async def cancel(self) -> None:
        await self.manager._cancel_handle(self)

    async def wait_closed(self) -> None:
        """Wait for the pump task to finish unwinding (feed closed)."""
        task = self.task
        if task is None or task.done() or task is asyncio.current_task():
            return
        await asyncio.wait([task])


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class SubscriptionManager:
    """
    Owns every live subscription of one process or session.

    Construct one per process (or one per client connection) and pass it
    by reference; there is no module-level instance.
    """

    def __init__(self, name: str = "default"):
        self.name = name
        self._lock = asyncio.Lock()
        self._subscriptions: dict[str, Subscription] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, key: str) -> bool:
        return key in self._subscriptions

    def active_keys(self) -> list[str]:
        return sorted(self._subscriptions)

    def get(self, key: str) -> Subscription | None:
        return self._subscriptions.get(key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        key: str,
        open_feed: FeedFactory,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
        transform: Transform | None = None,
    ) -> Subscription:
        """Open a feed under ``key``, replacing any live subscription for it."""
        sub = Subscription(
            key=key,
            manager=self,
            open_feed=open_feed,
            on_change=on_change,
            on_error=on_error,
            transform=transform,
        )
        async with self._lock:
            previous = self._subscriptions.pop(key, None)
            if previous is not None:
                self._retire(previous)
                logger.debug(f"[{self.name}] Replacing subscription {key}")
            self._subscriptions[key] = sub
            sub.task = asyncio.create_task(self._pump(sub), name=f"subscription:{key}")

        AppMetrics.subscription_opened(key_kind(key))
        logger.debug(f"[{self.name}] Subscribed {key}")

        if previous is not None:
            await previous.wait_closed()
        return sub

    async def unsubscribe(self, key: str) -> None:
        """Cancel the live subscription for ``key``; unknown keys are a no-op."""
        async with self._lock:
            sub = self._subscriptions.pop(key, None)
            if sub is not None:
                self._retire(sub)
        if sub is not None:
            logger.debug(f"[{self.name}] Unsubscribed {key}")
            await sub.wait_closed()

    async def unsubscribe_all(self) -> None:
        async with self._lock:
            subs = list(self._subscriptions.values())
            self._subscriptions.clear()
            for sub in subs:
                self._retire(sub)
        if subs:
            logger.debug(f"[{self.name}] Unsubscribed all ({len(subs)})")
        for sub in subs:
            await sub.wait_closed()

    def close_all(self) -> list[asyncio.Task]:
        """Retire every subscription without awaiting; returns the pumps still unwinding.

        Safe outside the lock: no critical section awaits while holding it.
        """
        subs = list(self._subscriptions.values())
        self._subscriptions.clear()
        for sub in subs:
            self._retire(sub)
        if subs:
            logger.debug(f"[{self.name}] Closed all ({len(subs)})")
        return [sub.task for sub in subs if sub.task is not None and not sub.task.done()]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _cancel_handle(self, sub: Subscription) -> None:
        async with self._lock:
            if self._subscriptions.get(sub.key) is sub:
                del self._subscriptions[sub.key]
            self._retire(sub)
        await sub.wait_closed()

    def _retire(self, sub: Subscription) -> None:
        """Make ``sub`` inert and stop its pump.  Caller holds the lock."""
        if not sub._active:
            return
        sub._active = False
        AppMetrics.subscription_closed(key_kind(sub.key))
        # A callback may retire its own subscription; the pump then exits
        # after the callback returns instead of being cancelled mid-await.
        if sub.task is not None and sub.task is not asyncio.current_task():
            sub.task.cancel()

    async def _pump(self, sub: Subscription) -> None:
        feed: AsyncIterator[Any] | None = None
        try:
            feed = sub.open_feed()
            async for snapshot in feed:
                if not sub.active:
                    break
                payload = snapshot
                if sub.transform is not None:
                    payload = await _maybe_await(sub.transform(snapshot))
                if not sub.active:
                    break
                await _maybe_await(sub.on_change(payload))
                sub.delivered += 1
                if not sub.active:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if sub.active:
                logger.error(f"[{self.name}] Feed error on {sub.key}: {exc}", exc_info=True)
                AppMetrics.feed_error(key_kind(sub.key))
                await self._detach(sub)
                if sub.on_error is not None:
                    try:
                        await _maybe_await(sub.on_error(exc))
                    except Exception:
                        logger.exception(f"[{self.name}] on_error callback failed for {sub.key}")
        finally:
            await self._close_feed(sub, feed)
            if sub.active:
                # Feed ended by itself
                await self._detach(sub)

    async def _detach(self, sub: Subscription) -> None:
        async with self._lock:
            if self._subscriptions.get(sub.key) is sub:
                del self._subscriptions[sub.key]
            self._retire(sub)

    async def _close_feed(self, sub: Subscription, feed: AsyncIterator[Any] | None) -> None:
        aclose = getattr(feed, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(f"[{self.name}] Error closing feed for {sub.key}", exc_info=True)
