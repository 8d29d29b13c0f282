# app/infra/pg_listen_async.py
"""
Change feeds over PostgreSQL LISTEN/NOTIFY (asyncpg).

A feed holds one pooled connection for its whole lifetime.  It LISTENs
first, then yields the initial snapshot, then re-runs the snapshot query
after each relevant notification.  Bursts of notifications that arrive
while a snapshot is being fetched are coalesced into one re-fetch, which
keeps snapshots in commit order without reordering.

Losing the listener connection ends the feed with ``ConnectionError``;
reconnecting is the subscriber's decision.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import asyncpg

from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

JOB_CHANNEL = "job_changes"
CHECKOUT_CHANNEL = "checkout_session_changes"

_CLOSED = object()


def _decode(payload: str) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except ValueError:
        logger.warning(f"Ignoring malformed notification payload: {payload[:100]!r}")
        return {}
    return data if isinstance(data, dict) else {}


async def pg_change_feed(
    channel: str,
    fetch: Callable[[], Awaitable[T]],
    relevant: Callable[[dict[str, Any]], bool] | None = None,
) -> AsyncIterator[T]:
    pool = await get_pool()
    conn: asyncpg.Connection = await pool.acquire()
    queue: asyncio.Queue = asyncio.Queue()

    def on_notify(_conn, _pid, _channel, payload: str) -> None:
        data = _decode(payload)
        if relevant is None or relevant(data):
            queue.put_nowait(data)

    def on_terminate(_conn) -> None:
        queue.put_nowait(_CLOSED)

    listening = False
    try:
        conn.add_termination_listener(on_terminate)
        await conn.add_listener(channel, on_notify)
        listening = True
        logger.debug(f"LISTEN {channel}")

        yield await fetch()
        while True:
            item = await queue.get()
            while item is not _CLOSED and not queue.empty():
                item = queue.get_nowait()
            if item is _CLOSED:
                raise ConnectionError(f"listener connection for {channel} was closed")
            yield await fetch()
    finally:
        conn.remove_termination_listener(on_terminate)
        if listening:
            try:
                await conn.remove_listener(channel, on_notify)
                logger.debug(f"UNLISTEN {channel}")
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
                logger.warning(f"UNLISTEN {channel} failed; dropping connection", exc_info=True)
                conn.terminate()
        await pool.release(conn)
