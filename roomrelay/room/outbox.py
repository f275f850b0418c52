"""Per-connection outbound queue.

The coordinator never awaits a transport send. Each connection gets a
bounded queue drained by its own writer task, so a peer that stops reading
only fills its own queue. A full queue, a send error or a send that exceeds
the timeout marks the connection as failed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from roomrelay.room.models import Connection

logger = logging.getLogger(__name__)


class Outbox:
    def __init__(
        self,
        connection: Connection,
        on_failure: Callable[[Connection], None],
        limit: int = 256,
        timeout: float = 10.0,
    ) -> None:
        self.connection = connection
        self._on_failure = on_failure
        self._timeout = timeout
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=limit)
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._task = asyncio.create_task(self._run(), name="roomrelay-outbox")

    @property
    def idle(self) -> bool:
        return self._idle.is_set()

    def offer(self, text: str) -> bool:
        """Queue ``text`` for delivery. False if the connection cannot take it."""
        if self._task.done():
            return False
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning("Outbound queue full (%d frames)", self._queue.maxsize)
            return False
        self._pending += 1
        self._idle.clear()
        return True

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()
        self._idle.set()

    async def close(self, code: int) -> None:
        """Deliver what is queued (bounded by the timeout), then close the transport."""
        if not self._task.done():
            try:
                await asyncio.wait_for(self._idle.wait(), self._timeout)
            except asyncio.TimeoutError:
                logger.debug("Dropping undelivered frames on close")
        self.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        await self.close_connection(code)

    async def close_connection(self, code: int) -> None:
        try:
            await asyncio.wait_for(self.connection.close(code), self._timeout)
        except Exception as exc:
            logger.debug("Ignoring close error: %s", exc)

    async def _run(self) -> None:
        try:
            while True:
                text = await self._queue.get()
                try:
                    await asyncio.wait_for(self.connection.send_text(text), self._timeout)
                finally:
                    self._pending -= 1
                    if self._pending == 0:
                        self._idle.set()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Dropping connection after failed send: %r", exc)
            self._pending = 0
            self._idle.set()
            self._on_failure(self.connection)
