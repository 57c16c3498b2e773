from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from starlette.concurrency import run_in_threadpool

from leadboard.core.config import get_settings


logger = logging.getLogger("leadboard.identity.presence")


class PresenceHeartbeat:
    """Periodically records that a principal is still connected.

    ``ping`` is a blocking callable (it writes through a SQLAlchemy session), so
    it runs on the threadpool. A failed ping is logged and the loop keeps going.
    """

    def __init__(
        self,
        ping: Callable[[], object],
        *,
        interval_seconds: float | None = None,
        ping_on_start: bool = True,
    ) -> None:
        self._ping = ping
        self.ping_on_start = ping_on_start
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else float(get_settings().presence_heartbeat_seconds)
        )
        self._task: asyncio.Task[None] | None = None
        self.beats = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="presence-heartbeat")
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        if not self.ping_on_start:
            await asyncio.sleep(self.interval_seconds)
        while True:
            try:
                await run_in_threadpool(self._ping)
                self.beats += 1
            except Exception as exc:
                logger.exception("presence.ping_failed", extra={"error": str(exc)[:500]})
            await asyncio.sleep(self.interval_seconds)
