from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

ExpiryHandler = Callable[[str, int], Awaitable[None]]


class ExpiryTimers:
    """At most one pending expiry task per session.

    The task only carries the session id and the level epoch it was armed
    for; the handler must look the session up again when it fires.
    """

    def __init__(self, handler: ExpiryHandler) -> None:
        self._handler = handler
        self._tasks: Dict[str, asyncio.Task] = {}

    def arm(self, session_id: str, delay_ms: int, epoch: int) -> asyncio.Task:
        self.cancel(session_id)
        task = asyncio.get_running_loop().create_task(
            self._fire_after(session_id, epoch, delay_ms / 1000.0),
            name=f"expiry-{session_id}",
        )
        self._tasks[session_id] = task
        logger.info(f"[bughunt] timer-set session={session_id} epoch={epoch} delay_ms={delay_ms}")
        return task

    async def _fire_after(self, session_id: str, epoch: int, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        if self._tasks.get(session_id) is asyncio.current_task():
            del self._tasks[session_id]
        logger.info(f"[bughunt] timer-fire session={session_id} epoch={epoch}")
        try:
            await self._handler(session_id, epoch)
        except Exception:
            logger.exception(f"[bughunt] timer-error session={session_id}")

    def cancel(self, session_id: str) -> bool:
        task = self._tasks.pop(session_id, None)
        if task is None or task.done():
            return False
        # the firing task may end its own level; it must not cancel itself
        if task is asyncio.current_task():
            return False
        task.cancel()
        logger.info(f"[bughunt] timer-cancel session={session_id}")
        return True

    def pending(self, session_id: str) -> Optional[asyncio.Task]:
        task = self._tasks.get(session_id)
        if task is None or task.done():
            return None
        return task

    def has_pending(self, session_id: str) -> bool:
        return self.pending(session_id) is not None

    def cancel_all(self) -> int:
        count = 0
        for session_id in list(self._tasks):
            if self.cancel(session_id):
                count += 1
        return count

    def __len__(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())
