from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)


class EventName(str, Enum):
    STATE_CHANGED = "state_changed"
    LEVEL_ENDED = "level_ended"
    ROUND_COMPLETE = "round_complete"
    GAME_COMPLETE = "game_complete"
    GAME_ENDED = "game_ended"
    GAME_ENDED_FULL = "game_ended_full"
    VERIFICATION_ERROR = "verification_error"

    def __str__(self) -> str:
        return self.value


Listener = Callable[[EventName, Dict[str, Any]], Any]


class EventBus:
    """Fire-and-forget fan-out of session notifications.

    Listeners may be plain callables or coroutine functions. A failing
    listener is logged and never reaches the engine.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, listener: Listener) -> Listener:
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener) -> bool:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    def emit(self, name: EventName, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                out = listener(name, payload)
            except Exception:
                logger.exception(f"[bughunt] listener-error event={name.value}")
                continue
            if inspect.isawaitable(out):
                task = asyncio.ensure_future(out)
                self._pending.add(task)
                task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[bughunt] listener-error {task.exception()!r}")

    def __len__(self) -> int:
        return len(self._listeners)
