from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from .events import EventName
from .states import SessionState, valid_actions

StateCallback = Callable[[str], None]


class ClientStateCache:
    """Client-side mirror of the last state pushed for one session.

    Only used to skip requests that are certain to be rejected; the engine
    still validates every action. Feed it with `on_event` (it has the
    `EventBus` listener signature).
    """

    def __init__(self, session_id: Optional[str] = None) -> None:
        self.session_id = session_id
        self.current_state = SessionState.CREATED.value
        self.valid_actions: List[str] = valid_actions(SessionState.CREATED)
        self._callbacks: List[StateCallback] = []

    def update_state(self, state: str, actions: List[str]) -> None:
        self.current_state = state
        self.valid_actions = list(actions)
        for callback in list(self._callbacks):
            callback(state)

    def on_event(self, name: EventName, payload: Dict[str, Any]) -> None:
        if self.session_id is not None and payload.get("session_id") != self.session_id:
            return
        if "state" in payload and "valid_actions" in payload:
            self.update_state(payload["state"], payload["valid_actions"])

    def is_action_valid(self, action: str) -> bool:
        return action in self.valid_actions

    def on_state_change(self, callback: StateCallback) -> StateCallback:
        self._callbacks.append(callback)
        return callback

    def remove_state_change_listener(self, callback: StateCallback) -> bool:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            return False
        return True

    def clear(self) -> None:
        self._callbacks.clear()
