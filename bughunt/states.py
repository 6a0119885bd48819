from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List

from .errors import InvalidStateError, ValidationError


class SessionState(str, Enum):
    CREATED = "CREATED"
    LEVEL_STARTED = "LEVEL_STARTED"
    LEVEL_ENDED = "LEVEL_ENDED"
    ROUND_COMPLETE = "ROUND_COMPLETE"
    GAME_COMPLETE = "GAME_COMPLETE"

    def __str__(self) -> str:
        return self.value


class Action(str, Enum):
    START_LEVEL = "startLevel"
    HANDLE_CLICK = "handleClick"
    END_LEVEL = "endLevel"
    END_GAME = "endGame"

    def __str__(self) -> str:
        return self.value


TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.CREATED: frozenset({SessionState.LEVEL_STARTED}),
    SessionState.LEVEL_STARTED: frozenset(
        {SessionState.LEVEL_ENDED, SessionState.ROUND_COMPLETE, SessionState.GAME_COMPLETE}
    ),
    SessionState.LEVEL_ENDED: frozenset({SessionState.LEVEL_STARTED}),
    SessionState.ROUND_COMPLETE: frozenset({SessionState.LEVEL_STARTED, SessionState.GAME_COMPLETE}),
    SessionState.GAME_COMPLETE: frozenset(),
}

ACTION_RULES: Dict[Action, FrozenSet[SessionState]] = {
    Action.START_LEVEL: frozenset(
        {SessionState.CREATED, SessionState.LEVEL_ENDED, SessionState.ROUND_COMPLETE}
    ),
    Action.HANDLE_CLICK: frozenset({SessionState.LEVEL_STARTED}),
    Action.END_LEVEL: frozenset({SessionState.LEVEL_STARTED}),
    Action.END_GAME: frozenset(
        {SessionState.LEVEL_ENDED, SessionState.ROUND_COMPLETE, SessionState.GAME_COMPLETE}
    ),
}

ACTION_MESSAGES: Dict[Action, str] = {
    Action.START_LEVEL: "cannot start level in current game state",
    Action.HANDLE_CLICK: "cannot process clicks until level is started",
    Action.END_LEVEL: "cannot end level that hasn't started",
    Action.END_GAME: "cannot end game in current state",
}


def _check_tables() -> None:
    missing = set(SessionState) - set(TRANSITIONS)
    if missing:
        raise RuntimeError(f"transition table missing states: {sorted(s.value for s in missing)}")
    for table in (ACTION_RULES, ACTION_MESSAGES):
        missing_actions = set(Action) - set(table)
        if missing_actions:
            raise RuntimeError(f"action table missing actions: {sorted(a.value for a in missing_actions)}")


_check_tables()


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in TRANSITIONS[current]


def require_transition(current: SessionState, target: SessionState) -> SessionState:
    if not can_transition(current, target):
        raise InvalidStateError(
            f"invalid transition {current.value} -> {target.value}",
            current,
            [s for s in SessionState if target in TRANSITIONS[s]],
        )
    return target


def require_action(action: Action, current: SessionState) -> None:
    allowed = ACTION_RULES[action]
    if current not in allowed:
        raise InvalidStateError(ACTION_MESSAGES[action], current, allowed)


def valid_actions(state: SessionState) -> List[str]:
    """Actions legal in `state`, in declaration order."""
    return [a.value for a in Action if state in ACTION_RULES[a]]


def parse_state(raw: str) -> SessionState:
    try:
        return SessionState(raw.upper())
    except ValueError:
        raise ValidationError(f"unknown state: {raw}") from None
