import pytest

from bughunt.client_cache import ClientStateCache
from bughunt.errors import InvalidStateError
from bughunt.events import EventBus, EventName
from bughunt.states import (
    ACTION_RULES,
    TRANSITIONS,
    Action,
    SessionState,
    can_transition,
    require_action,
    require_transition,
    valid_actions,
)

EDGES = {
    (SessionState.CREATED, SessionState.LEVEL_STARTED),
    (SessionState.LEVEL_STARTED, SessionState.LEVEL_ENDED),
    (SessionState.LEVEL_STARTED, SessionState.ROUND_COMPLETE),
    (SessionState.LEVEL_STARTED, SessionState.GAME_COMPLETE),
    (SessionState.LEVEL_ENDED, SessionState.LEVEL_STARTED),
    (SessionState.ROUND_COMPLETE, SessionState.LEVEL_STARTED),
    (SessionState.ROUND_COMPLETE, SessionState.GAME_COMPLETE),
}


def test_tables_cover_every_state_and_action():
    assert set(TRANSITIONS) == set(SessionState)
    assert set(ACTION_RULES) == set(Action)
    assert TRANSITIONS[SessionState.GAME_COMPLETE] == frozenset()


@pytest.mark.parametrize("src", list(SessionState))
@pytest.mark.parametrize("dst", list(SessionState))
def test_only_listed_edges_are_legal(src, dst):
    assert can_transition(src, dst) == ((src, dst) in EDGES)
    if (src, dst) in EDGES:
        assert require_transition(src, dst) == dst
    else:
        with pytest.raises(InvalidStateError) as exc:
            require_transition(src, dst)
        assert exc.value.current_state == src


def test_valid_actions_per_state():
    assert valid_actions(SessionState.CREATED) == ["startLevel"]
    assert valid_actions(SessionState.LEVEL_STARTED) == ["handleClick", "endLevel"]
    assert valid_actions(SessionState.LEVEL_ENDED) == ["startLevel", "endGame"]
    assert valid_actions(SessionState.ROUND_COMPLETE) == ["startLevel", "endGame"]
    assert valid_actions(SessionState.GAME_COMPLETE) == ["endGame"]


def test_require_action_error_carries_states():
    with pytest.raises(InvalidStateError) as exc:
        require_action(Action.HANDLE_CLICK, SessionState.LEVEL_ENDED)
    body = exc.value.to_dict()
    assert body["code"] == "invalid_state"
    assert body["current_state"] == "LEVEL_ENDED"
    assert body["expected_states"] == ["LEVEL_STARTED"]
    assert "clicks" in body["error"]


def test_client_cache_mirrors_pushed_state():
    bus = EventBus()
    cache = ClientStateCache("s1")
    bus.subscribe(cache.on_event)
    changes = []
    cache.on_state_change(changes.append)

    assert cache.is_action_valid("startLevel")
    bus.emit(EventName.STATE_CHANGED, {"session_id": "s1", "state": "LEVEL_STARTED", "valid_actions": ["handleClick", "endLevel"]})
    assert cache.current_state == "LEVEL_STARTED"
    assert cache.is_action_valid("handleClick")
    assert not cache.is_action_valid("startLevel")

    bus.emit(EventName.STATE_CHANGED, {"session_id": "other", "state": "GAME_COMPLETE", "valid_actions": ["endGame"]})
    assert cache.current_state == "LEVEL_STARTED"
    bus.emit(EventName.ROUND_COMPLETE, {"session_id": "s1", "total_score": 10})
    assert changes == ["LEVEL_STARTED"]


def test_event_bus_isolates_failing_listener():
    bus = EventBus()
    seen = []

    def broken(name, payload):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(lambda name, payload: seen.append(name))
    bus.emit(EventName.LEVEL_ENDED, {"session_id": "s1"})
    assert seen == [EventName.LEVEL_ENDED]
    assert bus.unsubscribe(broken) is True
    assert bus.unsubscribe(broken) is False
