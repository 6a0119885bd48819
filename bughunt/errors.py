from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


def _label(value: Any) -> str:
    return str(getattr(value, "value", value))


class SessionError(Exception):
    """Base for every error the engine reports to its caller.

    `code` is stable and machine readable; `status_code` is the HTTP status
    the transport layer should use.
    """

    code = "session_error"
    status_code = 400

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self), "code": self.code}


class ValidationError(SessionError):
    code = "invalid_request"
    status_code = 400


class SessionNotFoundError(SessionError):
    code = "session_not_found"
    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class NotAuthorizedError(SessionError):
    code = "not_authorized"
    status_code = 403

    def __init__(self, session_id: str) -> None:
        super().__init__(f"not authorized for session {session_id}")
        self.session_id = session_id


class GuestNotAllowedError(SessionError):
    code = "guest_not_allowed"
    status_code = 403

    def __init__(self) -> None:
        super().__init__("full verification is not available for guest players")


class ActiveSessionExistsError(SessionError):
    code = "active_session_exists"
    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__(f"player already has active session: {session_id}")
        self.session_id = session_id

    def to_dict(self) -> Dict[str, Any]:
        return super().to_dict() | {"session_id": self.session_id}


class InvalidStateError(SessionError):
    """Action attempted outside the states that allow it.

    Carries the current state and the allowed states so clients can
    reconcile and retry.
    """

    code = "invalid_state"
    status_code = 409

    def __init__(self, message: str, current_state: Any, expected_states: Iterable[Any]) -> None:
        super().__init__(message)
        self.current_state = current_state
        self.expected_states: List[Any] = sorted(expected_states, key=_label)

    def to_dict(self) -> Dict[str, Any]:
        return super().to_dict() | {
            "current_state": _label(self.current_state),
            "expected_states": [_label(s) for s in self.expected_states],
        }


class LevelExpiredError(SessionError):
    code = "level_ended"
    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__(f"level time is over for session {session_id}")
        self.session_id = session_id


class RoundLimitError(SessionError):
    code = "round_complete"
    status_code = 409

    def __init__(self, level: int, limit: int) -> None:
        super().__init__(f"level {level} exceeds levels per round {limit}")
        self.level = level
        self.limit = limit


class VerificationError(SessionError):
    code = "verification_failed"
    status_code = 502


class SessionInProgressError(SessionError):
    code = "session_in_progress"
    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session {session_id} is still in progress")
        self.session_id = session_id


class SessionEndedError(SessionError):
    code = "session_ended"
    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session {session_id} has already ended")
        self.session_id = session_id
