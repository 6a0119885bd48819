from __future__ import annotations

import asyncio
from typing import Dict, List, Optional
from uuid import uuid4

from .errors import ActiveSessionExistsError
from .models import Session


class SessionStore:
    """In-memory store for live sessions.

    Maps session ids to sessions and player identities to their active
    session id. Holds one lock per session; no game rules live here.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._active_by_identity: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def create(self, identity: str, is_guest: bool) -> Session:
        existing = self._active_by_identity.get(identity)
        if existing is not None:
            raise ActiveSessionExistsError(existing)
        session = Session(id=uuid4().hex, owner=identity, is_guest=is_guest)
        self._sessions[session.id] = session
        self._active_by_identity[identity] = session.id
        self._locks[session.id] = asyncio.Lock()
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def update(self, session: Session) -> Session:
        # sessions are held by reference; only the timestamp changes
        if session.id in self._sessions:
            session.touch()
        return session

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            # unknown ids get a throwaway lock so nothing is retained for them
            lock = asyncio.Lock()
            if session_id in self._sessions:
                self._locks[session_id] = lock
        return lock

    def active_session_id(self, identity: str) -> Optional[str]:
        return self._active_by_identity.get(identity)

    def has_active_session(self, identity: str) -> bool:
        return identity in self._active_by_identity

    def release_identity(self, session: Session) -> None:
        if self._active_by_identity.get(session.owner) == session.id:
            del self._active_by_identity[session.owner]

    def remove(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        if session is not None:
            self.release_identity(session)
        return session

    def all_sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)
