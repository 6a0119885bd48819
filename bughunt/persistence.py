from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import os

try:
    from google.cloud import firestore  # type: ignore
except Exception:  # pragma: no cover
    firestore = None  # type: ignore

from .models import Session


def _now() -> datetime:
    return datetime.now(timezone.utc)


def game_record(session: Session) -> Dict[str, Any]:
    """Flatten a settled session into the document stored as player history."""
    result = session.result
    now = _now()
    return {
        "session_id": session.id,
        "identity": session.owner,
        "is_guest": session.is_guest,
        "final_state": session.state.value,
        "end_type": session.end_type,
        "total_score": int(session.total_score),
        "highest_round": int(session.highest_round),
        "rounds_completed": len(session.round_history),
        "proof_verified": bool(result.proof_verified) if result else None,
        "created_at": session.created_at,
        "finished_at": now,
    }


def _stats_view(data: Dict[str, Any]) -> Dict[str, Any]:
    played = int(data.get("games_played", 0) or 0)
    total = int(data.get("total_score", 0) or 0)
    return {
        "games_played": played,
        "highest_score": int(data.get("highest_score", 0) or 0),
        "highest_round": int(data.get("highest_round", 0) or 0),
        "total_score": total,
        "average_score": round(total / played, 2) if played > 0 else 0.0,
    }


class InMemoryPersistence:
    """Simple in-memory player history for tests and local dev."""

    def __init__(self) -> None:
        self.games: Dict[str, List[Dict[str, Any]]] = {}
        self.stats_totals: Dict[str, Dict[str, Any]] = {}

    def _ensure_stats(self, identity: str) -> Dict[str, Any]:
        if identity not in self.stats_totals:
            self.stats_totals[identity] = {
                "games_played": 0,
                "highest_score": 0,
                "highest_round": 0,
                "total_score": 0,
            }
        return self.stats_totals[identity]

    def record_game(self, session: Session) -> Dict[str, Any]:
        doc = game_record(session)
        self.games.setdefault(session.owner, []).append(doc)
        totals = self._ensure_stats(session.owner)
        totals["games_played"] = int(totals.get("games_played", 0)) + 1
        totals["total_score"] = int(totals.get("total_score", 0)) + doc["total_score"]
        totals["highest_score"] = max(int(totals.get("highest_score", 0)), doc["total_score"])
        totals["highest_round"] = max(int(totals.get("highest_round", 0)), doc["highest_round"])
        return doc

    def get_stats(self, identity: str) -> Dict[str, Any]:
        return _stats_view(self.stats_totals.get(identity) or {})

    def get_games(self, identity: str) -> List[Dict[str, Any]]:
        return list(self.games.get(identity, []))


class FirestorePersistence:
    """Firestore-backed player history using Native mode.

    Uses FIRESTORE_EMULATOR_HOST if present; otherwise connects to production.
    """

    def __init__(self, client: Optional[Any] = None) -> None:
        if client is not None:
            self.client = client
        else:
            if firestore is None:
                raise RuntimeError("google-cloud-firestore not available")
            self.client = firestore.Client(project=os.environ.get("GOOGLE_CLOUD_PROJECT"))

    def _game_ref(self, session_id: str):
        return self.client.collection("bughuntGames").document(session_id)

    def _stats_ref(self, identity: str):
        return self.client.collection("bughuntStats").document(identity)

    def record_game(self, session: Session) -> Dict[str, Any]:
        if firestore is None:
            raise RuntimeError("google-cloud-firestore not available")

        @firestore.transactional  # type: ignore
        def _tx(tx):
            doc = game_record(session)
            sref = self._stats_ref(session.owner)
            snap = sref.get(transaction=tx)
            current = (snap.to_dict() or {}) if snap.exists else {}
            tx.set(self._game_ref(session.id), doc)
            tx.set(
                sref,
                {
                    "games_played": firestore.Increment(1),
                    "total_score": firestore.Increment(doc["total_score"]),
                    "highest_score": max(int(current.get("highest_score", 0) or 0), doc["total_score"]),
                    "highest_round": max(int(current.get("highest_round", 0) or 0), doc["highest_round"]),
                    "updated_at": doc["finished_at"],
                },
                merge=True,
            )
            return doc

        return _tx(self.client.transaction())

    def get_stats(self, identity: str) -> Dict[str, Any]:
        snap = self._stats_ref(identity).get()
        data = (snap.to_dict() or {}) if snap.exists else {}
        return _stats_view(data)

    def get_games(self, identity: str) -> List[Dict[str, Any]]:
        query = self.client.collection("bughuntGames").where("identity", "==", identity)
        return [snap.to_dict() or {} for snap in query.stream()]
