"""Session engine: the only code that changes a session's state.

Every entry point validates ownership and the action rules before touching
anything, and holds the session's lock for its whole read-modify-write, so
a firing expiry timer and a manual action on the same session serialize.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from .config import GameSettings
from .errors import (
    GuestNotAllowedError,
    NotAuthorizedError,
    RoundLimitError,
    SessionEndedError,
    SessionInProgressError,
    SessionNotFoundError,
    LevelExpiredError,
    ValidationError,
    VerificationError,
)
from .events import EventBus, EventName
from .levels import generate_level
from .models import GameResult, LevelOutcome, LevelResult, Position, Session
from .persistence import InMemoryPersistence
from .scoring import aggregate_stats, count_bugs_found, level_score, round_summary
from .session_store import SessionStore
from .states import (
    Action,
    SessionState,
    parse_state,
    require_action,
    require_transition,
    valid_actions,
)
from .timers import ExpiryTimers
from .verification import InProcessVerificationGateway, LedgerSubmitter, VerificationGateway

logger = logging.getLogger(__name__)

PositionLike = Union[Position, Sequence[int], Mapping[str, Any]]


def _coerce_position(raw: PositionLike) -> Position:
    try:
        if isinstance(raw, Mapping):
            return Position(int(raw["x"]), int(raw["y"]))
        x, y = raw
        return Position(int(x), int(y))
    except (KeyError, TypeError, ValueError):
        raise ValidationError("invalid_position") from None


class SessionEngine:
    def __init__(
        self,
        settings: Optional[GameSettings] = None,
        store: Optional[SessionStore] = None,
        persistence: Optional[Any] = None,
        gateway: Optional[VerificationGateway] = None,
        ledger: Optional[LedgerSubmitter] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or GameSettings()
        self.store = store or SessionStore()
        self.persistence = persistence or InMemoryPersistence()
        self.gateway = gateway or InProcessVerificationGateway()
        self.ledger = ledger
        self.events = events or EventBus()
        self.clock = clock
        self.rng = rng or random.Random()
        self.timers = ExpiryTimers(self._on_level_expired)
        self._cleanups: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------ helpers

    def _load(self, session_id: str) -> Session:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _authorize(self, session: Session, identity: Optional[str]) -> None:
        if session.owner != identity:
            raise NotAuthorizedError(session.id)

    def _require_live(self, session: Session) -> None:
        if session.completed:
            raise SessionEndedError(session.id)

    def _transition(self, session: Session, target: SessionState) -> None:
        previous = session.state
        session.state = require_transition(previous, target)
        self.store.update(session)
        logger.info(f"[bughunt] state session={session.id} {previous.value}->{target.value}")
        self.events.emit(
            EventName.STATE_CHANGED,
            {
                "session_id": session.id,
                "previous_state": previous.value,
                "state": target.value,
                "valid_actions": valid_actions(target),
                "current_round": session.current_round,
                "current_level": session.current_level,
            },
        )

    def _all_levels(self, session: Session) -> List[LevelResult]:
        levels: List[LevelResult] = []
        for summary in session.round_history:
            levels.extend(summary.levels)
        levels.extend(session.round_stats)
        return levels

    def _remaining_ms(self, session: Session) -> Optional[int]:
        if session.state != SessionState.LEVEL_STARTED or session.end_time is None:
            return None
        return max(0, int((session.end_time - self.clock()) * 1000))

    def _elapsed_ms(self, session: Session) -> int:
        if session.start_time is None:
            return 0
        return max(0, int((self.clock() - session.start_time) * 1000))

    # ---------------------------------------------------------------- lifecycle

    def create_session(self, identity: str) -> str:
        if not identity:
            raise ValidationError("player identity is required")
        session = self.store.create(identity, self.settings.is_guest(identity))
        logger.info(f"[bughunt] create session={session.id} identity={identity} guest={int(session.is_guest)}")
        return session.id

    async def start_level(self, session_id: str, identity: str) -> Dict[str, Any]:
        self._authorize(self._load(session_id), identity)
        async with self.store.lock_for(session_id):
            session = self._load(session_id)
            self._require_live(session)
            require_action(Action.START_LEVEL, session.state)
            if session.current_level > self.settings.levels_per_round:
                raise RoundLimitError(session.current_level, self.settings.levels_per_round)

            config = generate_level(session.current_level, self.settings, self.rng)
            logger.info(
                f"[bughunt] level-config session={session.id} round={session.current_round} "
                f"level={config.level} grid={config.grid_size} targets={config.num_targets} duration_ms={config.duration_ms}"
            )
            if not session.is_guest:
                try:
                    await self.gateway.register_secret(session.id, config.num_targets)
                except Exception as exc:
                    logger.warning(f"[bughunt] register-secret-failed session={session.id} error={exc!r}")
                    raise VerificationError(f"failed to initialize level verification: {exc}") from exc

            self.timers.cancel(session.id)
            now = self.clock()
            session.level_config = config
            session.clicked_cells = []
            session.is_ended = False
            session.start_time = now
            session.end_time = now + config.duration_ms / 1000.0
            session.level_epoch += 1
            session.highest_round = max(session.highest_round, session.current_round)
            self._transition(session, SessionState.LEVEL_STARTED)
            self.timers.arm(session.id, config.duration_ms, session.level_epoch)

            return {
                "session_id": session.id,
                "grid_size": config.grid_size,
                "targets": [p.to_dict() for p in config.targets],
                "num_targets": config.num_targets,
                "start_time": session.start_time,
                "end_time": session.end_time,
                "duration_ms": config.duration_ms,
                "current_level": session.current_level,
                "current_round": session.current_round,
                "total_score": session.total_score,
                "state": session.state.value,
                "valid_actions": valid_actions(session.state),
            }

    async def handle_click(self, session_id: str, position: PositionLike, identity: str) -> Dict[str, Any]:
        pos = _coerce_position(position)
        self._authorize(self._load(session_id), identity)
        async with self.store.lock_for(session_id):
            session = self._load(session_id)
            self._require_live(session)
            require_action(Action.HANDLE_CLICK, session.state)
            config = session.level_config
            assert config is not None
            if self._elapsed_ms(session) >= config.duration_ms:
                raise LevelExpiredError(session.id)
            if not config.contains(pos):
                raise ValidationError("position_out_of_grid")
            session.clicked_cells.append(pos)
            self.store.update(session)
            return {
                "success": True,
                "state": session.state.value,
                "clicks": len(session.clicked_cells),
            }

    async def end_level(self, session_id: str, end_type: str = "manual") -> Optional[LevelOutcome]:
        session = self.store.get(session_id)
        if session is None or session.is_ended or session.completed:
            return None
        async with self.store.lock_for(session_id):
            session = self.store.get(session_id)
            if session is None or session.is_ended or session.completed:
                return None
            return await self._end_level_locked(session, end_type)

    async def _on_level_expired(self, session_id: str, epoch: int) -> None:
        if self.store.get(session_id) is None:
            return
        async with self.store.lock_for(session_id):
            session = self.store.get(session_id)
            if (
                session is None
                or session.is_ended
                or session.completed
                or session.level_epoch != epoch
                or session.state != SessionState.LEVEL_STARTED
            ):
                logger.info(f"[bughunt] timer-abort session={session_id} epoch={epoch}")
                return
            await self._end_level_locked(session, "timeout")

    async def _end_level_locked(self, session: Session, end_type: str) -> LevelOutcome:
        require_action(Action.END_LEVEL, session.state)
        self.timers.cancel(session.id)
        config = session.level_config
        assert config is not None

        bugs_found = count_bugs_found(session.clicked_cells, config.targets)
        score = level_score(bugs_found, config.num_targets, len(session.clicked_cells))
        result = LevelResult(
            level=session.current_level,
            round=session.current_round,
            bugs_found=bugs_found,
            total_bugs=config.num_targets,
            clicked_cells=len(session.clicked_cells),
            duration_ms=self._elapsed_ms(session),
            score=score,
            end_type=end_type,
        )
        session.round_stats.append(result)
        session.total_score += score
        session.is_ended = True
        logger.info(
            f"[bughunt] level-end session={session.id} round={result.round} level={result.level} "
            f"end_type={end_type} bugs_found={bugs_found}/{result.total_bugs} score={score}"
        )

        round_complete = session.current_level >= self.settings.levels_per_round
        game_complete = round_complete and session.current_round >= self.settings.max_rounds

        if game_complete:
            self._complete_round(session, final=True)
            await self._complete_game(session, result)
        elif round_complete:
            self._complete_round(session)
            session.current_level = 1
            session.current_round += 1
            session.highest_round = max(session.highest_round, session.current_round)
            self._transition(session, SessionState.ROUND_COMPLETE)
        else:
            session.current_level += 1
            self._transition(session, SessionState.LEVEL_ENDED)

        outcome = LevelOutcome(
            session_id=session.id,
            result=result,
            state=session.state,
            valid_actions=valid_actions(session.state),
            round_complete=round_complete,
            game_complete=game_complete,
            current_round=session.current_round,
            current_level=session.current_level,
            total_score=session.total_score,
        )
        self.events.emit(EventName.LEVEL_ENDED, outcome.to_dict())
        return outcome

    def _complete_round(self, session: Session, final: bool = False) -> None:
        require_transition(session.state, SessionState.ROUND_COMPLETE)
        summary = round_summary(session.current_round, session.round_stats)
        session.round_history.append(summary)
        session.round_stats = []
        self.store.update(session)
        logger.info(f"[bughunt] round-complete session={session.id} round={summary.round} score={summary.total_score}")
        self.events.emit(
            EventName.ROUND_COMPLETE,
            {
                "session_id": session.id,
                "round_stats": summary.to_dict(),
                "next_round": None if final else session.current_round + 1,
                "total_score": session.total_score,
            },
        )

    async def _complete_game(self, session: Session, last: LevelResult) -> None:
        self._transition(session, SessionState.GAME_COMPLETE)
        stats = aggregate_stats(session.total_score, self._all_levels(session))
        result = GameResult(
            bugs_found=last.bugs_found,
            total_bugs=last.total_bugs,
            clicked_cells=last.clicked_cells,
            duration_ms=last.duration_ms,
            end_type=last.end_type,
            total_score=session.total_score,
            proof_verified=session.is_guest,
            stats=stats,
        )
        if not session.is_guest:
            # best effort: the game is over whatever the verifier says
            try:
                verdict = await self.gateway.verify_full(session.id, last.bugs_found)
                result.proof_verified = verdict.success
                result.on_chain_verified = verdict.on_chain_verified
            except Exception as exc:
                logger.warning(f"[bughunt] final-verification-failed session={session.id} error={exc!r}")
                result.proof_verified = False
                result.verification_error = str(exc)
        self._settle(session, result, last.end_type)
        logger.info(f"[bughunt] game-complete session={session.id} total_score={session.total_score}")
        self.events.emit(
            EventName.GAME_COMPLETE,
            {
                "session_id": session.id,
                "state": session.state.value,
                "valid_actions": valid_actions(session.state),
                "stats": stats,
                "result": result.to_dict(),
            },
        )

    # --------------------------------------------------------------- settlement

    def _snapshot_result(self, session: Session, end_type: str) -> GameResult:
        config = session.level_config
        assert config is not None
        return GameResult(
            bugs_found=count_bugs_found(session.clicked_cells, config.targets),
            total_bugs=config.num_targets,
            clicked_cells=len(session.clicked_cells),
            duration_ms=self._elapsed_ms(session),
            end_type=end_type,
            total_score=session.total_score,
            stats=aggregate_stats(session.total_score, self._all_levels(session)),
        )

    def _settle(self, session: Session, result: GameResult, end_type: str) -> None:
        self.timers.cancel(session.id)
        session.result = result
        session.completed = True
        session.is_ended = True
        session.end_type = end_type
        self.store.release_identity(session)
        self.store.update(session)
        try:
            self.persistence.record_game(session)
        except Exception:
            logger.exception(f"[bughunt] record-game-failed session={session.id}")
        self._schedule_cleanup(session.id)

    def _schedule_cleanup(self, session_id: str) -> None:
        previous = self._cleanups.pop(session_id, None)
        if previous is not None:
            previous.cancel()

        async def _remove_later() -> None:
            await asyncio.sleep(self.settings.cleanup_grace_s)
            self._cleanups.pop(session_id, None)
            self.store.remove(session_id)
            logger.info(f"[bughunt] cleanup session={session_id}")

        self._cleanups[session_id] = asyncio.get_running_loop().create_task(_remove_later())

    async def end_game(self, session_id: str, end_type: str = "manual") -> Optional[GameResult]:
        session = self.store.get(session_id)
        if session is None or session.completed:
            return None
        async with self.store.lock_for(session_id):
            session = self.store.get(session_id)
            if session is None or session.completed:
                return None
            require_action(Action.END_GAME, session.state)
            self.timers.cancel(session.id)
            initial = self._snapshot_result(session, end_type)

            if session.is_guest:
                final = replace(initial, proof_verified=True, verification_in_progress=False)
                self._settle(session, final, end_type)
                self._emit_settlement(EventName.GAME_ENDED, session, final, "complete")
                return final

            initial = replace(initial, proof_verified=False, verification_in_progress=True)
            self._emit_settlement(EventName.GAME_ENDED, session, initial, "verifying")
            try:
                verdict = await self.gateway.verify_local(session.id, initial.bugs_found)
            except Exception as exc:
                logger.error(f"[bughunt] verify-local-failed session={session.id} error={exc!r}")
                self._emit_settlement(EventName.GAME_ENDED, session, initial, "error", error=str(exc))
                raise VerificationError("failed to verify game result") from exc

            final = replace(initial, proof_verified=verdict.success, verification_in_progress=False)
            self._settle(session, final, end_type)
            self._emit_settlement(EventName.GAME_ENDED, session, final, "complete")
            return final

    async def end_game_with_full_verification(
        self, session_id: str, end_type: str = "manual"
    ) -> Optional[GameResult]:
        session = self.store.get(session_id)
        if session is None:
            return None
        if session.is_guest:
            raise GuestNotAllowedError()
        if session.completed:
            return None
        async with self.store.lock_for(session_id):
            session = self.store.get(session_id)
            if session is None or session.completed:
                return None
            require_action(Action.END_GAME, session.state)
            self.timers.cancel(session.id)
            initial = replace(
                self._snapshot_result(session, end_type),
                proof_verified=False,
                verification_in_progress=True,
                on_chain_verified=False,
            )
            self._emit_settlement(EventName.GAME_ENDED_FULL, session, initial, "verifying")
            try:
                verdict = await self.gateway.verify_full(session.id, initial.bugs_found)
            except Exception as exc:
                logger.error(f"[bughunt] verify-full-failed session={session.id} error={exc!r}")
                self._emit_settlement(EventName.GAME_ENDED_FULL, session, initial, "error", error=str(exc))
                raise VerificationError("failed to complete full verification") from exc

            tx_hash: Optional[str] = None
            if verdict.success and verdict.on_chain_verified and self.ledger is not None:
                try:
                    tx_hash = await self.ledger.submit(session.id, initial.bugs_found, verdict.proof)
                except Exception as exc:
                    # the proof stands even if the ledger rejects the confirmation
                    logger.warning(f"[bughunt] ledger-submit-failed session={session.id} error={exc!r}")
                    self.events.emit(
                        EventName.VERIFICATION_ERROR,
                        {"session_id": session.id, "status": "contract_error", "error": str(exc)},
                    )

            final = replace(
                initial,
                proof_verified=verdict.success,
                verification_in_progress=False,
                on_chain_verified=verdict.on_chain_verified,
                contract_tx_hash=tx_hash,
            )
            self._settle(session, final, end_type)
            self._emit_settlement(EventName.GAME_ENDED_FULL, session, final, "complete")
            return final

    def _emit_settlement(
        self,
        name: EventName,
        session: Session,
        result: GameResult,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "session_id": session.id,
            "result": result.to_dict(),
            "end_type": result.end_type,
            "status": status,
        }
        if error is not None:
            payload["error"] = error
        self.events.emit(name, payload)

    async def terminate_session(self, session_id: str, identity: str) -> Dict[str, Any]:
        self._authorize(self._load(session_id), identity)
        async with self.store.lock_for(session_id):
            session = self._load(session_id)
            self.timers.cancel(session.id)
            cleanup = self._cleanups.pop(session.id, None)
            if cleanup is not None:
                cleanup.cancel()
            if not session.completed:
                session.end_type = "abandoned"
                try:
                    self.persistence.record_game(session)
                except Exception:
                    logger.exception(f"[bughunt] record-game-failed session={session.id}")
            self.store.remove(session.id)
            logger.info(f"[bughunt] terminate session={session.id} state={session.state.value}")
            return {"session_id": session.id, "terminated": True, "state": session.state.value}

    # ------------------------------------------------------------------ queries

    def get_state(self, session_id: str, identity: str) -> Dict[str, Any]:
        session = self._load(session_id)
        self._authorize(session, identity)
        config = session.level_config
        return {
            "session_id": session.id,
            "owner": session.owner,
            "is_guest": session.is_guest,
            "state": session.state.value,
            "valid_actions": valid_actions(session.state),
            "current_round": session.current_round,
            "current_level": session.current_level,
            "highest_round": session.highest_round,
            "total_score": session.total_score,
            "round_stats": [r.to_dict() for r in session.round_stats],
            "round_history": [r.to_dict() for r in session.round_history],
            "level_config": config.to_dict() if config else None,
            "clicked_cells": [p.to_dict() for p in session.clicked_cells],
            "start_time": session.start_time,
            "end_time": session.end_time,
            "remaining_ms": self._remaining_ms(session),
            "is_ended": session.is_ended,
            "completed": session.completed,
            "end_type": session.end_type,
            "result": session.result.to_dict() if session.result else None,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
        }

    def owns_if_present(self, session_id: str, identity: str) -> bool:
        """False when the session is gone; raises if someone else owns it."""
        session = self.store.get(session_id)
        if session is None:
            return False
        self._authorize(session, identity)
        return True

    def get_result(self, session_id: str) -> GameResult:
        session = self._load(session_id)
        if not session.completed or session.result is None:
            raise SessionInProgressError(session_id)
        return session.result

    def get_active_session(self, identity: str) -> Dict[str, Any]:
        session_id = self.store.active_session_id(identity)
        session = self.store.get(session_id) if session_id else None
        if session is None:
            return {"has_active_session": False}
        return {
            "has_active_session": True,
            "session_id": session.id,
            "state": session.state.value,
            "remaining_ms": self._remaining_ms(session),
        }

    @staticmethod
    def get_valid_actions(state: Union[SessionState, str]) -> List[str]:
        if not isinstance(state, SessionState):
            state = parse_state(state)
        return valid_actions(state)

    def get_player_stats(self, identity: str) -> Dict[str, Any]:
        if not identity:
            raise ValidationError("player identity is required")
        return self.persistence.get_stats(identity)

    def shutdown(self) -> None:
        cancelled = self.timers.cancel_all()
        for task in list(self._cleanups.values()):
            task.cancel()
        self._cleanups.clear()
        logger.info(f"[bughunt] shutdown timers_cancelled={cancelled}")
