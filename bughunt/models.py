from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

from .states import SessionState


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Position(NamedTuple):
    x: int
    y: int

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y}


@dataclass(frozen=True)
class LevelConfig:
    level: int
    grid_size: int
    targets: tuple[Position, ...]
    duration_ms: int

    @property
    def num_targets(self) -> int:
        return len(self.targets)

    def contains(self, pos: Position) -> bool:
        return 0 <= pos.x < self.grid_size and 0 <= pos.y < self.grid_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "grid_size": self.grid_size,
            "targets": [p.to_dict() for p in self.targets],
            "num_targets": self.num_targets,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class LevelResult:
    level: int
    round: int
    bugs_found: int
    total_bugs: int
    clicked_cells: int
    duration_ms: int
    score: int
    end_type: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RoundSummary:
    round: int
    total_score: int
    levels: tuple[LevelResult, ...]
    average_accuracy: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round": self.round,
            "total_score": self.total_score,
            "levels": [lv.to_dict() for lv in self.levels],
            "average_accuracy": self.average_accuracy,
        }


@dataclass
class GameResult:
    bugs_found: int
    total_bugs: int
    clicked_cells: int
    duration_ms: int
    end_type: str
    total_score: int
    proof_verified: bool = False
    verification_in_progress: bool = False
    on_chain_verified: Optional[bool] = None
    contract_tx_hash: Optional[str] = None
    verification_error: Optional[str] = None
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Session:
    id: str
    owner: str
    is_guest: bool
    state: SessionState = SessionState.CREATED
    current_round: int = 1
    current_level: int = 1
    highest_round: int = 1
    level_config: Optional[LevelConfig] = None
    clicked_cells: List[Position] = field(default_factory=list)
    round_stats: List[LevelResult] = field(default_factory=list)
    round_history: List[RoundSummary] = field(default_factory=list)
    total_score: int = 0
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    level_epoch: int = 0
    is_ended: bool = False
    completed: bool = False
    end_type: Optional[str] = None
    result: Optional[GameResult] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def touch(self) -> None:
        self.updated_at = _now()


@dataclass(frozen=True)
class LevelOutcome:
    """What `end_level` hands back: the level result plus where the session went."""

    session_id: str
    result: LevelResult
    state: SessionState
    valid_actions: List[str]
    round_complete: bool
    game_complete: bool
    current_round: int
    current_level: int
    total_score: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "result": self.result.to_dict(),
            "state": self.state.value,
            "valid_actions": list(self.valid_actions),
            "round_complete": self.round_complete,
            "game_complete": self.game_complete,
            "current_round": self.current_round,
            "current_level": self.current_level,
            "total_score": self.total_score,
        }
