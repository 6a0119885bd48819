from __future__ import annotations

from dataclasses import dataclass
import os


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class GameSettings:
    """Fixed game constants. Durations are milliseconds unless suffixed _s."""

    min_targets: int = 5
    max_targets: int = 10
    base_grid_size: int = 8
    max_grid_size: int = 16
    grid_size_increment: int = 2
    base_duration_ms: int = 35000
    duration_decrement_ms: int = 5000
    min_duration_ms: int = 15000
    levels_per_round: int = 5
    max_rounds: int = 3
    cleanup_grace_s: float = 10.0
    guest_prefix: str = "guest_"

    def __post_init__(self) -> None:
        if self.min_targets < 1 or self.max_targets < self.min_targets:
            raise ValueError("invalid_target_range")
        if self.base_grid_size < 1 or self.max_grid_size < self.base_grid_size:
            raise ValueError("invalid_grid_size")
        if self.levels_per_round < 1 or self.max_rounds < 1:
            raise ValueError("invalid_round_limits")
        if self.min_duration_ms <= 0:
            raise ValueError("invalid_duration")

    @classmethod
    def from_env(cls) -> "GameSettings":
        d = cls()
        return cls(
            min_targets=_env_int("BUGHUNT_MIN_TARGETS", d.min_targets),
            max_targets=_env_int("BUGHUNT_MAX_TARGETS", d.max_targets),
            base_grid_size=_env_int("BUGHUNT_BASE_GRID_SIZE", d.base_grid_size),
            max_grid_size=_env_int("BUGHUNT_MAX_GRID_SIZE", d.max_grid_size),
            grid_size_increment=_env_int("BUGHUNT_GRID_SIZE_INCREMENT", d.grid_size_increment),
            base_duration_ms=_env_int("BUGHUNT_BASE_DURATION_MS", d.base_duration_ms),
            duration_decrement_ms=_env_int("BUGHUNT_DURATION_DECREMENT_MS", d.duration_decrement_ms),
            min_duration_ms=_env_int("BUGHUNT_MIN_DURATION_MS", d.min_duration_ms),
            levels_per_round=_env_int("BUGHUNT_LEVELS_PER_ROUND", d.levels_per_round),
            max_rounds=_env_int("BUGHUNT_MAX_ROUNDS", d.max_rounds),
            cleanup_grace_s=_env_float("BUGHUNT_CLEANUP_GRACE_S", d.cleanup_grace_s),
            guest_prefix=os.getenv("BUGHUNT_GUEST_PREFIX", d.guest_prefix),
        )

    def is_guest(self, identity: str) -> bool:
        return identity.startswith(self.guest_prefix)
