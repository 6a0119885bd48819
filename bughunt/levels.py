from __future__ import annotations

import random
from typing import Optional

from .config import GameSettings
from .errors import ValidationError
from .models import LevelConfig, Position


def grid_size_for(level: int, settings: GameSettings) -> int:
    return min(settings.base_grid_size + settings.grid_size_increment * (level - 1), settings.max_grid_size)


def duration_for(level: int, settings: GameSettings) -> int:
    return max(settings.base_duration_ms - settings.duration_decrement_ms * (level - 1), settings.min_duration_ms)


def place_targets(grid_size: int, count: int, rng: random.Random) -> tuple[Position, ...]:
    """Rejection-sample `count` distinct cells, kept in the order they were drawn."""
    if count > grid_size * grid_size:
        raise ValidationError("too_many_targets_for_grid")
    seen: dict[Position, None] = {}
    while len(seen) < count:
        pos = Position(rng.randrange(grid_size), rng.randrange(grid_size))
        seen.setdefault(pos, None)
    return tuple(seen)


def generate_level(level: int, settings: GameSettings, rng: Optional[random.Random] = None) -> LevelConfig:
    if level < 1:
        raise ValidationError("invalid_level")
    rng = rng or random.Random()
    grid_size = grid_size_for(level, settings)
    count = rng.randint(settings.min_targets, settings.max_targets)
    return LevelConfig(
        level=level,
        grid_size=grid_size,
        targets=place_targets(grid_size, count, rng),
        duration_ms=duration_for(level, settings),
    )
