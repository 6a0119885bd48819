"""Level scoring and aggregate statistics. No side effects."""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, Sequence

from .models import LevelResult, Position, RoundSummary

ACCURACY_POINTS = 1000
EFFICIENCY_POINTS = 500


def level_score(bugs_found: int, total_bugs: int, total_clicks: int) -> int:
    """Up to 1000 points for finding every bug plus up to 500 for needing few clicks."""
    accuracy = bugs_found / total_bugs if total_bugs > 0 else 0.0
    efficiency = bugs_found / max(total_clicks, 1)
    score = math.floor(accuracy * ACCURACY_POINTS + efficiency * EFFICIENCY_POINTS)
    return max(0, score)


def count_bugs_found(clicked_cells: Iterable[Position], targets: Iterable[Position]) -> int:
    # every click on a target counts, repeated clicks included
    target_set = set(targets)
    return sum(1 for cell in clicked_cells if cell in target_set)


def _accuracy_pct(found: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(found / total * 100, 2)


def aggregate_stats(total_score: int, level_results: Sequence[LevelResult]) -> Dict[str, Any]:
    bugs_found = sum(r.bugs_found for r in level_results)
    total_bugs = sum(r.total_bugs for r in level_results)
    return {
        "total_score": total_score,
        "levels_played": len(level_results),
        "total_bugs_found": bugs_found,
        "total_bugs": total_bugs,
        "accuracy": _accuracy_pct(bugs_found, total_bugs),
    }


def round_summary(round_number: int, level_results: Sequence[LevelResult]) -> RoundSummary:
    accuracies = [_accuracy_pct(r.bugs_found, r.total_bugs) for r in level_results]
    average = round(sum(accuracies) / len(accuracies), 2) if accuracies else 0.0
    return RoundSummary(
        round=round_number,
        total_score=sum(r.score for r in level_results),
        levels=tuple(level_results),
        average_accuracy=average,
    )
