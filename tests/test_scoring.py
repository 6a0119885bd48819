import random

import pytest

from bughunt.config import GameSettings
from bughunt.errors import ValidationError
from bughunt.levels import duration_for, generate_level, grid_size_for, place_targets
from bughunt.models import LevelResult, Position
from bughunt.scoring import aggregate_stats, count_bugs_found, level_score, round_summary


def level_result(level, bugs_found, total_bugs, score):
    return LevelResult(
        level=level,
        round=1,
        bugs_found=bugs_found,
        total_bugs=total_bugs,
        clicked_cells=bugs_found,
        duration_ms=1000,
        score=score,
        end_type="manual",
    )


def test_level_score_bounds():
    assert level_score(0, 5, 10) == 0
    assert level_score(5, 5, 5) == 1500
    assert level_score(0, 5, 0) == 0


def test_level_score_efficiency_dilutes_but_accuracy_stays():
    # 1000 * 3/5 + 500 * 3/12
    assert level_score(3, 5, 12) == 725
    assert level_score(3, 5, 3) == 1100


def test_count_bugs_found_counts_every_hit_click():
    targets = [Position(1, 1), Position(2, 2)]
    clicks = [Position(1, 1), Position(1, 1), Position(0, 0), Position(2, 2)]
    assert count_bugs_found(clicks, targets) == 3
    assert count_bugs_found([], targets) == 0


def test_aggregate_stats_rounds_accuracy():
    results = [level_result(1, 2, 3, 100), level_result(2, 0, 3, 0)]
    stats = aggregate_stats(100, results)
    assert stats == {
        "total_score": 100,
        "levels_played": 2,
        "total_bugs_found": 2,
        "total_bugs": 6,
        "accuracy": 33.33,
    }
    assert aggregate_stats(0, [])["accuracy"] == 0.0


def test_round_summary_sums_scores():
    summary = round_summary(2, [level_result(1, 5, 5, 1500), level_result(2, 1, 2, 750)])
    assert summary.round == 2
    assert summary.total_score == 2250
    assert summary.average_accuracy == 75.0
    assert summary.to_dict()["levels"][1]["score"] == 750


def test_grid_size_scales_and_caps():
    s = GameSettings(base_grid_size=8, grid_size_increment=2, max_grid_size=12)
    assert grid_size_for(1, s) == 8
    assert grid_size_for(2, s) == 10
    assert grid_size_for(3, s) == 12
    assert grid_size_for(5, s) == 12


def test_duration_scales_down_to_floor():
    s = GameSettings()
    assert duration_for(1, s) == 35000
    assert duration_for(3, s) == 25000
    assert duration_for(5, s) == 15000
    assert duration_for(9, s) == 15000


def test_generated_targets_are_unique_and_in_range():
    s = GameSettings()
    rng = random.Random(11)
    for level in range(1, 8):
        cfg = generate_level(level, s, rng)
        assert s.min_targets <= cfg.num_targets <= s.max_targets
        assert len(set(cfg.targets)) == cfg.num_targets
        assert all(cfg.contains(p) for p in cfg.targets)


def test_place_targets_exact_count_even_when_grid_is_full():
    rng = random.Random(5)
    targets = place_targets(3, 9, rng)
    assert len(targets) == 9
    assert set(targets) == {Position(x, y) for x in range(3) for y in range(3)}
    with pytest.raises(ValidationError):
        place_targets(2, 5, rng)


def test_generate_level_rejects_level_zero():
    with pytest.raises(ValidationError):
        generate_level(0, GameSettings())


def test_settings_validation():
    with pytest.raises(ValueError):
        GameSettings(min_targets=6, max_targets=5)
    with pytest.raises(ValueError):
        GameSettings(levels_per_round=0)


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("BUGHUNT_LEVELS_PER_ROUND", "2")
    monkeypatch.setenv("BUGHUNT_MAX_ROUNDS", "4")
    monkeypatch.setenv("BUGHUNT_CLEANUP_GRACE_S", "0.5")
    s = GameSettings.from_env()
    assert s.levels_per_round == 2
    assert s.max_rounds == 4
    assert s.cleanup_grace_s == 0.5
    assert s.is_guest("guest_abc") and not s.is_guest("0xabc")
