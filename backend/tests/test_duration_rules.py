from __future__ import annotations

import pytest

from app.services.duration_rules import (
    DURATION_RULES,
    generate_scheduling_suggestion,
    get_duration_rules,
    round_to_nearest_block,
    split_into_segments,
    suggest_split_adjustment,
    validate_task_duration,
)


@pytest.mark.parametrize(
    ("duration", "expected"),
    [(7, 15), (22, 20), (23, 25), (92, 90), (150, 150)],
)
def test_round_to_nearest_block_respects_minimum(duration: int, expected: int) -> None:
    assert round_to_nearest_block(duration) == expected


def test_round_to_nearest_block_with_custom_minimum() -> None:
    assert round_to_nearest_block(2, minimum=DURATION_RULES.block_size) == 5


def test_validate_task_duration_bounds() -> None:
    assert validate_task_duration(15)
    assert validate_task_duration(180)
    assert not validate_task_duration(10)
    assert not validate_task_duration(185)
    assert not validate_task_duration(33)


def test_scheduling_suggestion_mentions_each_problem() -> None:
    message = generate_scheduling_suggestion(203)

    assert "Consider splitting this 203m task" in message
    assert "Consider adjusting to 205m" in message
    assert generate_scheduling_suggestion(60) == ""


def test_suggest_split_adjustment_counts_remaining_parts() -> None:
    assert suggest_split_adjustment(400, 180) == "Consider adding 2 more parts to cover the remaining 220 minutes"
    assert suggest_split_adjustment(200, 180) == "Consider adding 1 more part to cover the remaining 20 minutes"


def test_split_into_segments_is_block_aligned_and_bounded() -> None:
    segments = split_into_segments(150, 90)

    assert segments == [75, 75]
    assert split_into_segments(200, 90) == [70, 65, 65]
    assert split_into_segments(60, 90) == [60]
    for duration in (95, 137, 181, 270):
        parts = split_into_segments(duration, 90)
        assert sum(parts) == duration
        assert all(part <= 90 for part in parts)


def test_derived_limits() -> None:
    assert DURATION_RULES.work_time_ceiling == 95
    assert DURATION_RULES.preemptive_split_threshold == 45


def test_get_duration_rules_reads_tuning_settings(monkeypatch) -> None:
    from app.core.config import settings

    monkeypatch.setattr(settings, "work_time_tolerance", 10)
    monkeypatch.setattr(settings, "short_break_work_reduction", 30)

    rules = get_duration_rules()

    assert rules.work_time_ceiling == 100
    assert rules.short_break_work_reduction == 30
    assert rules.max_work_without_break == DURATION_RULES.max_work_without_break
