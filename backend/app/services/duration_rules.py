"""Duration and break rules shared by every scheduling stage."""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import List


@dataclass(frozen=True)
class DurationRules:
    min_duration: int = 15
    block_size: int = 5
    max_duration: int = 180
    short_break: int = 5
    long_break: int = 15
    debrief: int = 5
    max_work_without_break: int = 90
    # Tuning parameters: buffer against rounding noise and how much of the
    # accumulated work a short break offsets.
    work_time_tolerance: int = 5
    short_break_work_reduction: int = 25
    split_tolerance: int = 10
    max_session_minutes: int = 24 * 60

    @property
    def work_time_ceiling(self) -> int:
        return self.max_work_without_break + self.work_time_tolerance

    @property
    def preemptive_split_threshold(self) -> int:
        return self.max_work_without_break // 2


DURATION_RULES = DurationRules()


def get_duration_rules() -> DurationRules:
    """Return the rule set with tuning parameters taken from settings."""
    from app.core.config import settings

    return replace(
        DURATION_RULES,
        work_time_tolerance=settings.work_time_tolerance,
        short_break_work_reduction=settings.short_break_work_reduction,
    )


def round_to_nearest_block(duration: float, rules: DurationRules = DURATION_RULES, *, minimum: int | None = None) -> int:
    """Round to the nearest block multiple, never below ``minimum`` (defaults to min_duration)."""
    floor_value = rules.min_duration if minimum is None else minimum
    rounded = int(round(duration / rules.block_size)) * rules.block_size
    return max(floor_value, rounded)


def validate_task_duration(duration: int, rules: DurationRules = DURATION_RULES) -> bool:
    return (
        duration >= rules.min_duration
        and duration % rules.block_size == 0
        and duration <= rules.max_duration
    )


def generate_scheduling_suggestion(duration: int, rules: DurationRules = DURATION_RULES) -> str:
    suggestions: List[str] = []
    if duration < rules.min_duration:
        suggestions.append(
            f"Task duration ({duration}m) is less than the minimum recommended time ({rules.min_duration}m) for effective focus"
        )
    if duration > rules.max_duration:
        suggestions.append(
            f"Consider splitting this {duration}m task into smaller sessions ({rules.min_duration}-{rules.max_duration}m each)"
        )
    if duration % rules.block_size != 0:
        suggestions.append(
            f"Consider adjusting to {round_to_nearest_block(duration, rules)}m to align with {rules.block_size}-minute scheduling blocks"
        )
    return ". ".join(suggestions)


def suggest_split_adjustment(original_duration: int, split_duration: int, rules: DurationRules = DURATION_RULES) -> str:
    remaining = original_duration - split_duration
    parts = max(1, math.ceil(remaining / rules.max_duration))
    plural = "s" if parts > 1 else ""
    return f"Consider adding {parts} more part{plural} to cover the remaining {remaining} minutes"


def split_into_segments(duration: int, max_segment: int, rules: DurationRules = DURATION_RULES) -> List[int]:
    """
    Split ``duration`` into the fewest near-equal segments no longer than ``max_segment``.

    Segments are block aligned; an off-block remainder lands on the last segment.
    """
    if duration <= max_segment:
        return [duration]
    count = math.ceil(duration / max_segment)
    base = (duration // count) // rules.block_size * rules.block_size
    segments = [base] * count
    remainder = duration - base * count
    index = 0
    while remainder >= rules.block_size:
        segments[index] += rules.block_size
        remainder -= rules.block_size
        index += 1
    segments[-1] += remainder
    return segments
