"""Work/break arithmetic over a story block's time boxes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from app.api.schemas.session import TimeBox


@dataclass(frozen=True)
class DurationSummary:
    work_duration: int
    break_duration: int
    total_duration: int

    def to_dict(self) -> dict:
        return {
            "workDuration": self.work_duration,
            "breakDuration": self.break_duration,
            "totalDuration": self.total_duration,
        }


def calculate_work_duration(time_boxes: Iterable[TimeBox]) -> int:
    return sum(box.duration for box in time_boxes if box.type == "work")


def calculate_break_duration(time_boxes: Iterable[TimeBox]) -> int:
    return sum(box.duration for box in time_boxes if box.type != "work")


def calculate_total_duration(time_boxes: Sequence[TimeBox]) -> int:
    return calculate_work_duration(time_boxes) + calculate_break_duration(time_boxes)


def summarize_time_boxes(time_boxes: Sequence[TimeBox]) -> DurationSummary:
    work = calculate_work_duration(time_boxes)
    breaks = calculate_break_duration(time_boxes)
    return DurationSummary(work_duration=work, break_duration=breaks, total_duration=work + breaks)
