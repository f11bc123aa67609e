"""Split oversized work boxes and insert long breaks where focus time runs too long."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from app.api.schemas.session import StoryBlock, TimeBox, TimeBoxTask
from app.services.duration_rules import DURATION_RULES, DurationRules, split_into_segments
from app.services.duration_summary import summarize_time_boxes
from app.services.timeline import restamp
from app.services.title_reconciler import CONTINUED_SUFFIX

logger = logging.getLogger(__name__)


@dataclass
class RepairResult:
    blocks: List[StoryBlock]
    splits: int = 0
    inserted_breaks: int = 0


@dataclass(frozen=True)
class WorkTimeViolation:
    index: int
    time_box: TimeBox
    consecutive_work_time: int
    max_allowed: int
    breaks_since: List[str] = field(default_factory=list)


def _long_break(rules: DurationRules) -> TimeBox:
    return TimeBox(type="long-break", duration=rules.long_break, tasks=[])


def _continued(title: str) -> str:
    return title if title.endswith(CONTINUED_SUFFIX) else f"{title}{CONTINUED_SUFFIX}"


def _split_oversized(time_boxes: Sequence[TimeBox], rules: DurationRules) -> tuple[List[TimeBox], int]:
    expanded: List[TimeBox] = []
    splits = 0
    for box in time_boxes:
        if box.type != "work" or box.duration <= rules.max_work_without_break:
            expanded.append(box)
            continue
        segments = split_into_segments(box.duration, rules.max_work_without_break, rules)
        template = box.tasks[0] if box.tasks else TimeBoxTask(title="")
        task_title = template.title
        for position, segment in enumerate(segments):
            if position:
                expanded.append(_long_break(rules))
            title = task_title if position == 0 else _continued(task_title)
            expanded.append(
                TimeBox(
                    type="work",
                    start_time=box.start_time,
                    duration=segment,
                    tasks=[template.model_copy(update={"title": title, "duration": segment}, deep=True)],
                )
            )
        splits += 1
        logger.info("Split %s-minute work box %r into %s segments", box.duration, task_title, len(segments))
    return expanded, splits


def _space_work(time_boxes: Sequence[TimeBox], rules: DurationRules) -> tuple[List[TimeBox], int]:
    spaced: List[TimeBox] = []
    inserted = 0
    counter = 0
    for box in time_boxes:
        if box.type == "long-break":
            counter = 0
        elif box.type == "short-break":
            counter = max(0, counter - rules.short_break_work_reduction)
        elif box.type == "work":
            if spaced and counter + box.duration > rules.work_time_ceiling:
                spaced.append(_long_break(rules))
                inserted += 1
                counter = 0
            counter += box.duration
        spaced.append(box)
    return spaced, inserted


def repair_block(block: StoryBlock, rules: DurationRules = DURATION_RULES) -> tuple[StoryBlock, int, int]:
    boxes, splits = _split_oversized(block.time_boxes, rules)
    boxes, inserted = _space_work(boxes, rules)
    if (splits or inserted) and boxes:
        boxes = restamp(boxes, block.time_boxes[0].start_time)
    summary = summarize_time_boxes(boxes)
    repaired = block.model_copy(update={"time_boxes": boxes, "total_duration": summary.total_duration})
    return repaired, splits, inserted


def repair_story_blocks(blocks: Sequence[StoryBlock], rules: DurationRules = DURATION_RULES) -> RepairResult:
    """Return new blocks whose work runs respect the break rules; inputs are left untouched."""
    result = RepairResult(blocks=[])
    for block in blocks:
        repaired, splits, inserted = repair_block(block, rules)
        result.blocks.append(repaired)
        result.splits += splits
        result.inserted_breaks += inserted
    if result.inserted_breaks:
        logger.info("Inserted %s long breaks across %s blocks", result.inserted_breaks, len(blocks))
    return result


def find_work_time_violation(
    time_boxes: Sequence[TimeBox],
    rules: DurationRules = DURATION_RULES,
) -> Optional[WorkTimeViolation]:
    """Walk the boxes like the repair pass does and report the first over-long work run."""
    counter = 0
    breaks_since: List[str] = []
    for index, box in enumerate(time_boxes):
        if box.type == "long-break":
            counter = 0
            breaks_since = []
        elif box.type == "short-break":
            counter = max(0, counter - rules.short_break_work_reduction)
            breaks_since.append(box.type)
        elif box.type == "debrief":
            breaks_since.append(box.type)
        else:
            counter += box.duration
            if counter > rules.work_time_ceiling:
                return WorkTimeViolation(
                    index=index,
                    time_box=box,
                    consecutive_work_time=counter,
                    max_allowed=rules.max_work_without_break,
                    breaks_since=list(breaks_since),
                )
    return None
