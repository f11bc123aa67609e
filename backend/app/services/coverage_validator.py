"""Final checks on a repaired session: block arithmetic, break spacing, titles and task coverage."""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from pydantic import ValidationError

from app.api.schemas.session import SessionPlan, SessionSummary, Story, StoryBlock, StoryMappingEntry, Suggestion, Task
from app.services.break_repairer import find_work_time_violation
from app.services.duration_rules import DURATION_RULES, DurationRules
from app.services.duration_summary import summarize_time_boxes
from app.services.session_errors import (
    BLOCK_DURATION_ERROR,
    EXCESSIVE_WORK_TIME,
    INCOMPLETE_PART_SEQUENCE,
    MISSING_TASKS,
    UNKNOWN_STORY,
    StageResult,
)
from app.services.timeline import add_minutes
from app.services.title_reconciler import (
    CONTINUED_SUFFIX_RE,
    TitleReconciler,
    is_break_title,
    normalize_title,
    strip_part_suffix,
)

logger = logging.getLogger(__name__)

SOFT_COVERAGE_RATIO = 0.75
TRUNCATED_PART_SEQUENCE = "TRUNCATED_PART_SEQUENCE"


@dataclass
class ValidatedSession:
    session: SessionPlan
    stories: List[Story]
    coverage: Dict[str, str] = field(default_factory=dict)


def validate_session(
    summary: SessionSummary,
    story_blocks: Sequence[StoryBlock],
    stories: Sequence[Story],
    *,
    story_mapping: Optional[Iterable[StoryMappingEntry]] = None,
    suggestions: Optional[Iterable[Any]] = None,
    rules: DurationRules = DURATION_RULES,
) -> StageResult[ValidatedSession]:
    mapping = list(story_mapping or [])
    story_reconciler = TitleReconciler([story.title for story in stories], mapping, rules)
    realized: Dict[int, int] = {}
    break_blocks: Set[int] = set()

    for position, block in enumerate(story_blocks):
        figures = summarize_time_boxes(block.time_boxes)
        if block.total_duration != figures.total_duration:
            return StageResult.failure(
                BLOCK_DURATION_ERROR,
                f"Block '{block.title}' reports {block.total_duration} minutes but its time boxes add up to {figures.total_duration}",
                {
                    "block": block.title,
                    "totalDuration": block.total_duration,
                    "workDuration": figures.work_duration,
                    "breakDuration": figures.break_duration,
                    "expectedTotal": figures.total_duration,
                },
            )

        violation = find_work_time_violation(block.time_boxes, rules)
        if violation:
            return StageResult.failure(
                EXCESSIVE_WORK_TIME,
                f"Block '{block.title}' schedules {violation.consecutive_work_time} minutes of work without a long break",
                {
                    "block": block.title,
                    "timeBox": {
                        "index": violation.index,
                        "startTime": violation.time_box.start_time,
                        "duration": violation.time_box.duration,
                        "task": violation.time_box.tasks[0].title if violation.time_box.tasks else None,
                    },
                    "consecutiveWorkTime": violation.consecutive_work_time,
                    "maxAllowed": violation.max_allowed,
                    "breaksSince": violation.breaks_since,
                },
            )

        match = story_reconciler.match(block.title)
        if match is None:
            return StageResult.failure(
                UNKNOWN_STORY,
                f"Block '{block.title}' does not match any story",
                {"block": block.title, "availableStories": story_reconciler.original_titles},
            )
        if match.is_sentinel:
            if is_break_title(block.title):
                break_blocks.add(position)
            continue
        realized_minutes = figures.work_duration or figures.total_duration
        realized[match.original_index] = realized.get(match.original_index, 0) + realized_minutes

    updated_stories = [
        story.model_copy(update={"estimated_duration": realized[index]}) if index in realized else story
        for index, story in enumerate(stories)
    ]

    total_duration = sum(block.total_duration for block in story_blocks)
    session_summary = summary.model_copy(
        update={
            "total_duration": total_duration,
            "end_time": add_minutes(summary.start_time, total_duration),
        }
    )

    tasks = [task for story in stories for task in story.tasks]
    coverage, direct, scheduled_count = _map_scheduled_tasks(story_blocks, tasks, mapping, rules, break_blocks)
    extra_suggestions = _cover_split_siblings(tasks, coverage, direct)

    missing = [task for task in tasks if task.id not in coverage]
    if missing:
        outcome = _classify_missing(missing, tasks, scheduled_count)
        if isinstance(outcome, StageResult):
            return outcome
        extra_suggestions.append(outcome)

    plan = SessionPlan(
        summary=session_summary,
        story_blocks=list(story_blocks),
        suggestions=_coerce_suggestions(suggestions) + extra_suggestions,
    )
    return StageResult.success(ValidatedSession(session=plan, stories=updated_stories, coverage=coverage))


def _map_scheduled_tasks(
    story_blocks: Sequence[StoryBlock],
    tasks: Sequence[Task],
    mapping: List[StoryMappingEntry],
    rules: DurationRules,
    break_blocks: Set[int],
) -> tuple[Dict[str, str], Set[str], int]:
    reconciler = TitleReconciler([task.title for task in tasks], mapping, rules)
    normalized_titles = [normalize_title(task.title) for task in tasks]
    coverage: Dict[str, str] = OrderedDict()
    direct: Set[str] = set()
    scheduled_titles: Set[str] = set()

    for position, block in enumerate(story_blocks):
        if position in break_blocks:
            continue
        for box in block.time_boxes:
            if box.type != "work":
                continue
            for scheduled in box.tasks:
                scheduled_titles.add(normalize_title(CONTINUED_SUFFIX_RE.sub("", scheduled.title)))
                match = reconciler.match(scheduled.title)
                if match is None or match.is_sentinel:
                    logger.debug("Scheduled task %r has no original counterpart", scheduled.title)
                    continue
                target = match.original_index
                for index, title in enumerate(normalized_titles):
                    if title == normalized_titles[target] and tasks[index].id not in coverage:
                        target = index
                        break
                task_id = tasks[target].id
                coverage.setdefault(task_id, scheduled.title)
                direct.add(task_id)
    return coverage, direct, len(scheduled_titles)


def _split_group_key(task: Task) -> Optional[str]:
    if not task.is_split_part:
        return None
    info = task.split_info
    if info.parent_task_id:
        return info.parent_task_id
    return normalize_title(info.original_title or strip_part_suffix(task.title))


def _cover_split_siblings(tasks: Sequence[Task], coverage: Dict[str, str], direct: Set[str]) -> List[Suggestion]:
    groups: Dict[str, List[Task]] = OrderedDict()
    for task in tasks:
        key = _split_group_key(task)
        if key is not None:
            groups.setdefault(key, []).append(task)

    suggestions: List[Suggestion] = []
    for parts in groups.values():
        covering = next((coverage[part.id] for part in parts if part.id in coverage), None)
        if covering is None:
            continue
        for part in parts:
            coverage.setdefault(part.id, covering)

        scheduled_numbers = [part.split_info.part_number for part in parts if part.id in direct]
        highest = max(scheduled_numbers)
        assumed = [part.split_info.part_number for part in parts if part.split_info.part_number > highest]
        if assumed:
            original_title = parts[0].split_info.original_title or strip_part_suffix(parts[0].title)
            suggestions.append(
                Suggestion(
                    type=TRUNCATED_PART_SEQUENCE,
                    message=f"Only parts up to {highest} of '{original_title}' were scheduled; later parts were assumed",
                    details={
                        "originalTitle": original_title,
                        "scheduledParts": sorted(scheduled_numbers),
                        "assumedParts": assumed,
                        "totalParts": parts[0].split_info.total_parts,
                    },
                )
            )
    return suggestions


def _classify_missing(
    missing: List[Task],
    tasks: Sequence[Task],
    scheduled_count: int,
) -> StageResult[ValidatedSession] | Suggestion:
    titles = [task.title for task in missing]
    covered_count = len(tasks) - len(missing)
    ratio = covered_count / len(tasks) if tasks else 1.0
    details = {
        "missingTasks": titles,
        "originalTaskCount": len(tasks),
        "scheduledTaskCount": scheduled_count,
        "coveredTaskCount": covered_count,
    }

    if all(task.is_split_part for task in missing):
        if all(task.split_info.part_number > 1 for task in missing) and ratio >= SOFT_COVERAGE_RATIO:
            logger.warning("Accepting session with %s trailing split parts unscheduled", len(missing))
            return Suggestion(
                type=INCOMPLETE_PART_SEQUENCE,
                message=f"{len(missing)} later part(s) of split tasks were not scheduled",
                details=details,
            )
        return StageResult.failure(
            INCOMPLETE_PART_SEQUENCE,
            f"Split task parts missing from the schedule: {', '.join(titles)}",
            details,
        )

    return StageResult.failure(
        MISSING_TASKS,
        f"{len(missing)} task(s) missing from the schedule: {', '.join(titles)}",
        details,
    )


def _coerce_suggestions(raw: Optional[Iterable[Any]]) -> List[Suggestion]:
    suggestions: List[Suggestion] = []
    for item in raw or []:
        if isinstance(item, Suggestion):
            suggestions.append(item)
            continue
        try:
            suggestions.append(Suggestion.model_validate(item))
        except ValidationError:
            logger.debug("Dropped malformed suggestion %r", item)
    return suggestions
