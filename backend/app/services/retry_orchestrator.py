"""Generate-validate loop that retries, and reshapes stories, until a session passes."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from app.api.schemas.session import SplitInfo, Story, StoryMappingEntry, Task, TaskBreak
from app.core.config import settings
from app.core.context import session_attempt_ctx_var
from app.observability.metrics import log_metric
from app.services.coverage_validator import ValidatedSession
from app.services.duration_rules import DurationRules, get_duration_rules, split_into_segments
from app.services.session_errors import RESEND_CODES, SessionError, StageResult
from app.services.session_generator import SessionGenerator, SessionGeneratorError
from app.services.session_pipeline import check_duration_ceiling, run_session_pipeline
from app.services.title_reconciler import TitleReconciler, normalize_title

logger = logging.getLogger(__name__)

ATTEMPT_STARTED = "started"
ATTEMPT_FAILED = "failed"
ATTEMPT_SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class AttemptEvent:
    attempt: int
    max_attempts: int
    status: str
    error_code: Optional[str] = None
    message: Optional[str] = None
    next_backoff: Optional[float] = None


ProgressCallback = Callable[[AttemptEvent], None]


def _merge_split_parts(tasks: Sequence[Task]) -> List[Task]:
    """Fold split parts back into their original task so they can be re-split."""
    merged: List[Task] = []
    groups: Dict[str, int] = {}
    for task in tasks:
        info = task.split_info
        if not task.is_split_part or not info.parent_task_id:
            merged.append(task)
            continue
        if info.parent_task_id in groups:
            index = groups[info.parent_task_id]
            merged[index] = merged[index].model_copy(update={"duration": merged[index].duration + task.duration})
            continue
        groups[info.parent_task_id] = len(merged)
        merged.append(
            task.model_copy(
                update={
                    "id": info.parent_task_id,
                    "title": info.original_title or task.title,
                    "split_info": None,
                    "suggested_breaks": [],
                    "needs_splitting": None,
                }
            )
        )
    return merged


def _part_breaks(durations: Sequence[int], index: int, rules: DurationRules, force_long: bool) -> List[TaskBreak]:
    if index == len(durations) - 1:
        return []
    accumulated = 0
    for position in range(index + 1):
        accumulated += durations[position]
        if position < index and accumulated >= rules.max_work_without_break:
            accumulated = 0
    if force_long or accumulated >= rules.max_work_without_break:
        return [TaskBreak(after=durations[index], duration=rules.long_break, reason="Long break after extended focus")]
    return [TaskBreak(after=durations[index], duration=rules.short_break, reason="Short break between parts")]


def split_task(task: Task, target: int, rules: DurationRules, *, force_long_breaks: bool = False) -> List[Task]:
    """Split one task into "Title (Part k of n)" parts no longer than ``target`` minutes."""
    if task.duration <= target:
        return [task]
    durations = split_into_segments(task.duration, target, rules)
    count = len(durations)
    parts: List[Task] = []
    for index, duration in enumerate(durations):
        number = index + 1
        parts.append(
            task.model_copy(
                update={
                    "id": f"{task.id}-part-{number}",
                    "title": f"{task.title} (Part {number} of {count})",
                    "duration": duration,
                    "needs_splitting": False,
                    "split_info": SplitInfo(
                        is_parent=False,
                        original_title=task.title,
                        part_number=number,
                        total_parts=count,
                        original_duration=task.duration,
                        parent_task_id=task.id,
                    ),
                    "suggested_breaks": _part_breaks(durations, index, rules, force_long_breaks),
                }
            )
        )
    return parts


def split_oversized_tasks(stories: Sequence[Story], rules: DurationRules) -> List[Story]:
    """Split every unsplit task longer than half the focus limit."""
    threshold = rules.preemptive_split_threshold
    updated: List[Story] = []
    for story in stories:
        tasks: List[Task] = []
        for task in story.tasks:
            if task.is_split_part or task.duration <= threshold:
                tasks.append(task)
            else:
                tasks.extend(split_task(task, threshold, rules))
        updated.append(story.model_copy(update={"tasks": tasks}))
    return updated


def build_story_mapping(
    stories: Sequence[Story],
    caller_mapping: Optional[Sequence[StoryMappingEntry]] = None,
) -> List[StoryMappingEntry]:
    """Caller pairs first, then identity titles, then original base titles pointing at their first part."""
    entries: List[StoryMappingEntry] = []
    seen: set = set()

    def add(possible: str, original: str) -> None:
        key = normalize_title(possible)
        if key in seen:
            return
        seen.add(key)
        entries.append(StoryMappingEntry(possible_title=possible, original_title=original))

    for entry in caller_mapping or []:
        add(entry.possible_title, entry.original_title)
    for story in stories:
        add(story.title, story.title)
        for task in story.tasks:
            add(task.title, task.title)
    for story in stories:
        for task in story.tasks:
            if task.is_split_part and task.split_info.part_number == 1 and task.split_info.original_title:
                add(task.split_info.original_title, task.title)
    return entries


def mutate_for_constraint_failure(
    stories: Sequence[Story],
    error: SessionError,
    targets: Dict[int, int],
    rules: DurationRules,
) -> List[Story]:
    """
    Re-split the story named in a constraint failure with a smaller part size.

    The part target halves on each failure but never drops below two minimum
    sessions; every part boundary gets a long break and the story is flagged
    as needing breaks.
    """
    details = error.details if isinstance(error.details, dict) else {}
    index = _offending_story_index(stories, details.get("block"))
    story = stories[index]
    current = targets.get(index, rules.preemptive_split_threshold)
    target = max(2 * rules.min_duration, current // 2)
    targets[index] = target

    tasks: List[Task] = []
    for task in _merge_split_parts(story.tasks):
        tasks.extend(split_task(task, target, rules, force_long_breaks=True))
    logger.info(
        "Re-split story %r after %s with part target %s minutes (%s tasks)",
        story.title,
        error.code,
        target,
        len(tasks),
    )
    mutated = list(stories)
    mutated[index] = story.model_copy(update={"tasks": tasks, "needs_breaks": True})
    return mutated


def _offending_story_index(stories: Sequence[Story], block_title: Optional[str]) -> int:
    if block_title:
        match = TitleReconciler([story.title for story in stories]).match(block_title)
        if match and match.original_index is not None:
            return match.original_index
    longest = max(range(len(stories)), key=lambda idx: max((task.duration for task in stories[idx].tasks), default=0))
    return longest


class SessionRetryOrchestrator:
    """Drive generate, validate and retry attempts for one session request."""

    def __init__(
        self,
        generator: SessionGenerator,
        *,
        max_retries: Optional[int] = None,
        parse_backoff_seconds: Optional[float] = None,
        constraint_backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Optional[ProgressCallback] = None,
        rules: Optional[DurationRules] = None,
    ) -> None:
        self.generator = generator
        self.max_retries = max(1, max_retries if max_retries is not None else settings.session_max_retries)
        self.parse_backoff_seconds = (
            parse_backoff_seconds if parse_backoff_seconds is not None else settings.parse_backoff_seconds
        )
        self.constraint_backoff_seconds = (
            constraint_backoff_seconds if constraint_backoff_seconds is not None else settings.constraint_backoff_seconds
        )
        self.sleep = sleep
        self.on_progress = on_progress
        self.rules = rules or get_duration_rules()

    def _emit(self, event: AttemptEvent) -> None:
        if self.on_progress:
            self.on_progress(event)

    def run(
        self,
        stories: Sequence[Story],
        start_time: str,
        story_mapping: Optional[Sequence[StoryMappingEntry]] = None,
    ) -> StageResult[ValidatedSession]:
        ceiling = check_duration_ceiling(stories, self.rules)
        if not ceiling.ok:
            return StageResult(error=ceiling.error)

        caller_mapping = list(story_mapping or [])
        current = split_oversized_tasks(stories, self.rules)
        mapping = build_story_mapping(current, caller_mapping)
        targets: Dict[int, int] = {}
        result: StageResult[ValidatedSession] = StageResult()

        for attempt in range(1, self.max_retries + 1):
            token = session_attempt_ctx_var.set(attempt)
            try:
                self._emit(AttemptEvent(attempt=attempt, max_attempts=self.max_retries, status=ATTEMPT_STARTED))
                result = self._attempt(current, start_time, mapping)
                if result.ok:
                    logger.info("Session validated on attempt %s/%s", attempt, self.max_retries)
                    self._emit(AttemptEvent(attempt=attempt, max_attempts=self.max_retries, status=ATTEMPT_SUCCEEDED))
                    log_metric("session.attempts", attempt, {"outcome": "success"})
                    return result

                error = result.error
                final = not error.retryable or attempt == self.max_retries
                backoff: Optional[float] = None
                if not final:
                    if error.needs_mutation:
                        current = mutate_for_constraint_failure(current, error, targets, self.rules)
                        mapping = build_story_mapping(current, caller_mapping)
                        backoff = self.constraint_backoff_seconds
                    elif error.code in RESEND_CODES:
                        backoff = self.parse_backoff_seconds
                    else:
                        backoff = self.constraint_backoff_seconds

                logger.warning("Attempt %s/%s failed with %s: %s", attempt, self.max_retries, error.code, error.message)
                self._emit(
                    AttemptEvent(
                        attempt=attempt,
                        max_attempts=self.max_retries,
                        status=ATTEMPT_FAILED,
                        error_code=error.code,
                        message=error.message,
                        next_backoff=backoff,
                    )
                )
                if final:
                    break
            finally:
                session_attempt_ctx_var.reset(token)
            self.sleep(backoff)

        log_metric("session.failure", 1, {"code": result.error.code if result.error else None, "attempts": attempt})
        return result

    def _attempt(
        self,
        stories: List[Story],
        start_time: str,
        mapping: List[StoryMappingEntry],
    ) -> StageResult[ValidatedSession]:
        try:
            raw = self.generator.generate(stories, start_time, mapping)
        except SessionGeneratorError as exc:
            return StageResult(error=exc.error)
        return run_session_pipeline(raw, stories, start_time, mapping, self.rules)
