"""Best-effort repair of loosely shaped generator output into StoryBlocks."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from app.api.schemas.session import BREAK_TYPES, TIME_BOX_TYPES, SessionSummary, StoryBlock, TimeBox, TimeBoxTask
from app.services.duration_rules import DURATION_RULES, DurationRules, round_to_nearest_block
from app.services.session_errors import STRUCTURE_ERROR, StageResult
from app.services.timeline import clock_to_minutes, coerce_clock, minutes_to_clock

logger = logging.getLogger(__name__)

BREAK_BLOCK_TITLE = "Break"
AUTO_BLOCK_TITLE = "Auto-Generated Block {index}"
STORY_BLOCK_TITLE = "Story Block {index}"

TIME_BOX_TYPE_ALIASES = {
    "break": "short-break",
    "short break": "short-break",
    "short_break": "short-break",
    "shortbreak": "short-break",
    "long break": "long-break",
    "long_break": "long-break",
    "longbreak": "long-break",
    "focus": "work",
    "review": "debrief",
}


@dataclass
class NormalizationResult:
    blocks: List[StoryBlock]
    warnings: List[str] = field(default_factory=list)


@dataclass
class NormalizedSession:
    summary: SessionSummary
    story_blocks: List[StoryBlock]
    suggestions: List[Dict[str, Any]] = field(default_factory=list)


def normalize_time_box_type(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    if lowered in TIME_BOX_TYPES:
        return lowered
    return TIME_BOX_TYPE_ALIASES.get(lowered)


def _coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_dict(entry: Any) -> Optional[Dict[str, Any]]:
    if isinstance(entry, StoryBlock):
        return entry.model_dump(by_alias=True)
    if isinstance(entry, dict):
        return entry
    return None


def _looks_like_time_box(entry: Dict[str, Any]) -> bool:
    return (
        normalize_time_box_type(entry.get("type")) is not None
        and _coerce_number(entry.get("duration")) is not None
        and isinstance(entry.get("tasks"), list)
        and isinstance(entry.get("startTime"), str)
        and not isinstance(entry.get("timeBoxes"), list)
    )


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_story_blocks(
    entries: Iterable[Any],
    *,
    session_start: str = "09:00",
    rules: DurationRules = DURATION_RULES,
) -> NormalizationResult:
    """
    Turn a raw block list into well-formed StoryBlocks.

    Entries shaped like a single time box are wrapped in a synthetic block, blocks
    without time boxes get an empty list, and null entries are dropped with a warning.
    Running this on its own output returns an identical structure.
    """
    warnings: List[str] = []
    blocks: List[StoryBlock] = []
    cursor = clock_to_minutes(coerce_clock(session_start) or "09:00")

    for index, raw_entry in enumerate(entries, start=1):
        if raw_entry is None:
            warnings.append(f"Dropped empty story block entry at position {index}")
            continue
        entry = _as_dict(raw_entry)
        if entry is None:
            warnings.append(f"Dropped non-object story block entry at position {index}")
            continue

        if _looks_like_time_box(entry):
            box_type = normalize_time_box_type(entry.get("type"))
            title = BREAK_BLOCK_TITLE if box_type in BREAK_TYPES else AUTO_BLOCK_TITLE.format(index=index)
            warnings.append(f"Wrapped bare time box at position {index} into block '{title}'")
            entry = {"title": title, "timeBoxes": [entry], "totalDuration": entry.get("duration")}

        title = _text(entry.get("title"))
        raw_boxes = entry.get("timeBoxes")
        if not isinstance(raw_boxes, list):
            warnings.append(f"Story block at position {index} had no timeBoxes; repaired with an empty list")
            raw_boxes = []
            entry = {**entry, "totalDuration": 0}
        if not title:
            title = STORY_BLOCK_TITLE.format(index=index)

        time_boxes: List[TimeBox] = []
        for box_index, raw_box in enumerate(raw_boxes, start=1):
            box = _normalize_time_box(raw_box, title, box_index, cursor, rules, warnings)
            if box is None:
                continue
            time_boxes.append(box)
            cursor = clock_to_minutes(box.start_time) + box.duration

        total = _coerce_number(entry.get("totalDuration"))
        blocks.append(
            StoryBlock(
                title=title,
                summary=_text(entry.get("summary")),
                icon=_text(entry.get("icon")),
                time_boxes=time_boxes,
                total_duration=int(total) if total is not None else 0,
            )
        )

    for message in warnings:
        logger.info("Normalizer: %s", message)
    return NormalizationResult(blocks=blocks, warnings=warnings)


def _normalize_time_box(
    raw_box: Any,
    block_title: str,
    position: int,
    cursor: int,
    rules: DurationRules,
    warnings: List[str],
) -> Optional[TimeBox]:
    if not isinstance(raw_box, dict):
        warnings.append(f"Dropped malformed time box {position} in '{block_title}'")
        return None

    box_type = normalize_time_box_type(raw_box.get("type"))
    if box_type is None:
        warnings.append(f"Dropped time box {position} in '{block_title}' with unknown type {raw_box.get('type')!r}")
        return None

    raw_duration = _coerce_number(raw_box.get("duration"))
    if raw_duration is None or raw_duration <= 0:
        warnings.append(f"Dropped time box {position} in '{block_title}' with non-positive duration")
        return None
    duration = round_to_nearest_block(raw_duration, rules, minimum=rules.block_size)

    start_time = coerce_clock(raw_box.get("startTime")) or minutes_to_clock(cursor)

    tasks: List[TimeBoxTask] = []
    if box_type == "work":
        candidates = [task for task in (_coerce_task(item, duration) for item in raw_box.get("tasks") or []) if task]
        if len(candidates) > 1:
            warnings.append(f"Work box {position} in '{block_title}' listed {len(candidates)} tasks; kept the first")
        tasks = candidates[:1] or [TimeBoxTask(title=block_title, duration=duration)]

    return TimeBox(type=box_type, start_time=start_time, duration=duration, tasks=tasks)


def _coerce_task(item: Any, box_duration: int) -> Optional[TimeBoxTask]:
    if isinstance(item, str) and item.strip():
        return TimeBoxTask(title=item.strip(), duration=box_duration)
    if not isinstance(item, dict):
        return None
    title = _text(item.get("title"))
    if not title:
        return None
    duration = _coerce_number(item.get("duration"))
    payload = {**item, "title": title, "duration": int(duration) if duration is not None and duration >= 0 else box_duration}
    try:
        return TimeBoxTask.model_validate(payload)
    except ValidationError as exc:
        logger.debug("Dropped malformed metadata on scheduled task %r: %s", title, exc)
        return TimeBoxTask(title=title, duration=payload["duration"])


def normalize_session_payload(
    payload: Any,
    *,
    session_start: str = "09:00",
    rules: DurationRules = DURATION_RULES,
) -> StageResult[NormalizedSession]:
    """Recover the top-level ``{summary, storyBlocks}`` shape, then normalize the blocks."""
    warnings: List[str] = []
    if isinstance(payload, list):
        warnings.append("Response was a bare list; treated it as storyBlocks")
        payload = {"storyBlocks": payload}
    if not isinstance(payload, dict):
        return StageResult.failure(STRUCTURE_ERROR, "Generator response is not a session object", {"type": type(payload).__name__})

    raw_blocks = payload.get("storyBlocks", payload.get("story_blocks"))
    if raw_blocks is None and isinstance(payload.get("timeBoxes"), list):
        warnings.append("Response had timeBoxes but no storyBlocks; wrapped them into one block")
        raw_blocks = [{key: value for key, value in payload.items() if key not in {"summary", "suggestions"}}]
    if not isinstance(raw_blocks, list):
        return StageResult.failure(
            STRUCTURE_ERROR,
            "Generator response is missing a storyBlocks array",
            {"keys": sorted(str(key) for key in payload.keys())},
        )

    raw_summary = payload.get("summary")
    if not isinstance(raw_summary, dict):
        warnings.append("Response had no summary; synthesized one")
        raw_summary = {}
    start_time = coerce_clock(raw_summary.get("startTime")) or coerce_clock(session_start) or "09:00"

    normalized = normalize_story_blocks(raw_blocks, session_start=start_time, rules=rules)
    warnings.extend(normalized.warnings)
    if not normalized.blocks:
        return StageResult.failure(STRUCTURE_ERROR, "Generator response contained no usable story blocks", None, warnings)

    total_sessions = raw_summary.get("totalSessions")
    if not isinstance(total_sessions, int) or isinstance(total_sessions, bool):
        total_sessions = len(normalized.blocks)
    total_duration = _coerce_number(raw_summary.get("totalDuration"))
    summary = SessionSummary(
        total_sessions=total_sessions,
        start_time=start_time,
        end_time=coerce_clock(raw_summary.get("endTime")) or start_time,
        total_duration=int(total_duration) if total_duration is not None else 0,
    )
    suggestions = [item for item in payload.get("suggestions") or [] if isinstance(item, dict)]
    return StageResult.success(
        NormalizedSession(summary=summary, story_blocks=normalized.blocks, suggestions=suggestions),
        warnings=warnings,
    )
