"""One validation pass: raw generator text in, validated session or classified error out."""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from app.api.schemas.session import Story, StoryMappingEntry
from app.core.context import get_request_id
from app.observability.metrics import log_metric
from app.observability.tracing import annotate, trace
from app.services.break_repairer import repair_story_blocks
from app.services.coverage_validator import ValidatedSession, validate_session
from app.services.duration_rules import DurationRules, get_duration_rules
from app.services.response_parser import parse_generator_response
from app.services.session_errors import DURATION_EXCEEDED, StageResult
from app.services.structure_normalizer import normalize_session_payload
from app.services.timeline import coerce_clock

logger = logging.getLogger(__name__)


def total_estimated_minutes(stories: Iterable[Story]) -> int:
    return sum(story.estimated_duration for story in stories)


def check_duration_ceiling(stories: Sequence[Story], rules: Optional[DurationRules] = None) -> StageResult[int]:
    """Reject sessions whose estimated total exceeds one day before anything is generated."""
    rules = rules or get_duration_rules()
    total = total_estimated_minutes(stories)
    if total > rules.max_session_minutes:
        return StageResult.failure(
            DURATION_EXCEEDED,
            f"Total session duration of {total} minutes exceeds the {rules.max_session_minutes}-minute limit",
            {"totalDuration": total, "maxDuration": rules.max_session_minutes},
        )
    return StageResult.success(total)


def run_session_pipeline(
    raw_response: str | None,
    stories: Sequence[Story],
    start_time: str,
    story_mapping: Optional[Sequence[StoryMappingEntry]] = None,
    rules: Optional[DurationRules] = None,
) -> StageResult[ValidatedSession]:
    rules = rules or get_duration_rules()
    warnings: List[str] = []

    with trace("session.validate", metadata={"stories": len(stories)}, request_id=get_request_id()) as span:
        parsed = parse_generator_response(raw_response)
        warnings.extend(parsed.warnings)
        if not parsed.ok:
            return StageResult(error=parsed.error, warnings=warnings)

        normalized = normalize_session_payload(
            parsed.value,
            session_start=coerce_clock(start_time) or "09:00",
            rules=rules,
        )
        warnings.extend(normalized.warnings)
        if not normalized.ok:
            return StageResult(error=normalized.error, warnings=warnings)
        session = normalized.value

        repaired = repair_story_blocks(session.story_blocks, rules)
        if repaired.splits or repaired.inserted_breaks:
            log_metric("session.repair.inserted_breaks", repaired.inserted_breaks, {"splits": repaired.splits})

        validated = validate_session(
            session.summary,
            repaired.blocks,
            stories,
            story_mapping=story_mapping,
            suggestions=session.suggestions,
            rules=rules,
        )
        warnings.extend(validated.warnings)
        annotate(
            span,
            blocks=len(repaired.blocks),
            splits=repaired.splits,
            inserted_breaks=repaired.inserted_breaks,
            error_code=validated.error.code if validated.error else None,
        )

    if validated.error:
        logger.info("Session validation failed with %s: %s", validated.error.code, validated.error.message)
        return StageResult(error=validated.error, warnings=warnings)
    return StageResult.success(validated.value, warnings=warnings)
