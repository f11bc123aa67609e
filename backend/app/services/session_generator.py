"""Schedule generation through the OpenAI chat completions API."""
from __future__ import annotations

import json
import logging
from typing import List, Optional, Protocol, Sequence, Tuple

import openai

from app.api.schemas.session import Story, StoryMappingEntry
from app.core.config import settings
from app.core.context import get_request_id
from app.observability.tracing import trace
from app.services.duration_rules import DURATION_RULES, DurationRules
from app.services.session_errors import API_ERROR, GENERATOR_OVERLOADED, SessionError
from app.services.timeline import coerce_clock

logger = logging.getLogger(__name__)

OVERLOAD_STATUS_CODES = {429, 503, 529}


class SessionGeneratorError(Exception):
    """Raised by generators when the upstream call itself fails."""

    def __init__(self, code: str, message: str, details: object = None) -> None:
        super().__init__(message)
        self.error = SessionError(code=code, message=message, details=details)


class SessionGenerator(Protocol):
    def generate(
        self,
        stories: Sequence[Story],
        start_time: str,
        story_mapping: Optional[Sequence[StoryMappingEntry]] = None,
    ) -> str:
        ...


def _rules_block(rules: DurationRules) -> str:
    return (
        "Scheduling rules:\n"
        f"- Every duration is a multiple of {rules.block_size} minutes; work boxes last at least {rules.min_duration} minutes.\n"
        f"- Never schedule more than {rules.max_work_without_break} minutes of work without a "
        f"{rules.long_break}-minute long break.\n"
        f"- Put {rules.short_break}-minute short breaks between regular work boxes.\n"
        f"- End each story block with a {rules.debrief}-minute debrief.\n"
        "- Each work time box contains exactly one task; break and debrief boxes contain no tasks.\n"
        "- Tasks marked isFrog are high priority and go first. Do not add 'FROG' to titles.\n"
        "- Use story and task titles exactly as provided. Split tasks keep the format "
        "'Original Title (Part X of Y)'.\n"
        "- Every task from every story must appear in the schedule.\n"
        "- Each block totalDuration includes its work, breaks and debrief; summary.totalDuration is the sum "
        "of all block totals."
    )


RESPONSE_SHAPE = {
    "summary": {"totalSessions": "number", "startTime": "HH:MM", "endTime": "HH:MM", "totalDuration": "number"},
    "storyBlocks": [
        {
            "title": "story title exactly as provided",
            "summary": "string",
            "icon": "emoji",
            "timeBoxes": [
                {
                    "type": "work | short-break | long-break | debrief",
                    "startTime": "HH:MM",
                    "duration": "number",
                    "tasks": [{"title": "task title", "duration": "number"}],
                }
            ],
            "totalDuration": "number",
        }
    ],
}


def build_session_prompt(
    stories: Sequence[Story],
    start_time: str,
    story_mapping: Optional[Sequence[StoryMappingEntry]] = None,
    rules: DurationRules = DURATION_RULES,
) -> Tuple[str, str]:
    system_prompt = (
        "You are a focused day planner. You turn stories and their tasks into a timed schedule of work "
        "sessions and breaks. Respond with a single JSON object and nothing else."
    )
    stories_json = json.dumps([story.model_dump(by_alias=True) for story in stories], indent=2)
    mapping_lines: List[str] = [
        f'- "{entry.possible_title}" refers to "{entry.original_title}"' for entry in story_mapping or []
    ]
    mapping_text = "\n".join(mapping_lines) if mapping_lines else "None"
    user_prompt = (
        f"Create a work session schedule starting at {coerce_clock(start_time) or start_time}.\n\n"
        f"{_rules_block(rules)}\n\n"
        f"Title hints:\n{mapping_text}\n\n"
        f"Stories:\n{stories_json}\n\n"
        "Return strictly valid JSON shaped like:\n"
        f"{json.dumps(RESPONSE_SHAPE, indent=2)}"
    )
    return system_prompt, user_prompt


class OpenAISessionGenerator:
    """SessionGenerator backed by ``openai.OpenAI`` chat completions."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[openai.OpenAI] = None,
        rules: DurationRules = DURATION_RULES,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.generator_model
        self.rules = rules
        self._client = client

    def _get_client(self) -> openai.OpenAI:
        if self._client is None:
            if not self.api_key:
                raise SessionGeneratorError(API_ERROR, "OPENAI_API_KEY is not configured")
            self._client = openai.OpenAI(api_key=self.api_key)
        return self._client

    def generate(
        self,
        stories: Sequence[Story],
        start_time: str,
        story_mapping: Optional[Sequence[StoryMappingEntry]] = None,
    ) -> str:
        client = self._get_client()
        system_prompt, user_prompt = build_session_prompt(stories, start_time, story_mapping, self.rules)
        metadata = {"model": self.model, "stories": len(stories)}
        try:
            with trace("session.generate", metadata=metadata, request_id=get_request_id()):
                completion = client.chat.completions.create(
                    model=self.model,
                    max_tokens=settings.generator_max_tokens,
                    temperature=settings.generator_temperature,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                )
        except (openai.APIConnectionError, openai.APITimeoutError) as exc:
            logger.warning("Generator unreachable: %s", exc)
            raise SessionGeneratorError(GENERATOR_OVERLOADED, "Schedule generator is unavailable") from exc
        except openai.APIStatusError as exc:
            if exc.status_code in OVERLOAD_STATUS_CODES:
                logger.warning("Generator overloaded (status %s)", exc.status_code)
                raise SessionGeneratorError(
                    GENERATOR_OVERLOADED,
                    "Schedule generator is overloaded",
                    {"status": exc.status_code},
                ) from exc
            logger.error("Generator request failed with status %s", exc.status_code)
            raise SessionGeneratorError(API_ERROR, "Schedule generator request failed", {"status": exc.status_code}) from exc
        except openai.OpenAIError as exc:
            logger.error("Generator request failed: %s", exc)
            raise SessionGeneratorError(API_ERROR, "Schedule generator request failed") from exc

        content = completion.choices[0].message.content or ""
        logger.debug("Generator returned %s characters", len(content))
        return content
