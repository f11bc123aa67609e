"""Pull a JSON session object out of free-form generator text."""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional

from app.services.session_errors import JSON_PARSE_ERROR, StageResult

logger = logging.getLogger(__name__)

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def extract_json_object(text: str) -> Optional[str]:
    """Return the span from the first ``{`` to its balancing ``}`` (or the last ``}`` seen)."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    end = text.rfind("}")
    if end <= start:
        return None
    return text[start : end + 1]


def _lenient_cleanup(candidate: str) -> str:
    cleaned = candidate.replace("\r", " ").replace("\n", " ")
    return _TRAILING_COMMA_RE.sub(r"\1", cleaned)


def parse_generator_response(text: str | None) -> StageResult[Dict[str, Any]]:
    if not text or not text.strip():
        return StageResult.failure(JSON_PARSE_ERROR, "Generator returned an empty response", {"preview": ""})

    preview = text.strip()[:200]
    candidate = extract_json_object(text)
    if candidate is None:
        logger.warning("No JSON object found in generator response")
        return StageResult.failure(
            JSON_PARSE_ERROR,
            "No JSON object found in generator response",
            {"preview": preview},
        )

    warnings = []
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as strict_exc:
        logger.info("Strict JSON parse failed (%s); retrying leniently", strict_exc.msg)
        try:
            parsed = json.loads(_lenient_cleanup(candidate))
        except json.JSONDecodeError as exc:
            return StageResult.failure(
                JSON_PARSE_ERROR,
                "Failed to parse generator response as JSON",
                {"preview": preview, "reason": exc.msg, "position": exc.pos},
            )
        warnings.append("Recovered JSON after lenient cleanup")

    if not isinstance(parsed, dict):
        return StageResult.failure(JSON_PARSE_ERROR, "Generator response is not a JSON object", {"preview": preview})
    return StageResult.success(parsed, warnings=warnings)
