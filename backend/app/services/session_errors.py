"""Classified failures and stage results for the session pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    INPUT_REJECTION = "input_rejection"
    TRANSPORT = "transport"
    STRUCTURAL = "structural"
    RECONCILIATION = "reconciliation"
    CONSTRAINT = "constraint"
    COVERAGE = "coverage"
    INTERNAL = "internal"


DURATION_EXCEEDED = "DURATION_EXCEEDED"
JSON_PARSE_ERROR = "JSON_PARSE_ERROR"
STRUCTURE_ERROR = "STRUCTURE_ERROR"
GENERATOR_OVERLOADED = "GENERATOR_OVERLOADED"
API_ERROR = "API_ERROR"
UNKNOWN_STORY = "UNKNOWN_STORY"
BLOCK_DURATION_ERROR = "BLOCK_DURATION_ERROR"
EXCESSIVE_WORK_TIME = "EXCESSIVE_WORK_TIME"
MISSING_TASKS = "MISSING_TASKS"
INCOMPLETE_PART_SEQUENCE = "INCOMPLETE_PART_SEQUENCE"
VALIDATION_ERROR = "VALIDATION_ERROR"
PROCESSING_ERROR = "PROCESSING_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"

ERROR_KINDS: Dict[str, ErrorKind] = {
    DURATION_EXCEEDED: ErrorKind.INPUT_REJECTION,
    VALIDATION_ERROR: ErrorKind.INPUT_REJECTION,
    JSON_PARSE_ERROR: ErrorKind.TRANSPORT,
    GENERATOR_OVERLOADED: ErrorKind.TRANSPORT,
    API_ERROR: ErrorKind.TRANSPORT,
    STRUCTURE_ERROR: ErrorKind.STRUCTURAL,
    UNKNOWN_STORY: ErrorKind.RECONCILIATION,
    BLOCK_DURATION_ERROR: ErrorKind.CONSTRAINT,
    EXCESSIVE_WORK_TIME: ErrorKind.CONSTRAINT,
    MISSING_TASKS: ErrorKind.COVERAGE,
    INCOMPLETE_PART_SEQUENCE: ErrorKind.COVERAGE,
    PROCESSING_ERROR: ErrorKind.INTERNAL,
    INTERNAL_ERROR: ErrorKind.INTERNAL,
}

# Upstream flakiness: resend the same payload after the longer backoff.
RESEND_CODES = frozenset({JSON_PARSE_ERROR, STRUCTURE_ERROR, GENERATOR_OVERLOADED})
# The input shape caused it: mutate the offending story, then retry.
MUTATE_CODES = frozenset({EXCESSIVE_WORK_TIME, BLOCK_DURATION_ERROR})
# Fatal for one attempt only; a fresh generation usually fixes the title.
RETRY_CODES = frozenset({UNKNOWN_STORY})

STATUS_OVERLOADED = 529


@dataclass(frozen=True)
class SessionError:
    code: str
    message: str
    details: Any = None

    @property
    def kind(self) -> ErrorKind:
        return ERROR_KINDS.get(self.code, ErrorKind.INTERNAL)

    @property
    def retryable(self) -> bool:
        return self.code in RESEND_CODES or self.code in MUTATE_CODES or self.code in RETRY_CODES

    @property
    def needs_mutation(self) -> bool:
        return self.code in MUTATE_CODES

    @property
    def status_code(self) -> int:
        if self.code == GENERATOR_OVERLOADED:
            return STATUS_OVERLOADED
        if self.kind is ErrorKind.INTERNAL:
            return 500
        return 400

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


@dataclass
class StageResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[SessionError] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, warnings: Optional[List[str]] = None) -> "StageResult[T]":
        return cls(value=value, warnings=list(warnings or []))

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        details: Any = None,
        warnings: Optional[List[str]] = None,
    ) -> "StageResult[T]":
        return cls(error=SessionError(code=code, message=message, details=details), warnings=list(warnings or []))
