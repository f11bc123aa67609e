"""Pydantic schemas for stories, time boxes and generated sessions."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

TaskCategory = Literal["focus", "learning", "review", "research"]
StoryType = Literal["timeboxed", "flexible", "milestone"]
TimeBoxType = Literal["work", "short-break", "long-break", "debrief"]
TimeBoxStatus = Literal["todo", "completed", "in-progress", "mitigated"]

TIME_BOX_TYPES = ("work", "short-break", "long-break", "debrief")
BREAK_TYPES = ("short-break", "long-break", "debrief")


def apply_field_aliases(payload: Dict[str, Any], *, type_field: str) -> Dict[str, Any]:
    """Rename loose generator field names (`type`, `project`) to their canonical names."""
    normalized = dict(payload)
    if "type" in normalized and type_field not in normalized:
        normalized[type_field] = normalized.pop("type")
    if "project" in normalized and "projectType" not in normalized and "project_type" not in normalized:
        normalized["projectType"] = normalized.pop("project")
    return normalized


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class TaskBreak(CamelModel):
    after: int = Field(..., ge=0, description="Minutes into the task.")
    duration: int = Field(..., ge=0)
    reason: str = ""


class SplitInfo(CamelModel):
    is_parent: bool = False
    original_title: Optional[str] = None
    part_number: Optional[int] = Field(default=None, ge=1)
    total_parts: Optional[int] = Field(default=None, ge=1)
    original_duration: Optional[int] = None
    parent_task_id: Optional[str] = None


class Task(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str = Field(..., min_length=1)
    duration: int = Field(..., gt=0, description="Minutes.")
    task_category: TaskCategory = "focus"
    is_frog: bool = False
    is_flexible: bool = False
    project_type: Optional[str] = None
    needs_splitting: Optional[bool] = None
    split_info: Optional[SplitInfo] = None
    suggested_breaks: List[TaskBreak] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return apply_field_aliases(data, type_field="taskCategory")
        return data

    @model_validator(mode="after")
    def _check_split_info(self) -> "Task":
        info = self.split_info
        if info and not info.is_parent and info.part_number and info.total_parts:
            if info.part_number > info.total_parts:
                raise ValueError(f"partNumber {info.part_number} exceeds totalParts {info.total_parts}")
        return self

    @property
    def is_split_part(self) -> bool:
        return bool(self.split_info and not self.split_info.is_parent and self.split_info.part_number)


class Story(CamelModel):
    title: str = Field(..., min_length=1)
    summary: str = ""
    icon: str = ""
    estimated_duration: int = Field(default=0, ge=0)
    story_type: StoryType = "timeboxed"
    category: str = ""
    project_type: Optional[str] = None
    needs_breaks: Optional[bool] = None
    tasks: List[Task] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return apply_field_aliases(data, type_field="storyType")
        return data


class TimeBoxTask(CamelModel):
    title: str
    duration: int = Field(default=0, ge=0)
    is_frog: Optional[bool] = None
    task_category: Optional[TaskCategory] = None
    project_type: Optional[str] = None
    is_flexible: Optional[bool] = None
    split_info: Optional[SplitInfo] = None
    suggested_breaks: Optional[List[TaskBreak]] = None
    status: Optional[TimeBoxStatus] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return apply_field_aliases(data, type_field="taskCategory")
        return data


class TimeBox(CamelModel):
    type: TimeBoxType
    start_time: str = "00:00"
    duration: int = Field(..., gt=0)
    tasks: List[TimeBoxTask] = Field(default_factory=list)


class StoryBlock(CamelModel):
    title: str
    summary: str = ""
    icon: str = ""
    time_boxes: List[TimeBox] = Field(default_factory=list)
    total_duration: int = 0


class SessionSummary(CamelModel):
    total_sessions: int = 0
    start_time: str = "00:00"
    end_time: str = "00:00"
    total_duration: int = 0


class Suggestion(CamelModel):
    type: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class SessionPlan(CamelModel):
    summary: SessionSummary
    story_blocks: List[StoryBlock] = Field(default_factory=list)
    suggestions: List[Suggestion] = Field(default_factory=list)


class StoryMappingEntry(CamelModel):
    possible_title: str
    original_title: str


class CreateSessionRequest(CamelModel):
    stories: List[Story] = Field(..., min_length=1)
    start_time: str
    story_mapping: Optional[List[StoryMappingEntry]] = None

    @field_validator("start_time")
    @classmethod
    def _check_start_time(cls, value: str) -> str:
        try:
            parse_iso_datetime(value)
        except ValueError as exc:
            raise ValueError("Invalid date format for startTime") from exc
        return value


class ValidateSessionRequest(CreateSessionRequest):
    raw_response: str = Field(..., min_length=1, description="Raw generator output to validate.")


class SessionResponse(SessionPlan):
    stories: List[Story] = Field(default_factory=list, description="Stories with realized estimatedDuration.")


class SessionErrorResponse(BaseModel):
    error: str
    code: str
    details: Any = None


def parse_iso_datetime(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    return datetime.fromisoformat(text)
