from __future__ import annotations

import json
from typing import List, Optional

import pytest

from app.api.schemas.session import Story, StoryMappingEntry, Task
from app.services import retry_orchestrator
from app.services.duration_rules import DURATION_RULES
from app.services.retry_orchestrator import (
    ATTEMPT_FAILED,
    ATTEMPT_STARTED,
    ATTEMPT_SUCCEEDED,
    AttemptEvent,
    SessionRetryOrchestrator,
    build_story_mapping,
    mutate_for_constraint_failure,
    split_oversized_tasks,
    split_task,
)
from app.services.session_errors import (
    API_ERROR,
    DURATION_EXCEEDED,
    EXCESSIVE_WORK_TIME,
    GENERATOR_OVERLOADED,
    JSON_PARSE_ERROR,
    MISSING_TASKS,
    SessionError,
    StageResult,
)
from app.services.session_generator import SessionGeneratorError

START = "2024-05-01T09:00:00Z"


def _stories() -> List[Story]:
    return [
        Story(
            title="Write docs",
            estimated_duration=30,
            tasks=[Task(id="outline", title="Draft outline", duration=30)],
        )
    ]


def _valid_response(task_title: str = "Draft outline") -> str:
    return json.dumps(
        {
            "summary": {"totalSessions": 1, "startTime": "09:00", "endTime": "09:35", "totalDuration": 35},
            "storyBlocks": [
                {
                    "title": "Write docs",
                    "timeBoxes": [
                        {"type": "work", "startTime": "09:00", "duration": 30, "tasks": [{"title": task_title, "duration": 30}]},
                        {"type": "debrief", "startTime": "09:30", "duration": 5, "tasks": []},
                    ],
                    "totalDuration": 35,
                }
            ],
        }
    )


class _ScriptedGenerator:
    def __init__(self, responses: List[object]):
        self.responses = list(responses)
        self.calls: List[List[Story]] = []
        self.mappings: List[Optional[List[StoryMappingEntry]]] = []

    def generate(self, stories, start_time, story_mapping=None) -> str:
        self.calls.append(list(stories))
        self.mappings.append(list(story_mapping or []))
        response = self.responses[min(len(self.calls), len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


def _orchestrator(generator, *, max_retries: int = 4, events: Optional[List[AttemptEvent]] = None, sleeps=None):
    return SessionRetryOrchestrator(
        generator,
        max_retries=max_retries,
        parse_backoff_seconds=2.0,
        constraint_backoff_seconds=1.0,
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
        on_progress=(events.append if events is not None else None),
    )


def test_always_unparsable_output_stops_after_max_retries() -> None:
    generator = _ScriptedGenerator(["Sorry, I can't help with that."])
    sleeps: List[float] = []
    events: List[AttemptEvent] = []

    result = _orchestrator(generator, max_retries=4, events=events, sleeps=sleeps).run(_stories(), START)

    assert len(generator.calls) == 4
    assert result.error.code == JSON_PARSE_ERROR
    assert sleeps == [2.0, 2.0, 2.0]
    assert [event.status for event in events] == [ATTEMPT_STARTED, ATTEMPT_FAILED] * 4
    assert events[-1].next_backoff is None
    assert events[-1].attempt == 4


def test_recovers_after_a_parse_failure() -> None:
    generator = _ScriptedGenerator(["{not json", _valid_response()])
    sleeps: List[float] = []
    events: List[AttemptEvent] = []

    result = _orchestrator(generator, events=events, sleeps=sleeps).run(_stories(), START)

    assert result.ok
    assert len(generator.calls) == 2
    assert sleeps == [2.0]
    assert events[-1] == AttemptEvent(attempt=2, max_attempts=4, status=ATTEMPT_SUCCEEDED)
    assert result.value.session.summary.total_duration == 35


def test_non_retryable_failure_is_surfaced_immediately() -> None:
    stories = _stories()
    stories[0] = stories[0].model_copy(
        update={"tasks": stories[0].tasks + [Task(id="review", title="Peer review pass", duration=20)]}
    )
    generator = _ScriptedGenerator([_valid_response()])
    sleeps: List[float] = []

    result = _orchestrator(generator, sleeps=sleeps).run(stories, START)

    assert result.error.code == MISSING_TASKS
    assert result.error.details["missingTasks"] == ["Peer review pass"]
    assert len(generator.calls) == 1
    assert sleeps == []


def test_overloaded_generator_is_retried_but_api_errors_are_not() -> None:
    overloaded = _ScriptedGenerator([SessionGeneratorError(GENERATOR_OVERLOADED, "busy"), _valid_response()])
    sleeps: List[float] = []

    assert _orchestrator(overloaded, sleeps=sleeps).run(_stories(), START).ok
    assert sleeps == [2.0]

    broken = _ScriptedGenerator([SessionGeneratorError(API_ERROR, "bad key")])
    result = _orchestrator(broken).run(_stories(), START)

    assert result.error.code == API_ERROR
    assert len(broken.calls) == 1


def test_duration_ceiling_rejects_before_generating() -> None:
    generator = _ScriptedGenerator([_valid_response()])
    stories = [Story(title=f"Story {index}", estimated_duration=500) for index in range(3)]

    result = _orchestrator(generator).run(stories, START)

    assert result.error.code == DURATION_EXCEEDED
    assert result.error.details == {"totalDuration": 1500, "maxDuration": 1440}
    assert generator.calls == []


def test_constraint_failure_mutates_the_offending_story(monkeypatch) -> None:
    real_pipeline = retry_orchestrator.run_session_pipeline
    outcomes = [
        StageResult.failure(EXCESSIVE_WORK_TIME, "too long", {"block": "Write docs"}),
    ]

    def fake_pipeline(raw, stories, start_time, mapping, rules):
        if outcomes:
            return outcomes.pop(0)
        return real_pipeline(raw, stories, start_time, mapping, rules)

    monkeypatch.setattr(retry_orchestrator, "run_session_pipeline", fake_pipeline)
    stories = [
        Story(
            title="Write docs",
            estimated_duration=100,
            tasks=[Task(id="manual", title="Write user manual", duration=100)],
        )
    ]
    generator = _ScriptedGenerator(["ignored"])
    sleeps: List[float] = []

    _orchestrator(generator, sleeps=sleeps).run(stories, START)

    first, second = generator.calls[0][0], generator.calls[1][0]
    assert [task.duration for task in first.tasks] == [35, 35, 30]
    assert [task.duration for task in second.tasks] == [25, 25, 25, 25]
    assert second.needs_breaks is True
    assert all(brk.duration == 15 for task in second.tasks for brk in task.suggested_breaks)
    assert sleeps[0] == 1.0


def test_preemptive_split_and_mapping_table() -> None:
    stories = [
        Story(
            title="Research",
            estimated_duration=100,
            tasks=[
                Task(id="api", title="Research API integration options", duration=100),
                Task(id="notes", title="Tidy notes", duration=20),
            ],
        )
    ]

    split = split_oversized_tasks(stories, DURATION_RULES)
    parts = split[0].tasks

    assert [task.title for task in parts] == [
        "Research API integration options (Part 1 of 3)",
        "Research API integration options (Part 2 of 3)",
        "Research API integration options (Part 3 of 3)",
        "Tidy notes",
    ]
    assert parts[0].id == "api-part-1"
    assert parts[1].split_info.parent_task_id == "api"
    assert [brk.duration for brk in parts[0].suggested_breaks] == [5]
    assert parts[2].suggested_breaks == []
    assert sum(task.duration for task in parts[:3]) == 100

    mapping = build_story_mapping(split, [StoryMappingEntry(possible_title="API research", original_title="Research")])
    pairs = [(entry.possible_title, entry.original_title) for entry in mapping]

    assert pairs[0] == ("API research", "Research")
    assert ("Research API integration options", "Research API integration options (Part 1 of 3)") in pairs
    assert ("Tidy notes", "Tidy notes") in pairs


def test_split_task_uses_long_breaks_once_focus_limit_is_reached() -> None:
    parts = split_task(Task(id="x", title="Marathon", duration=180), 45, DURATION_RULES)

    assert [part.duration for part in parts] == [45, 45, 45, 45]
    assert [brk.duration for part in parts for brk in part.suggested_breaks] == [5, 15, 5]


def test_mutation_target_never_drops_below_two_minimum_sessions() -> None:
    stories = split_oversized_tasks(
        [Story(title="Write docs", tasks=[Task(id="m", title="Write user manual", duration=120)])],
        DURATION_RULES,
    )
    error = SessionError(code=EXCESSIVE_WORK_TIME, message="too long", details={"block": "Write docs"})
    targets: dict = {}

    once = mutate_for_constraint_failure(stories, error, targets, DURATION_RULES)
    twice = mutate_for_constraint_failure(once, error, targets, DURATION_RULES)

    assert targets == {0: 30}
    assert [task.duration for task in twice[0].tasks] == [30, 30, 30, 30]
    assert twice[0].tasks[0].id == "m-part-1"


@pytest.mark.parametrize("max_retries", [1, 3])
def test_unknown_story_retries_without_mutation(max_retries: int) -> None:
    bad_title = _valid_response().replace('"title": "Write docs"', '"title": "Gardening"')
    generator = _ScriptedGenerator([bad_title])
    sleeps: List[float] = []

    result = _orchestrator(generator, max_retries=max_retries, sleeps=sleeps).run(_stories(), START)

    assert result.error.code == "UNKNOWN_STORY"
    assert len(generator.calls) == max_retries
    assert sleeps == [1.0] * (max_retries - 1)
    assert all(call[0].tasks == _stories()[0].tasks for call in generator.calls)
