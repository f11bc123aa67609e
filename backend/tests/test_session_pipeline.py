from __future__ import annotations

import json

from app.api.schemas.session import Story, Task
from app.services.session_errors import MISSING_TASKS, STRUCTURE_ERROR, UNKNOWN_STORY
from app.services.session_pipeline import check_duration_ceiling, run_session_pipeline

START = "2024-05-01T08:00:00Z"


def _stories() -> list[Story]:
    return [
        Story(
            title="Research API integration options",
            estimated_duration=60,
            tasks=[Task(id="research", title="Research API integration options", duration=60)],
        ),
        Story(title="Inbox zero", estimated_duration=20, tasks=[Task(id="inbox", title="Email triage", duration=20)]),
    ]


def test_loose_generator_output_is_repaired_end_to_end() -> None:
    raw = json.dumps(
        {
            "storyBlocks": [
                {
                    "title": "Research API integration options (Part 1 of 2)",
                    "timeBoxes": [
                        {"type": "work", "duration": "60", "tasks": [{"title": "Research API integration options (Part 1 of 2)"}]},
                    ],
                    "totalDuration": 999,
                },
                {"type": "break", "startTime": "09:00", "duration": 5, "tasks": []},
                None,
                {
                    "title": "Inbox zero",
                    "timeBoxes": [{"type": "work", "duration": 20, "tasks": [{"title": "email triage", "duration": 20}]}],
                },
            ]
        }
    )

    result = run_session_pipeline(raw, _stories(), START)

    assert result.ok, result.error
    session = result.value.session
    assert [block.title for block in session.story_blocks] == [
        "Research API integration options (Part 1 of 2)",
        "Break",
        "Inbox zero",
    ]
    assert [block.total_duration for block in session.story_blocks] == [60, 5, 20]
    assert session.summary.start_time == "08:00"
    assert session.summary.total_duration == 85
    assert session.summary.end_time == "09:25"
    assert set(result.value.coverage) == {"research", "inbox"}
    assert any("position 3" in warning for warning in result.warnings)


def test_unknown_story_fails_the_pass() -> None:
    raw = json.dumps({"storyBlocks": [{"title": "Gardening", "timeBoxes": []}]})

    result = run_session_pipeline(raw, _stories(), START)

    assert result.error.code == UNKNOWN_STORY


def test_missing_story_blocks_is_a_structure_error() -> None:
    result = run_session_pipeline('{"summary": {"totalDuration": 10}}', _stories(), START)

    assert result.error.code == STRUCTURE_ERROR


def test_dropped_story_is_missing_tasks() -> None:
    raw = json.dumps(
        {"storyBlocks": [{"title": "Inbox zero", "timeBoxes": [{"type": "work", "duration": 20, "tasks": ["Email triage"]}]}]}
    )

    result = run_session_pipeline(raw, _stories(), START)

    assert result.error.code == MISSING_TASKS
    assert result.error.details["missingTasks"] == ["Research API integration options"]


def test_duration_ceiling() -> None:
    assert check_duration_ceiling(_stories()).value == 80
    too_long = [Story(title="Marathon", estimated_duration=1441)]
    assert check_duration_ceiling(too_long).error.status_code == 400
