from __future__ import annotations

from types import SimpleNamespace

import httpx
import openai
import pytest

from app.api.schemas.session import Story, StoryMappingEntry, Task
from app.services.session_errors import API_ERROR, GENERATOR_OVERLOADED
from app.services.session_generator import OpenAISessionGenerator, SessionGeneratorError, build_session_prompt

STORIES = [Story(title="Write docs", estimated_duration=30, tasks=[Task(id="t1", title="Draft outline", duration=30)])]


class _FakeCompletions:
    def __init__(self, outcome):
        self.outcome = outcome
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        if isinstance(self.outcome, Exception):
            raise self.outcome
        message = SimpleNamespace(content=self.outcome)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_client(outcome) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=_FakeCompletions(outcome)))


def _status_error(status: int) -> openai.APIStatusError:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(status, request=request)
    return openai.APIStatusError("upstream said no", response=response, body=None)


def test_prompt_embeds_rules_stories_and_hints() -> None:
    mapping = [StoryMappingEntry(possible_title="Docs", original_title="Write docs")]

    system_prompt, user_prompt = build_session_prompt(STORIES, "2024-05-01T09:30:00Z", mapping)

    assert "single JSON object" in system_prompt
    assert "starting at 09:30" in user_prompt
    assert "Never schedule more than 90 minutes of work" in user_prompt
    assert '"Docs" refers to "Write docs"' in user_prompt
    assert '"title": "Draft outline"' in user_prompt


def test_generate_returns_message_content() -> None:
    client = _fake_client('{"storyBlocks": []}')
    generator = OpenAISessionGenerator(api_key="sk-test", model="gpt-4o-mini", client=client)

    assert generator.generate(STORIES, "2024-05-01T09:00:00Z") == '{"storyBlocks": []}'
    sent = client.chat.completions.kwargs
    assert sent["model"] == "gpt-4o-mini"
    assert sent["response_format"] == {"type": "json_object"}
    assert [message["role"] for message in sent["messages"]] == ["system", "user"]


@pytest.mark.parametrize(("status", "code"), [(529, GENERATOR_OVERLOADED), (429, GENERATOR_OVERLOADED), (401, API_ERROR)])
def test_status_errors_are_classified(status: int, code: str) -> None:
    generator = OpenAISessionGenerator(api_key="sk-test", client=_fake_client(_status_error(status)))

    with pytest.raises(SessionGeneratorError) as excinfo:
        generator.generate(STORIES, "2024-05-01T09:00:00Z")

    assert excinfo.value.error.code == code
    assert excinfo.value.error.details == {"status": status}


def test_missing_api_key_is_an_api_error() -> None:
    generator = OpenAISessionGenerator(api_key="")

    with pytest.raises(SessionGeneratorError) as excinfo:
        generator.generate(STORIES, "2024-05-01T09:00:00Z")

    assert excinfo.value.error.code == API_ERROR
    assert not excinfo.value.error.retryable
