# Model router tests against a fake OpenAI client.
import asyncio
from dataclasses import replace
from types import SimpleNamespace

import httpx
import openai
import pytest

from studyquiz.ai_router import (
    ModelRouter,
    build_parameters,
    classify_content,
    detect_model_family,
    extract_json,
)
from studyquiz.quiz_config import normalize_quiz_config

VALID_JSON = '{"questions": []}'
OPENAI_URL = "https://api.openai.com/v1/chat/completions"


def make_completion(content, finish_reason="stop"):
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content=content), finish_reason=finish_reason
            )
        ],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=20, total_tokens=30),
    )


class FakeCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def create(self, **params):
        self.calls.append(params)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_router(settings, *outcomes):
    completions = FakeCompletions(outcomes)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return ModelRouter(settings, client=client), completions


def rate_limit_error():
    response = httpx.Response(429, request=httpx.Request("POST", OPENAI_URL))
    return openai.RateLimitError("Rate limit reached", response=response, body=None)


@pytest.mark.parametrize(
    "model,family",
    [
        ("gpt-5-mini", "reasoning"),
        ("o1-preview", "reasoning"),
        ("o3-mini", "reasoning"),
        ("my-reasoning-model", "reasoning"),
        ("gpt-4o-mini", "standard"),
        ("gpt-4.1", "standard"),
    ],
)
def test_detect_model_family(model, family):
    assert detect_model_family(model) == family


# Standard models take max_tokens and temperature; reasoning models take neither temperature nor max_tokens.
def test_build_parameters_by_family():
    standard = build_parameters("gpt-4o-mini", "standard", "quiz_generation", "p", {"question_count": 8})
    assert standard["max_tokens"] == 8 * 150 + 500
    assert standard["temperature"] == 0.7
    assert standard["response_format"] == {"type": "json_object"}

    reasoning = build_parameters("gpt-5-mini", "reasoning", "quiz_generation", "p", {"question_count": 30})
    assert reasoning["max_completion_tokens"] == 4000
    assert "temperature" not in reasoning
    assert "max_tokens" not in reasoning

    grading = build_parameters("gpt-4o-mini", "standard", "grade_short", "p", {})
    assert grading["max_tokens"] == 2000
    assert grading["temperature"] == 0.1


def test_route_success_uses_default_model(settings):
    router, completions = make_router(settings, make_completion(VALID_JSON))

    result = asyncio.run(
        router.route("quiz_generation", "prompt", {"request_id": "req-1", "question_count": 5})
    )

    assert result.success
    assert result.content == VALID_JSON
    assert len(completions.calls) == 1
    assert completions.calls[0]["model"] == "gpt-4o-mini"
    metrics = result.metrics
    assert metrics.request_id == "req-1"
    assert metrics.model_family == "standard"
    assert metrics.fallback_triggered is False
    assert metrics.model_decision_reason == "mcq_default"
    assert metrics.attempt_count == 1
    assert metrics.tokens_total == 30


# An empty body from the default model swaps once to the fallback, keeping the request id.
def test_route_falls_back_on_empty_response(settings):
    router, completions = make_router(
        settings, make_completion(""), make_completion(VALID_JSON)
    )

    result = asyncio.run(router.route("quiz_generation", "prompt", {"request_id": "req-2"}))

    assert result.success
    assert [call["model"] for call in completions.calls] == ["gpt-4o-mini", "gpt-5-mini"]
    assert "temperature" not in completions.calls[1]
    metrics = result.metrics
    assert metrics.request_id == "req-2"
    assert metrics.fallback_triggered is True
    assert metrics.model_used == "gpt-5-mini"
    assert metrics.model_family == "reasoning"
    assert metrics.attempt_count == 2
    assert metrics.model_decision_reason == "mcq_fallback_parse_error"


def test_route_reports_transient_error_after_fallback_fails(settings):
    router, completions = make_router(
        settings, make_completion(None), make_completion("Here is your quiz, enjoy!")
    )

    result = asyncio.run(router.route("quiz_generation", "prompt", {"request_id": "req-3"}))

    assert not result.success
    assert result.error.code == "MODEL_NON_JSON"
    assert result.error.transient is True
    assert result.metrics.attempt_count == 2
    assert result.metrics.fallback_triggered is True
    assert len(completions.calls) == 2


def test_route_without_fallback_returns_first_failure(settings):
    router, completions = make_router(
        replace(settings, fallback_enabled=False), make_completion("   ")
    )

    result = asyncio.run(router.route("quiz_generation", "prompt"))

    assert result.error.code == "MODEL_EMPTY_RESPONSE"
    assert result.metrics.attempt_count == 1
    assert result.metrics.request_id
    assert len(completions.calls) == 1


# Provider errors outside the transient class never trigger fallback.
def test_route_rate_limit_is_not_retried(settings):
    router, completions = make_router(settings, rate_limit_error())

    result = asyncio.run(router.route("quiz_generation", "prompt", {"request_id": "req-4"}))

    assert result.error.code == "RATE_LIMIT"
    assert result.error.provider_status == 429
    assert result.error.recoverable is False
    assert result.metrics.fallback_triggered is False
    assert len(completions.calls) == 1


def test_route_network_error_is_classified(settings):
    error = openai.APIConnectionError(request=httpx.Request("POST", OPENAI_URL))
    router, completions = make_router(settings, error)

    result = asyncio.run(router.route("grade_short", "prompt"))

    assert result.error.code == "NETWORK_ERROR"
    assert result.metrics.model_decision_reason == "grading_default"
    assert len(completions.calls) == 1


# Fenced model output is repaired instead of failing.
def test_route_repairs_markdown_fenced_json(settings):
    router, _ = make_router(settings, make_completion('```json\n{"questions": [1]}\n```'))

    result = asyncio.run(router.route("quiz_generation", "prompt"))

    assert result.success
    assert result.content == '{"questions": [1]}'


def test_typing_heavy_config_uses_typing_models(settings):
    config = normalize_quiz_config(
        {"question_type": "hybrid", "question_count": 4, "question_counts": {"mcq": 2, "typing": 2}}
    )
    router, completions = make_router(settings, make_completion(VALID_JSON))

    result = asyncio.run(router.route("quiz_generation", "prompt", {"config": config}))

    assert completions.calls[0]["model"] == "gpt-5-mini"
    assert result.metrics.model_decision_reason == "typing_default"


def test_extract_json_pulls_first_balanced_block():
    raw = 'Sure! {"a": {"b": [1, 2]}} hope that helps'
    assert extract_json(raw) == '{"a": {"b": [1, 2]}}'
    assert extract_json("no json here") is None


@pytest.mark.parametrize(
    "raw,pattern",
    [
        ("", "empty"),
        ('{"a": 1', "json_like"),
        ("```json\n{}\n```", "markdown_fence"),
        ("Sorry, I can't help with that", "refusal"),
        ("The answer is below", "prose"),
    ],
)
def test_classify_content(raw, pattern):
    assert classify_content(raw) == pattern
