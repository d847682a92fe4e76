# Pytest fixtures and test database setup.
import asyncio
import json
import os
import tempfile

import pytest

# Point the engine at a throwaway SQLite file before any studyquiz import.
os.environ["DATABASE_URL"] = os.getenv(
    "TEST_DATABASE_URL",
    f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'studyquiz_test.db')}",
)

from fastapi.testclient import TestClient  # noqa: E402

from studyquiz.ai_router import TRANSIENT_ERROR_CODES, RouterError, RouterMetrics, RouterResult  # noqa: E402
from studyquiz.analytics import AnalyticsRecorder, BackgroundTaskRegistry  # noqa: E402
from studyquiz.config import get_settings  # noqa: E402
from studyquiz.database import Base, SessionLocal, engine  # noqa: E402

TUNABLES = (
    "OPENAI_MODEL_GENERATE_DEFAULT",
    "OPENAI_MODEL_GENERATE_FALLBACK",
    "OPENAI_MODEL_GENERATE_TYPING_DEFAULT",
    "OPENAI_MODEL_GENERATE_TYPING_FALLBACK",
    "ROUTER_ENABLE_FALLBACK",
    "ENABLE_MODEL_RETRY",
    "ENABLE_USAGE_LIMITS",
    "FREE_QUIZ_LIMIT",
    "TEST_FREE_QUIZ_LIMIT",
    "APP_MODE",
    "DEMO_INSTANT_GRADE",
)

NOTES = (
    "Photosynthesis converts light energy into chemical energy. Chlorophyll in the "
    "chloroplast absorbs light, and the cell releases oxygen as a byproduct."
)


# Give every test a configured AI layer and default tunables.
@pytest.fixture(autouse=True)
def ai_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    for name in TUNABLES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def settings():
    return get_settings()


# Fresh tables per test, plus a session for seeding and assertions.
@pytest.fixture()
def db_session():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def notes_text():
    return NOTES


@pytest.fixture()
def registry():
    return BackgroundTaskRegistry()


@pytest.fixture()
def recorder():
    return AnalyticsRecorder(SessionLocal)


# Run a pipeline coroutine and let its analytics tasks settle before returning.
@pytest.fixture()
def run_pipeline(registry):
    def _run(coro):
        async def _settle():
            try:
                return await coro
            finally:
                await registry.drain()

        return asyncio.run(_settle())

    return _run


# Build model output with a configurable mix of question types.
@pytest.fixture()
def build_model_output():
    def _build(mcq: int = 2, short: int = 1):
        questions = []
        for idx in range(1, mcq + 1):
            questions.append(
                {
                    "id": f"q{idx}",
                    "type": "mcq",
                    "prompt": f"Which pigment absorbs light in step {idx}?",
                    "options": ["Chlorophyll", "Keratin", "Hemoglobin", "Melanin"],
                    "answer": "Chlorophyll",
                }
            )
        for idx in range(mcq + 1, mcq + short + 1):
            questions.append(
                {
                    "id": f"q{idx}",
                    "type": "short",
                    "prompt": f"What gas is released during photosynthesis ({idx})?",
                    "answer": "Oxygen gas",
                }
            )
        return json.dumps({"questions": questions})

    return _build


class ScriptedRouter:
    """Stands in for ModelRouter, replaying one scripted outcome per call.

    Each step is ``("ok", content)`` or ``("error", code)``.
    """

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = []

    async def route(self, task, prompt, context=None):
        context = dict(context or {})
        self.calls.append({"task": task, "prompt": prompt, "context": context})
        kind, value = self.steps.pop(0)
        metrics = RouterMetrics(
            request_id=context.get("request_id", "req-unset"),
            model_used="gpt-4o-mini",
            model_family="standard",
            fallback_triggered=False,
            model_decision_reason="mcq_default",
            attempt_count=1,
            latency_ms=12,
            tokens_prompt=400,
            tokens_completion=300,
            tokens_total=700,
        )
        if kind == "ok":
            return RouterResult(metrics=metrics, content=value)
        return RouterResult(
            metrics=metrics,
            error=RouterError(
                code=value,
                message=f"{value} from scripted router",
                recoverable=value in TRANSIENT_ERROR_CODES,
                provider_status=429 if value == "RATE_LIMIT" else None,
            ),
        )


@pytest.fixture()
def scripted_router():
    return ScriptedRouter


# FastAPI client over fresh tables.
@pytest.fixture()
def client(db_session):
    from studyquiz.main import app

    with TestClient(app) as test_client:
        yield test_client
