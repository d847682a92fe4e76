# Runtime tunables read from the process environment.
import os
from dataclasses import dataclass
from typing import Optional

from studyquiz.env import load_environment

load_environment()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    openai_api_key: Optional[str]
    generate_default_model: str
    generate_fallback_model: str
    generate_typing_default_model: str
    generate_typing_fallback_model: str
    grade_default_mcq_model: str
    grade_fallback_mcq_model: str
    grade_default_short_model: str
    grade_fallback_short_model: str
    grade_default_long_model: str
    grade_fallback_long_model: str
    fallback_enabled: bool
    retry_enabled: bool
    usage_limits_enabled: bool
    free_quiz_limit: int
    test_quiz_limit: int
    app_mode: str
    demo_instant_grade: bool

    @property
    def is_test_mode(self) -> bool:
        return self.app_mode == "test"


# Snapshot the environment. Called per request so monkeypatched env applies.
def get_settings() -> Settings:
    api_key = (os.getenv("OPENAI_API_KEY") or "").strip() or None
    return Settings(
        openai_api_key=api_key,
        generate_default_model=os.getenv("OPENAI_MODEL_GENERATE_DEFAULT", "gpt-4o-mini"),
        generate_fallback_model=os.getenv("OPENAI_MODEL_GENERATE_FALLBACK", "gpt-5-mini"),
        generate_typing_default_model=os.getenv(
            "OPENAI_MODEL_GENERATE_TYPING_DEFAULT", "gpt-5-mini"
        ),
        generate_typing_fallback_model=os.getenv(
            "OPENAI_MODEL_GENERATE_TYPING_FALLBACK", "gpt-4o-mini"
        ),
        grade_default_mcq_model=os.getenv("OPENAI_MODEL_GRADE_DEFAULT_MCQ", "gpt-4o-mini"),
        grade_fallback_mcq_model=os.getenv("OPENAI_MODEL_GRADE_FALLBACK_MCQ", "gpt-5-mini"),
        grade_default_short_model=os.getenv("OPENAI_MODEL_GRADE_DEFAULT_SHORT", "gpt-4o-mini"),
        grade_fallback_short_model=os.getenv("OPENAI_MODEL_GRADE_FALLBACK_SHORT", "gpt-5-mini"),
        grade_default_long_model=os.getenv("OPENAI_MODEL_GRADE_DEFAULT_LONG", "gpt-5-mini"),
        grade_fallback_long_model=os.getenv("OPENAI_MODEL_GRADE_FALLBACK_LONG", "gpt-4o-mini"),
        fallback_enabled=_flag("ROUTER_ENABLE_FALLBACK", "true"),
        retry_enabled=os.getenv("ENABLE_MODEL_RETRY", "true").strip().lower() != "false",
        usage_limits_enabled=_flag("ENABLE_USAGE_LIMITS", "true"),
        free_quiz_limit=_int("FREE_QUIZ_LIMIT", 5),
        test_quiz_limit=_int("TEST_FREE_QUIZ_LIMIT", 100),
        app_mode=os.getenv("APP_MODE", "production").strip().lower(),
        demo_instant_grade=_flag("DEMO_INSTANT_GRADE", "true"),
    )


# Return a description of what is missing, or None when the AI layer is usable.
def validate_ai_config(settings: Settings) -> Optional[str]:
    if not settings.openai_api_key:
        return "OPENAI_API_KEY is not configured"
    if not settings.generate_default_model.strip():
        return "OPENAI_MODEL_GENERATE_DEFAULT is empty"
    if not settings.generate_fallback_model.strip():
        return "OPENAI_MODEL_GENERATE_FALLBACK is empty"
    if not settings.generate_typing_default_model.strip():
        return "OPENAI_MODEL_GENERATE_TYPING_DEFAULT is empty"
    if not settings.generate_typing_fallback_model.strip():
        return "OPENAI_MODEL_GENERATE_TYPING_FALLBACK is empty"
    return None
