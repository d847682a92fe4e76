# Quiz config defaults, normalization, and layered preference resolution.
import json
import logging
from typing import Any, Callable, Dict, Iterable, MutableMapping, Optional

from pydantic import ValidationError

from studyquiz.schemas import QuizConfig, first_issue_message

logger = logging.getLogger("studyquiz.quiz_config")

DEFAULT_QUIZ_CONFIG: Dict[str, Any] = {
    "question_type": "mcq",
    "question_count": 8,
    "coverage": "key_concepts",
    "difficulty": "medium",
}

STANDALONE_KEY = "quiz_config_standalone"
GLOBAL_DEFAULT_KEY = "quiz_config_default"


class QuizConfigError(ValueError):
    pass


def default_quiz_config() -> QuizConfig:
    return QuizConfig(**DEFAULT_QUIZ_CONFIG)


# Fill unset fields from defaults and enforce the hybrid-sum rule.
def normalize_quiz_config(partial: Optional[Dict[str, Any]]) -> QuizConfig:
    if not partial:
        return default_quiz_config()
    if not isinstance(partial, dict):
        raise QuizConfigError("Invalid quiz config: expected an object")

    merged = dict(DEFAULT_QUIZ_CONFIG)
    for key, value in partial.items():
        if value is not None:
            merged[key] = value
    if merged.get("question_type") != "hybrid":
        merged.pop("question_counts", None)

    try:
        return QuizConfig.model_validate(merged)
    except ValidationError as exc:
        raise QuizConfigError(
            f"Invalid quiz config: {first_issue_message(exc) or 'validation failed'}"
        ) from exc


def class_config_key(class_id: Optional[str]) -> str:
    if class_id:
        return f"quiz_config_class_{class_id}"
    return STANDALONE_KEY


# Return the first source that yields a usable config, else the hardcoded default.
def resolve_quiz_config(
    sources: Iterable[Callable[[], Optional[Dict[str, Any]]]],
) -> QuizConfig:
    for source in sources:
        try:
            candidate = source()
        except (ValueError, TypeError):
            logger.warning("Skipping unreadable quiz config source", exc_info=True)
            continue
        if not isinstance(candidate, dict) or not candidate.get("question_type"):
            continue
        try:
            return normalize_quiz_config(candidate)
        except QuizConfigError:
            logger.warning("Skipping invalid stored quiz config")
    return default_quiz_config()


class ConfigPreferences:
    """Saved quiz configs keyed per class, standalone, and global default.

    ``storage`` is any string-to-string mapping (a dict, a shelve, a
    browser-style key/value store); values are JSON documents.
    """

    def __init__(self, storage: MutableMapping[str, str]):
        self.storage = storage

    def _reader(self, key: str) -> Callable[[], Optional[Dict[str, Any]]]:
        def read() -> Optional[Dict[str, Any]]:
            raw = self.storage.get(key)
            if not raw:
                return None
            return json.loads(raw)

        return read

    def load(self, class_id: Optional[str] = None) -> QuizConfig:
        keys = [class_config_key(class_id), STANDALONE_KEY, GLOBAL_DEFAULT_KEY]
        # class_config_key(None) is the standalone key; avoid reading it twice.
        ordered = list(dict.fromkeys(keys))
        return resolve_quiz_config(self._reader(key) for key in ordered)

    def save(self, config: QuizConfig, class_id: Optional[str] = None) -> None:
        document = config.model_dump_json(exclude_none=True)
        self.storage[class_config_key(class_id)] = document
        self.storage[GLOBAL_DEFAULT_KEY] = document
