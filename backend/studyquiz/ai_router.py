# Model router: one default call per request, at most one fallback substitution, never raises.
import json
import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

import openai
from openai import AsyncOpenAI

from studyquiz.config import Settings
from studyquiz.logging_config import log_fields
from studyquiz.schemas import QuizConfig

logger = logging.getLogger("studyquiz.ai_router")

ROUTER_TASKS = ("quiz_generation", "grade_mcq", "grade_short", "grade_long")

# Failures worth re-issuing the same prompt for.
TRANSIENT_ERROR_CODES = frozenset({"MODEL_EMPTY_RESPONSE", "MODEL_NON_JSON"})

TOKENS_PER_QUESTION = 150
GENERATION_TOKEN_OVERHEAD = 500
GENERATION_TOKEN_CAP = 4000
GRADING_TOKEN_LIMIT = 2000
DEFAULT_QUESTION_COUNT = 8


@dataclass
class RouterMetrics:
    request_id: str
    model_used: str
    model_family: str
    fallback_triggered: bool
    model_decision_reason: str
    attempt_count: int
    latency_ms: int
    tokens_prompt: Optional[int] = None
    tokens_completion: Optional[int] = None
    tokens_total: Optional[int] = None
    parent_request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RouterError:
    code: str
    message: str
    recoverable: bool
    provider_status: Optional[int] = None
    provider_message: Optional[str] = None

    @property
    def transient(self) -> bool:
        return self.code in TRANSIENT_ERROR_CODES


@dataclass
class RouterResult:
    metrics: RouterMetrics
    content: Optional[str] = None
    error: Optional[RouterError] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.content is not None


@dataclass
class TaskModels:
    default_model: str
    fallback_model: str


@dataclass
class ErrorClassification:
    transient: bool
    reason: str
    code: str


class ModelCallError(Exception):
    """Provider answered, but not with usable structured content."""

    def __init__(self, code: str, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.metadata = metadata or {}


# Typing-heavy quizzes route to the typing model pair.
def quiz_kind(config: Optional[QuizConfig]) -> str:
    if config is not None and config.is_typing_heavy:
        return "typing"
    return "mcq"


def get_task_models(
    task: str, settings: Settings, config: Optional[QuizConfig] = None
) -> TaskModels:
    if task == "quiz_generation":
        if quiz_kind(config) == "typing":
            return TaskModels(
                settings.generate_typing_default_model, settings.generate_typing_fallback_model
            )
        return TaskModels(settings.generate_default_model, settings.generate_fallback_model)
    if task == "grade_mcq":
        return TaskModels(settings.grade_default_mcq_model, settings.grade_fallback_mcq_model)
    if task == "grade_short":
        return TaskModels(settings.grade_default_short_model, settings.grade_fallback_short_model)
    if task == "grade_long":
        return TaskModels(settings.grade_default_long_model, settings.grade_fallback_long_model)
    raise ValueError(f"Unknown router task: {task}")


def detect_model_family(model: str) -> str:
    """Classify a model id as ``reasoning`` or ``standard`` by name pattern."""
    name = model.lower()
    if (
        name.startswith("gpt-5")
        or name.startswith("o1")
        or name.startswith("o3")
        or "reasoning" in name
    ):
        return "reasoning"
    return "standard"


# Reasoning models take max_completion_tokens and reject custom temperature.
def build_openai_params(
    family: str, token_limit: int, temperature: Optional[float] = None
) -> Dict[str, Any]:
    if family == "reasoning":
        return {"max_completion_tokens": token_limit}
    params: Dict[str, Any] = {"max_tokens": token_limit}
    if temperature is not None:
        params["temperature"] = temperature
    return params


def build_parameters(
    model: str, family: str, task: str, prompt: str, context: Dict[str, Any]
) -> Dict[str, Any]:
    if task == "quiz_generation":
        count = context.get("question_count") or DEFAULT_QUESTION_COUNT
        token_limit = min(
            count * TOKENS_PER_QUESTION + GENERATION_TOKEN_OVERHEAD, GENERATION_TOKEN_CAP
        )
        temperature = 0.7
    else:
        token_limit = GRADING_TOKEN_LIMIT
        temperature = 0.1

    params: Dict[str, Any] = {
        "model": model,
        "messages": [{"role": "user", "content": prompt}],
        "response_format": {"type": "json_object"},
    }
    params.update(build_openai_params(family, token_limit, temperature))
    return params


def classify_error(exc: BaseException) -> ErrorClassification:
    if isinstance(exc, ModelCallError):
        return ErrorClassification(
            exc.code in TRANSIENT_ERROR_CODES, "parse_error", exc.code
        )
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ErrorClassification(False, "auth_error", "AUTH_ERROR")
    if isinstance(exc, openai.RateLimitError):
        return ErrorClassification(False, "rate_limit", "RATE_LIMIT")
    if isinstance(exc, openai.APIConnectionError):
        return ErrorClassification(False, "network_error", "NETWORK_ERROR")
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return ErrorClassification(False, "server_error", "SERVER_ERROR")
        if exc.status_code in (400, 404) and "model" in str(exc).lower():
            return ErrorClassification(False, "model_not_found", "MODEL_ERROR")
        if exc.status_code == 400:
            return ErrorClassification(False, "bad_request", "BAD_REQUEST")
    return ErrorClassification(False, "unknown_error", "UNKNOWN_ERROR")


def classify_content(raw: Optional[str]) -> str:
    if not raw or not raw.strip():
        return "empty"
    trimmed = raw.strip()
    if trimmed.startswith("{"):
        return "json_like"
    if trimmed.startswith("```"):
        return "markdown_fence"
    if re.match(r"^(I can't|I cannot|Sorry|As an AI)", trimmed, re.IGNORECASE):
        return "refusal"
    return "prose"


def _parses(candidate: str) -> bool:
    try:
        json.loads(candidate)
    except ValueError:
        return False
    return True


def extract_json(raw: str) -> Optional[str]:
    """Pull a JSON document out of fenced or prose-wrapped model output."""
    fence = re.search(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", raw)
    if fence:
        candidate = fence.group(1).strip()
        if _parses(candidate):
            return candidate

    starts = [idx for idx in (raw.find("{"), raw.find("[")) if idx != -1]
    if not starts:
        return None
    start = min(starts)
    open_char = raw[start]
    close_char = "}" if open_char == "{" else "]"

    depth = 0
    for idx in range(start, len(raw)):
        char = raw[idx]
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
        if depth == 0:
            candidate = raw[start : idx + 1]
            return candidate if _parses(candidate) else None
    return None


def _provider_status(exc: BaseException) -> Optional[int]:
    return getattr(exc, "status_code", None)


class ModelRouter:
    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.settings.openai_api_key)
        return self._client

    async def _execute_call(
        self, params: Dict[str, Any], request_id: str
    ) -> Tuple[str, Dict[str, Optional[int]]]:
        completion = await self.client.chat.completions.create(**params)

        choices = getattr(completion, "choices", None) or []
        choice = choices[0] if choices else None
        raw = choice.message.content if choice is not None else None
        finish_reason = getattr(choice, "finish_reason", None)
        usage = getattr(completion, "usage", None)
        tokens = {
            "prompt": getattr(usage, "prompt_tokens", None),
            "completion": getattr(usage, "completion_tokens", None),
            "total": getattr(usage, "total_tokens", None),
        }

        if not raw or not raw.strip():
            logger.error(
                "Model returned empty content",
                extra=log_fields(
                    request_id=request_id,
                    error="MODEL_EMPTY_RESPONSE",
                    model=params["model"],
                    finish_reason=finish_reason,
                ),
            )
            raise ModelCallError(
                "MODEL_EMPTY_RESPONSE",
                "AI returned empty response",
                {"model": params["model"], "finish_reason": finish_reason},
            )

        if _parses(raw):
            return raw, tokens

        extracted = extract_json(raw)
        pattern = classify_content(raw)
        if extracted is not None:
            logger.info(
                "Extracted valid JSON from wrapped content",
                extra=log_fields(
                    request_id=request_id,
                    event="JSON_REPAIR_SUCCEEDED",
                    model=params["model"],
                    original_pattern=pattern,
                    original_length=len(raw),
                    extracted_length=len(extracted),
                ),
            )
            return extracted, tokens

        truncation_likely = finish_reason == "length" or (
            pattern == "json_like" and not re.search(r"[}\]]$", raw.strip())
        )
        logger.error(
            "Model returned non-JSON content after repair attempt",
            extra=log_fields(
                request_id=request_id,
                error="MODEL_NON_JSON",
                model=params["model"],
                finish_reason=finish_reason,
                raw_length=len(raw),
                raw_preview=raw[:300],
                content_pattern=pattern,
                truncation_likely=truncation_likely,
            ),
        )
        raise ModelCallError(
            "MODEL_NON_JSON",
            "AI returned invalid response format",
            {"model": params["model"], "pattern": pattern, "truncation_likely": truncation_likely},
        )

    async def _attempt(
        self, model: str, task: str, prompt: str, context: Dict[str, Any], request_id: str
    ) -> Tuple[Optional[str], Dict[str, Optional[int]], int, Optional[BaseException]]:
        family = detect_model_family(model)
        params = build_parameters(model, family, task, prompt, context)
        started = time.perf_counter()
        try:
            content, tokens = await self._execute_call(params, request_id)
        except Exception as exc:  # classified below; the router reports, never raises
            latency_ms = int((time.perf_counter() - started) * 1000)
            return None, {}, latency_ms, exc
        latency_ms = int((time.perf_counter() - started) * 1000)
        return content, tokens, latency_ms, None

    async def route(
        self, task: str, prompt: str, context: Optional[Dict[str, Any]] = None
    ) -> RouterResult:
        context = dict(context or {})
        config: Optional[QuizConfig] = context.get("config")
        models = get_task_models(task, self.settings, config)
        request_id = context.get("request_id") or str(uuid.uuid4())
        reason_prefix = quiz_kind(config) if task == "quiz_generation" else "grading"
        decision_reason = f"{reason_prefix}_default"

        attempts: List[str] = [models.default_model]
        attempt_count = 0
        fallback_triggered = False
        total_latency = 0

        while True:
            model = attempts[-1]
            family = detect_model_family(model)
            attempt_count += 1
            content, tokens, latency_ms, exc = await self._attempt(
                model, task, prompt, context, request_id
            )
            total_latency += latency_ms

            if exc is None:
                return RouterResult(
                    metrics=RouterMetrics(
                        request_id=request_id,
                        model_used=model,
                        model_family=family,
                        fallback_triggered=fallback_triggered,
                        model_decision_reason=decision_reason,
                        attempt_count=attempt_count,
                        latency_ms=total_latency,
                        tokens_prompt=tokens.get("prompt"),
                        tokens_completion=tokens.get("completion"),
                        tokens_total=tokens.get("total"),
                    ),
                    content=content,
                )

            classification = classify_error(exc)
            logger.warning(
                "Router attempt failed",
                extra=log_fields(
                    request_id=request_id,
                    event="ROUTER_FALLBACK_ATTEMPT_FAILED"
                    if fallback_triggered
                    else "ROUTER_PRIMARY_ATTEMPT_FAILED",
                    task=task,
                    model=model,
                    family=family,
                    error_code=classification.code,
                    error_reason=classification.reason,
                    transient=classification.transient,
                    provider_status=_provider_status(exc),
                    latency_ms=latency_ms,
                ),
            )

            can_fall_back = (
                classification.transient
                and self.settings.fallback_enabled
                and not fallback_triggered
            )
            if not can_fall_back:
                return RouterResult(
                    metrics=RouterMetrics(
                        request_id=request_id,
                        model_used=model,
                        model_family=family,
                        fallback_triggered=fallback_triggered,
                        model_decision_reason=decision_reason,
                        attempt_count=attempt_count,
                        latency_ms=total_latency,
                    ),
                    error=RouterError(
                        code=classification.code,
                        message=str(exc) or "Request failed",
                        recoverable=classification.transient and not fallback_triggered,
                        provider_status=_provider_status(exc),
                        provider_message=str(exc) or None,
                    ),
                )

            fallback_triggered = True
            decision_reason = f"{reason_prefix}_fallback_{classification.reason}"
            attempts.append(models.fallback_model)
            logger.warning(
                "Falling back to secondary model",
                extra=log_fields(
                    request_id=request_id,
                    event="MODEL_FALLBACK",
                    task=task,
                    from_model=model,
                    to_model=models.fallback_model,
                    reason=classification.reason,
                ),
            )
