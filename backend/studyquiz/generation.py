# Quiz generation pipeline: validated notes in, persisted quiz out.
import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from studyquiz.ai_router import ModelRouter, RouterMetrics, RouterResult
from studyquiz.analytics import AnalyticsRecorder, BackgroundTaskRegistry, background_tasks
from studyquiz.auto_naming import generate_quiz_metadata
from studyquiz.config import Settings, validate_ai_config
from studyquiz.errors import (
    ErrorDetail,
    QuizPipelineError,
    not_found,
    schema_invalid,
    server_error,
)
from studyquiz.logging_config import log_fields
from studyquiz.prompt_builder import build_quiz_generation_prompt
from studyquiz.quiz_config import QuizConfigError, normalize_quiz_config
from studyquiz.schemas import (
    DebugInfo,
    DebugTimings,
    GenerateQuizInput,
    GenerateQuizOutput,
    QuizConfig,
    QuizResponse,
    first_issue_message,
    issue_details,
)
from studyquiz.store import QuizStore
from studyquiz.usage import enforce_quiz_quota

logger = logging.getLogger("studyquiz.generation")


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


@dataclass
class GenerationResult:
    output: GenerateQuizOutput
    metrics: RouterMetrics
    timings: Dict[str, int] = field(default_factory=dict)


class GenerationOrchestrator:
    def __init__(
        self,
        store: QuizStore,
        router: ModelRouter,
        recorder: AnalyticsRecorder,
        settings: Settings,
        tasks: Optional[BackgroundTaskRegistry] = None,
    ):
        self.store = store
        self.router = router
        self.recorder = recorder
        self.settings = settings
        self.tasks = tasks if tasks is not None else background_tasks

    def _record_failure(
        self,
        user_id: str,
        metrics: RouterMetrics,
        code: str,
        message: str,
        source: Mapping[str, Any],
    ) -> None:
        self.tasks.fire_and_forget(
            self.recorder.record_generation_failure(user_id, metrics, code, message, source),
            "generation_failure_analytics",
            request_id=metrics.request_id,
        )

    async def _route_with_retry(
        self,
        prompt: str,
        config: QuizConfig,
        request_id: str,
        user_id: str,
        source: Mapping[str, Any],
    ) -> RouterResult:
        context = {
            "config": config,
            "question_count": config.question_count,
            "request_id": request_id,
        }
        result = await self.router.route("quiz_generation", prompt, context)

        if not result.success and result.error.transient and self.settings.retry_enabled:
            retry_request_id = str(uuid.uuid4())
            logger.warning(
                "Retrying generation after transient model failure",
                extra=log_fields(
                    request_id=request_id,
                    user_id=user_id,
                    event="MODEL_RETRY",
                    error_code=result.error.code,
                    retry_request_id=retry_request_id,
                ),
            )
            first_metrics = result.metrics
            result = await self.router.route(
                "quiz_generation", prompt, dict(context, request_id=retry_request_id)
            )
            result.metrics.attempt_count += first_metrics.attempt_count
            result.metrics.latency_ms += first_metrics.latency_ms
            result.metrics.parent_request_id = request_id

        if result.success:
            return result

        error = result.error
        if error.transient:
            code = "MODEL_INVALID_OUTPUT"
            status = 502
            message = "AI returned an invalid response. Please try again."
        else:
            code = "OPENAI_ERROR"
            status = 429 if error.code == "RATE_LIMIT" else 500
            message = error.message or "Failed to generate quiz"

        logger.error(
            "Model router failed",
            extra=log_fields(
                request_id=request_id,
                user_id=user_id,
                error_code=error.code,
                provider_status=error.provider_status,
                model_used=result.metrics.model_used,
                attempt_count=result.metrics.attempt_count,
                fallback_triggered=result.metrics.fallback_triggered,
            ),
        )
        self._record_failure(user_id, result.metrics, code, message, source)
        raise QuizPipelineError(code, message, status)

    async def generate_quiz(
        self, data: Any, context: Mapping[str, Any]
    ) -> GenerationResult:
        started = time.perf_counter()
        request_id = context.get("request_id") or str(uuid.uuid4())
        user_id = context["user_id"]

        # 1. request shape
        try:
            payload = GenerateQuizInput.model_validate(data)
        except ValidationError as exc:
            raise schema_invalid(first_issue_message(exc))
        validation_ms = _elapsed_ms(started)

        # 2. provider configuration
        problem = validate_ai_config(self.settings)
        if problem:
            logger.error(
                "AI provider is not configured",
                extra=log_fields(request_id=request_id, problem=problem),
            )
            raise server_error("AI service is not configured")

        # 3. quiz config
        try:
            config = normalize_quiz_config(payload.config)
        except QuizConfigError as exc:
            raise QuizPipelineError("CONFIG_INVALID", str(exc), 400)

        # Store calls use the blocking session, so they run on worker threads.
        # 4. class ownership
        class_id = str(payload.class_id) if payload.class_id else None
        class_name = None
        if class_id:
            try:
                study_class = await asyncio.to_thread(self.store.get_class, class_id, user_id)
            except SQLAlchemyError:
                logger.exception("Class lookup failed", extra=log_fields(request_id=request_id))
                raise server_error("Failed to load class")
            if study_class is None:
                raise not_found("Class not found")
            class_name = study_class.name

        # 5. quota, before any model call
        await asyncio.to_thread(
            enforce_quiz_quota, self.store, self.settings, user_id, request_id
        )

        # 6. prompt
        prompt_started = time.perf_counter()
        prompt = build_quiz_generation_prompt(config, payload.notes_text)
        prompt_build_ms = _elapsed_ms(prompt_started)

        source = {"type": "class" if class_id else "direct", "note_size": len(payload.notes_text)}

        # 7. model call
        model_started = time.perf_counter()
        result = await self._route_with_retry(prompt, config, request_id, user_id, source)
        openai_ms = _elapsed_ms(model_started)
        metrics = result.metrics

        # 8. parse
        try:
            parsed = json.loads(result.content)
        except json.JSONDecodeError:
            logger.error(
                "Model output is not valid JSON",
                extra=log_fields(
                    request_id=metrics.request_id,
                    user_id=user_id,
                    model_used=metrics.model_used,
                    raw_preview=result.content[:300],
                ),
            )
            message = "AI returned an invalid response. Please try again."
            self._record_failure(user_id, metrics, "MODEL_INVALID_OUTPUT", message, source)
            raise QuizPipelineError("MODEL_INVALID_OUTPUT", message, 502)

        # 9. schema
        try:
            quiz = QuizResponse.model_validate(parsed)
        except ValidationError as exc:
            details = [ErrorDetail(**item) for item in issue_details(exc)]
            logger.error(
                "Generated quiz failed validation",
                extra=log_fields(
                    request_id=metrics.request_id,
                    user_id=user_id,
                    model_used=metrics.model_used,
                    issues=[detail.path for detail in details],
                ),
            )
            message = "Generated quiz did not match the expected format"
            self._record_failure(user_id, metrics, "QUIZ_VALIDATION_FAILED", message, source)
            raise QuizPipelineError("QUIZ_VALIDATION_FAILED", message, 500, details)

        questions = [question.model_dump() for question in quiz.questions]
        if len(questions) < config.question_count:
            logger.info(
                "Model returned fewer questions than requested",
                extra=log_fields(
                    request_id=metrics.request_id,
                    requested=config.question_count,
                    actual=len(questions),
                ),
            )

        # 10. naming
        naming = generate_quiz_metadata(payload.notes_text, class_name, len(questions))

        # 11. persist
        config_dump = config.model_dump(exclude_none=True)
        insert_started = time.perf_counter()
        try:
            row = await asyncio.to_thread(
                self.store.insert_quiz,
                user_id=user_id,
                class_id=class_id,
                questions=questions,
                title=naming["title"],
                subject=naming["subject"],
                meta={"config": config_dump},
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to save quiz", extra=log_fields(request_id=metrics.request_id, user_id=user_id)
            )
            raise server_error("Failed to save quiz")
        db_insert_ms = _elapsed_ms(insert_started)

        # 12. success analytics
        self.tasks.fire_and_forget(
            self.recorder.record_generation_success(
                row.id, user_id, metrics, questions, source, config_dump
            ),
            "generation_success_analytics",
            request_id=metrics.request_id,
        )

        total_ms = _elapsed_ms(started)
        timings = {
            "validation_ms": validation_ms,
            "prompt_build_ms": prompt_build_ms,
            "openai_ms": openai_ms,
            "db_insert_ms": db_insert_ms,
            "overhead_ms": max(0, total_ms - validation_ms - prompt_build_ms - openai_ms - db_insert_ms),
            "total_ms": total_ms,
        }
        logger.info(
            "Quiz generated",
            extra=log_fields(
                request_id=metrics.request_id,
                user_id=user_id,
                action="generate_quiz",
                quiz_id=row.id,
                question_count=len(questions),
                model_used=metrics.model_used,
                attempt_count=metrics.attempt_count,
                **timings,
            ),
        )

        # 13. output
        output = GenerateQuizOutput(
            quiz_id=row.id, config=config, actual_question_count=len(questions)
        )
        if context.get("debug"):
            output.debug = DebugInfo(
                timings=DebugTimings(**timings),
                model_used=metrics.model_used,
                fallback_triggered=metrics.fallback_triggered,
                tokens_total=metrics.tokens_total or 0,
            )
        return GenerationResult(output=output, metrics=metrics, timings=timings)
