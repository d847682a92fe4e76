# Grading pipeline: resolve the attempt, apply the rubric, persist, record analytics.
import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from studyquiz.ai_router import RouterMetrics
from studyquiz.analytics import AnalyticsRecorder, BackgroundTaskRegistry, background_tasks
from studyquiz.config import Settings
from studyquiz.errors import (
    QuizPipelineError,
    bad_request,
    not_found,
    schema_invalid,
    server_error,
)
from studyquiz.grader import RUBRIC_VERSION, grade_submission, question_type_breakdown
from studyquiz.logging_config import log_fields
from studyquiz.schemas import GradeInput, GradeOutput, first_issue_message
from studyquiz.store import QuizStore

logger = logging.getLogger("studyquiz.grading")

GRADING_MODEL = "deterministic"


# SQLite hands back naive datetimes; treat them as UTC.
def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GradingOrchestrator:
    def __init__(
        self,
        store: QuizStore,
        recorder: AnalyticsRecorder,
        settings: Settings,
        tasks: Optional[BackgroundTaskRegistry] = None,
    ):
        self.store = store
        self.recorder = recorder
        self.settings = settings
        self.tasks = tasks if tasks is not None else background_tasks

    async def grade(self, data: Any, context: Mapping[str, Any]) -> GradeOutput:
        started = time.perf_counter()
        request_id = context.get("request_id") or str(uuid.uuid4())
        user_id = context["user_id"]

        try:
            payload = GradeInput.model_validate(data)
        except ValidationError as exc:
            raise schema_invalid(first_issue_message(exc))

        started_at: Optional[datetime] = None
        if payload.attempt_id is not None:
            found = await asyncio.to_thread(
                self.store.get_attempt_with_quiz, str(payload.attempt_id), user_id
            )
            if found is None:
                raise not_found("Attempt not found")
            attempt, quiz = found
            if attempt.status != "in_progress":
                raise bad_request("Attempt has already been submitted")
            if quiz is None:
                raise not_found("Quiz not found")
            if not quiz.questions:
                raise QuizPipelineError("EMPTY_QUIZ", "Quiz has no questions", 400)
            started_at = attempt.started_at
            quiz_id, questions = quiz.id, quiz.questions
        else:
            if not self.settings.demo_instant_grade:
                raise bad_request("Instant grading is disabled; start an attempt first")
            quiz = await asyncio.to_thread(self.store.get_quiz, str(payload.quiz_id), user_id)
            if quiz is None:
                raise not_found("Quiz not found")
            if not quiz.questions:
                raise QuizPipelineError("EMPTY_QUIZ", "Quiz has no questions", 400)
            # Commit expires loaded rows, so keep plain values from here on.
            quiz_id, questions = quiz.id, quiz.questions
            try:
                attempt = await asyncio.to_thread(
                    self.store.create_submitted_attempt, quiz_id, user_id, payload.responses
                )
            except SQLAlchemyError:
                logger.exception(
                    "Failed to create attempt", extra=log_fields(request_id=request_id, user_id=user_id)
                )
                raise server_error("Failed to create attempt")

        attempt_id = attempt.id
        result = grade_submission(questions, payload.responses)
        grading_ms = int((time.perf_counter() - started) * 1000)

        submitted_at = datetime.now(timezone.utc)
        if started_at is not None:
            duration_ms = max(0, int((submitted_at - _as_utc(started_at)).total_seconds() * 1000))
        else:
            duration_ms = grading_ms

        metrics = RouterMetrics(
            request_id=request_id,
            model_used=GRADING_MODEL,
            model_family="standard",
            fallback_triggered=False,
            model_decision_reason="deterministic_grading",
            attempt_count=1,
            latency_ms=grading_ms,
        )
        type_counts = question_type_breakdown(questions)

        values = {
            "status": "submitted",
            "responses": payload.responses,
            "score": result.percent / 100,
            "grading": result.breakdown,
            "submitted_at": submitted_at,
            "duration_ms": duration_ms,
            "grading_model": GRADING_MODEL,
            "metrics": dict(
                metrics.to_dict(),
                rubric_version=RUBRIC_VERSION,
                question_type_breakdown=type_counts,
            ),
        }
        try:
            updated = await asyncio.to_thread(
                self.store.update_attempt_grading, attempt_id, user_id, values
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to save grading", extra=log_fields(request_id=request_id, attempt_id=attempt_id)
            )
            raise server_error("Failed to save grading")
        if updated == 0:
            logger.error(
                "Attempt update touched no rows",
                extra=log_fields(request_id=request_id, attempt_id=attempt_id),
            )
            raise server_error("Failed to save grading")

        self.tasks.fire_and_forget(
            self.recorder.record_grading(
                attempt_id, user_id, quiz_id, metrics, type_counts, RUBRIC_VERSION
            ),
            "grading_analytics",
            request_id=request_id,
        )

        logger.info(
            "Attempt graded",
            extra=log_fields(
                request_id=request_id,
                user_id=user_id,
                action="grade_quiz",
                attempt_id=attempt_id,
                score=result.percent,
                correct=result.correct_count,
                total=result.total,
                latency_ms=grading_ms,
            ),
        )

        return GradeOutput(
            attempt_id=attempt_id,
            score=result.percent,
            letter=result.letter,
            summary=result.summary,
            breakdown=result.breakdown,
        )
