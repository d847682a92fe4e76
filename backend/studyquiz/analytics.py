# Generation and grading analytics, written from detached tasks.
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set

from sqlalchemy.orm import Session

from studyquiz.ai_router import RouterMetrics
from studyquiz.grader import content_tokens
from studyquiz.logging_config import log_fields
from studyquiz.models import AnalyticsEvent, GenerationAnalytics

logger = logging.getLogger("studyquiz.analytics")

TARGET_MCQ_SHARE = 0.4
DUPLICATE_SIMILARITY = 0.7
DUPLICATE_SCAN_LIMIT = 20


def _concepts(text: str) -> Set[str]:
    return content_tokens(text, min_length=3)


def jaccard_similarity(a: str, b: str) -> float:
    left, right = _concepts(a), _concepts(b)
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


# Unique concepts over total concept mentions across prompts.
def concept_coverage(questions: List[Mapping[str, Any]]) -> float:
    seen: Set[str] = set()
    mentions = 0
    for question in questions:
        concepts = _concepts(str(question.get("prompt", "")))
        seen |= concepts
        mentions += len(concepts)
    if not mentions:
        return 0.0
    return len(seen) / mentions


# 1.0 when the mcq/short split matches the target mix.
def diversity_score(questions: List[Mapping[str, Any]]) -> float:
    if not questions:
        return 0.0
    total = len(questions)
    mcq_share = sum(1 for q in questions if q.get("type") == "mcq") / total
    short_share = sum(1 for q in questions if q.get("type") == "short") / total
    deviation = (abs(mcq_share - TARGET_MCQ_SHARE) + abs(short_share - (1 - TARGET_MCQ_SHARE))) / 2
    return 1 - deviation


def duplicate_ratio(questions: List[Mapping[str, Any]]) -> float:
    prompts = [str(q.get("prompt", "")) for q in questions[:DUPLICATE_SCAN_LIMIT]]
    if len(prompts) < 2:
        return 0.0
    pairs = len(prompts) * (len(prompts) - 1) // 2
    duplicates = sum(
        1
        for i in range(len(prompts))
        for j in range(i + 1, len(prompts))
        if jaccard_similarity(prompts[i], prompts[j]) >= DUPLICATE_SIMILARITY
    )
    return duplicates / pairs


def calculate_quality_metrics(questions: List[Mapping[str, Any]]) -> Dict[str, float]:
    return {
        "concept_coverage_ratio": round(concept_coverage(questions), 2),
        "question_diversity_score": round(diversity_score(questions), 2),
        "duplicate_ratio": round(duplicate_ratio(questions), 2),
    }


class BackgroundTaskRegistry:
    """Keeps fire-and-forget tasks referenced until they complete."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def fire_and_forget(
        self, coro: Awaitable[Any], label: str, **context: Any
    ) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._finished(done, label, context))
        return task

    def _finished(self, task: asyncio.Task, label: str, context: Dict[str, Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(
                "Background task cancelled", extra=log_fields(task=label, **context)
            )
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task failed",
                exc_info=exc,
                extra=log_fields(task=label, **context),
            )

    async def drain(self, timeout: Optional[float] = 5.0) -> None:
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()


background_tasks = BackgroundTaskRegistry()


def _type_counts(questions: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    counts = {"mcq": 0, "short": 0}
    for question in questions:
        if question.get("type") in counts:
            counts[question["type"]] += 1
    return counts


class AnalyticsRecorder:
    """Writes analytics rows on a worker thread with a dedicated session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _insert(self, row: Any) -> None:
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _write(self, row: Any) -> None:
        await asyncio.to_thread(self._insert, row)

    async def record_generation_success(
        self,
        quiz_id: str,
        user_id: str,
        metrics: RouterMetrics,
        questions: List[Dict[str, Any]],
        source: Mapping[str, Any],
        config: Optional[Dict[str, Any]] = None,
    ) -> None:
        counts = _type_counts(questions)
        quality = calculate_quality_metrics(questions)
        await self._write(
            GenerationAnalytics(
                quiz_id=quiz_id,
                user_id=user_id,
                request_id=metrics.request_id,
                model_used=metrics.model_used,
                model_family=metrics.model_family,
                fallback_triggered=metrics.fallback_triggered,
                attempt_count=metrics.attempt_count,
                latency_ms=metrics.latency_ms,
                tokens_prompt=metrics.tokens_prompt,
                tokens_completion=metrics.tokens_completion,
                tokens_total=metrics.tokens_total,
                question_count=len(questions),
                mcq_count=counts["mcq"],
                short_count=counts["short"],
                quality_metrics=quality,
                config=config,
                source_type=source.get("type", "direct"),
                note_size_chars=source.get("note_size", 0),
                error_occurred=False,
            )
        )
        logger.info(
            "Generation analytics recorded",
            extra=log_fields(
                request_id=metrics.request_id,
                user_id=user_id,
                quiz_id=quiz_id,
                model_used=metrics.model_used,
                **quality,
            ),
        )

    async def record_generation_failure(
        self,
        user_id: str,
        metrics: RouterMetrics,
        error_code: str,
        error_message: str,
        source: Mapping[str, Any],
    ) -> None:
        await self._write(
            GenerationAnalytics(
                quiz_id=None,
                user_id=user_id,
                request_id=metrics.request_id,
                model_used=metrics.model_used,
                model_family=metrics.model_family,
                fallback_triggered=metrics.fallback_triggered,
                attempt_count=metrics.attempt_count,
                latency_ms=metrics.latency_ms,
                tokens_prompt=metrics.tokens_prompt,
                tokens_completion=metrics.tokens_completion,
                tokens_total=metrics.tokens_total,
                source_type=source.get("type", "direct"),
                note_size_chars=source.get("note_size", 0),
                error_occurred=True,
                error_code=error_code,
                error_message=error_message,
            )
        )

    async def record_grading(
        self,
        attempt_id: str,
        user_id: str,
        quiz_id: str,
        metrics: RouterMetrics,
        question_types: Dict[str, int],
        rubric_version: str,
    ) -> None:
        data = metrics.to_dict()
        data.update(
            attempt_id=attempt_id,
            quiz_id=quiz_id,
            question_type_breakdown=question_types,
            rubric_version=rubric_version,
        )
        await self._write(AnalyticsEvent(event="grade_success", user_id=user_id, data=data))
