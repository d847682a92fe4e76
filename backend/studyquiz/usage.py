# Free-tier quota enforcement ahead of any model call.
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from studyquiz.config import Settings
from studyquiz.errors import QuizPipelineError, server_error
from studyquiz.logging_config import log_fields
from studyquiz.store import QuizStore

logger = logging.getLogger("studyquiz.usage")

PAID_STATUSES = frozenset({"active", "trialing"})


@dataclass
class UserPlan:
    tier: str
    plan: Optional[str] = None


# Latest subscription wins; anything not active or trialing is free.
def get_user_plan(store: QuizStore, user_id: str) -> UserPlan:
    subscription = store.latest_subscription(user_id)
    if subscription is None or subscription.status not in PAID_STATUSES:
        return UserPlan(tier="free")
    return UserPlan(tier="paid", plan=subscription.plan)


def free_quiz_limit(settings: Settings) -> int:
    if settings.is_test_mode:
        return settings.test_quiz_limit
    return settings.free_quiz_limit


def enforce_quiz_quota(
    store: QuizStore, settings: Settings, user_id: str, request_id: Optional[str] = None
) -> None:
    """Raise USAGE_LIMIT_REACHED when a free user is at their quiz limit.

    The count and the later insert are separate statements, so concurrent
    submissions near the limit can both pass.
    """
    if not settings.usage_limits_enabled:
        return

    limit = free_quiz_limit(settings)
    if settings.is_test_mode:
        logger.info(
            "Test-mode quiz limit override active",
            extra=log_fields(request_id=request_id, free_quiz_limit=limit),
        )

    try:
        plan = get_user_plan(store, user_id)
        if plan.tier != "free":
            return
        count = store.count_quizzes(user_id)
    except SQLAlchemyError:
        logger.exception(
            "Failed to check usage limits", extra=log_fields(request_id=request_id)
        )
        raise server_error("Failed to check usage limits")

    if count >= limit:
        logger.warning(
            "Free tier limit exceeded",
            extra=log_fields(
                request_id=request_id, user_id=user_id, action="generate_quiz", quizzes_count=count
            ),
        )
        raise QuizPipelineError(
            "USAGE_LIMIT_REACHED",
            f"You've reached the Free plan limit of {limit} quizzes.",
            402,
        )
