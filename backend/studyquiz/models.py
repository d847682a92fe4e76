import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON

from studyquiz.database import Base

JSONType = JSON().with_variant(JSONB, "postgresql")


def _uuid_str():
    return str(uuid.uuid4())


class StudyClass(Base):
    __tablename__ = "classes"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    user_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    user_id = Column(String(36), nullable=False)
    status = Column(String(32), nullable=False)
    plan = Column(String(32))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("subscriptions_user_created_idx", "user_id", "created_at"),)


class Quiz(Base):
    __tablename__ = "quizzes"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    user_id = Column(String(36), nullable=False)
    class_id = Column(String(36), ForeignKey("classes.id"))
    questions = Column(JSONType, nullable=False)
    title = Column(String(255), nullable=False)
    subject = Column(String(64), nullable=False)
    meta = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("quizzes_user_created_idx", "user_id", "created_at"),)


class QuizAttempt(Base):
    __tablename__ = "quiz_attempts"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    quiz_id = Column(String(36), ForeignKey("quizzes.id"), nullable=False)
    user_id = Column(String(36), nullable=False)
    status = Column(String(20), nullable=False, default="in_progress")
    responses = Column(JSONType, nullable=False, default=dict)
    score = Column(Float)
    grading = Column(JSONType)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    submitted_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)
    grading_model = Column(String(64))
    metrics = Column(JSONType)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'submitted')", name="quiz_attempts_status_check"
        ),
        CheckConstraint("score IS NULL OR (score >= 0 AND score <= 1)", name="quiz_attempts_score_check"),
        Index("quiz_attempts_user_idx", "user_id"),
        Index("quiz_attempts_quiz_idx", "quiz_id"),
    )


class GenerationAnalytics(Base):
    __tablename__ = "generation_analytics"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    quiz_id = Column(String(36))
    user_id = Column(String(36), nullable=False)
    request_id = Column(String(64), nullable=False)
    model_used = Column(String(128), nullable=False)
    model_family = Column(String(32), nullable=False)
    fallback_triggered = Column(Boolean, nullable=False, default=False)
    attempt_count = Column(Integer, nullable=False)
    latency_ms = Column(Integer, nullable=False)
    tokens_prompt = Column(Integer)
    tokens_completion = Column(Integer)
    tokens_total = Column(Integer)
    question_count = Column(Integer)
    mcq_count = Column(Integer)
    short_count = Column(Integer)
    quality_metrics = Column(JSONType)
    config = Column(JSONType)
    source_type = Column(String(16), nullable=False)
    note_size_chars = Column(Integer, nullable=False)
    error_occurred = Column(Boolean, nullable=False, default=False)
    error_code = Column(String(64))
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("generation_analytics_user_idx", "user_id", "created_at"),)


class AnalyticsEvent(Base):
    __tablename__ = "analytics"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    event = Column(String(64), nullable=False)
    user_id = Column(String(36), nullable=False)
    data = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("analytics_event_created_idx", "event", "created_at"),)
