# Row access for the tables the pipeline reads and writes.
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from studyquiz.models import Quiz, QuizAttempt, StudyClass, Subscription


class QuizStore:
    """Thin repository over a request-scoped SQLAlchemy session.

    Write helpers commit on success and roll back before re-raising, so a
    failed write never leaves the session unusable for the caller.
    """

    def __init__(self, db: Session):
        self.db = db

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def get_class(self, class_id: str, user_id: str) -> Optional[StudyClass]:
        return (
            self.db.query(StudyClass)
            .filter(StudyClass.id == class_id, StudyClass.user_id == user_id)
            .first()
        )

    def latest_subscription(self, user_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def count_quizzes(self, user_id: str) -> int:
        return self.db.query(Quiz).filter(Quiz.user_id == user_id).count()

    def insert_quiz(
        self,
        user_id: str,
        class_id: Optional[str],
        questions: List[Dict[str, Any]],
        title: str,
        subject: str,
        meta: Dict[str, Any],
    ) -> Quiz:
        quiz = Quiz(
            user_id=user_id,
            class_id=class_id,
            questions=questions,
            title=title,
            subject=subject,
            meta=meta,
        )
        self.db.add(quiz)
        self._commit()
        self.db.refresh(quiz)
        return quiz

    def get_quiz(self, quiz_id: str, user_id: str) -> Optional[Quiz]:
        return (
            self.db.query(Quiz)
            .filter(Quiz.id == quiz_id, Quiz.user_id == user_id)
            .first()
        )

    def get_attempt_with_quiz(
        self, attempt_id: str, user_id: str
    ) -> Optional[Tuple[QuizAttempt, Optional[Quiz]]]:
        attempt = (
            self.db.query(QuizAttempt)
            .filter(QuizAttempt.id == attempt_id, QuizAttempt.user_id == user_id)
            .first()
        )
        if attempt is None:
            return None
        quiz = self.db.query(Quiz).filter(Quiz.id == attempt.quiz_id).first()
        return attempt, quiz

    def create_submitted_attempt(
        self, quiz_id: str, user_id: str, responses: Dict[str, str]
    ) -> QuizAttempt:
        attempt = QuizAttempt(
            quiz_id=quiz_id,
            user_id=user_id,
            status="submitted",
            responses=responses,
        )
        self.db.add(attempt)
        self._commit()
        self.db.refresh(attempt)
        return attempt

    # Single conditional write keyed by (attempt id, owner id); returns rows touched.
    def update_attempt_grading(
        self, attempt_id: str, user_id: str, values: Dict[str, Any]
    ) -> int:
        updated = (
            self.db.query(QuizAttempt)
            .filter(QuizAttempt.id == attempt_id, QuizAttempt.user_id == user_id)
            .update(values, synchronize_session=False)
        )
        self._commit()
        return updated
