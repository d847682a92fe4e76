# Pydantic request/response schemas.
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_core import PydanticCustomError

NOTES_MIN_CHARS = 20
NOTES_MAX_CHARS = 50_000
PROMPT_MAX_CHARS = 180

QuestionType = Literal["mcq", "typing", "hybrid"]
Coverage = Literal["key_concepts", "broad_sample"]
Difficulty = Literal["low", "medium", "high"]


# Per-type split required for hybrid quizzes.
class QuestionCounts(BaseModel):
    mcq: int = Field(..., ge=0)
    typing: int = Field(..., ge=0)


# Fully-specified quiz configuration.
class QuizConfig(BaseModel):
    question_type: QuestionType
    question_count: int = Field(..., ge=1, le=10)
    coverage: Coverage
    difficulty: Difficulty
    question_counts: Optional[QuestionCounts] = None

    @model_validator(mode="after")
    def check_hybrid_counts(self) -> "QuizConfig":
        if self.question_type != "hybrid":
            return self
        counts = self.question_counts
        if counts is None or counts.mcq + counts.typing != self.question_count:
            raise PydanticCustomError(
                "hybrid_counts",
                "For hybrid type, question_counts must be provided and sum to question_count",
            )
        return self

    @property
    def is_typing_heavy(self) -> bool:
        if self.question_type == "typing":
            return True
        counts = self.question_counts
        return (
            self.question_type == "hybrid"
            and counts is not None
            and counts.typing >= counts.mcq
        )


# Request payload for generating a quiz from notes.
class GenerateQuizInput(BaseModel):
    class_id: Optional[UUID] = None
    notes_text: str
    config: Optional[Dict[str, Any]] = None

    @field_validator("notes_text")
    @classmethod
    def check_notes_length(cls, value: str) -> str:
        cleaned = value.strip()
        if len(cleaned) < NOTES_MIN_CHARS:
            raise PydanticCustomError(
                "notes_too_short", "Notes text must be at least 20 characters"
            )
        if len(cleaned) > NOTES_MAX_CHARS:
            raise PydanticCustomError(
                "notes_too_long", "Notes text too long (max 50,000 characters)"
            )
        return cleaned


class DebugTimings(BaseModel):
    validation_ms: int
    prompt_build_ms: int
    openai_ms: int
    db_insert_ms: int
    overhead_ms: int
    total_ms: int


# Timing payload returned only on explicit opt-in.
class DebugInfo(BaseModel):
    timings: DebugTimings
    model_used: str
    fallback_triggered: bool
    tokens_total: int


# Response model for a generated quiz.
class GenerateQuizOutput(BaseModel):
    quiz_id: str
    config: QuizConfig
    actual_question_count: int
    debug: Optional[DebugInfo] = None


class McqQuestion(BaseModel):
    id: str
    type: Literal["mcq"]
    prompt: str = Field(..., max_length=PROMPT_MAX_CHARS)
    options: List[str] = Field(..., min_length=3, max_length=5)
    answer: str

    @model_validator(mode="after")
    def check_answer_in_options(self) -> "McqQuestion":
        if self.answer not in self.options:
            raise PydanticCustomError(
                "answer_not_in_options", "MCQ answer must match one of the options"
            )
        return self


class ShortQuestion(BaseModel):
    id: str
    type: Literal["short"]
    prompt: str = Field(..., max_length=PROMPT_MAX_CHARS)
    answer: str


Question = Annotated[Union[McqQuestion, ShortQuestion], Field(discriminator="type")]


# Structured payload the model must return.
class QuizResponse(BaseModel):
    questions: List[Question] = Field(..., min_length=1, max_length=10)


# Request payload for grading; one of quiz_id / attempt_id is required.
class GradeInput(BaseModel):
    quiz_id: Optional[UUID] = None
    attempt_id: Optional[UUID] = None
    responses: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_target(self) -> "GradeInput":
        if self.quiz_id is None and self.attempt_id is None:
            raise PydanticCustomError(
                "missing_target", "Must provide either quiz_id or attempt_id"
            )
        return self


# Per-question grading result.
class BreakdownItem(BaseModel):
    id: str
    type: Literal["mcq", "short"]
    prompt: str
    user_answer: str
    correct: bool
    correct_answer: Optional[str] = None
    feedback: str
    improvement: Optional[str] = None
    concepts_hit: Optional[int] = None
    concepts_total: Optional[int] = None


# Response model for a graded submission.
class GradeOutput(BaseModel):
    attempt_id: str
    score: int = Field(..., ge=0, le=100)
    letter: Literal["F", "D", "C", "B", "A"]
    summary: str
    breakdown: List[BreakdownItem]


class ErrorDetailOut(BaseModel):
    path: str
    message: str


# Uniform error envelope for every failed request.
class ErrorOut(BaseModel):
    code: str
    message: str
    status: int
    details: Optional[List[ErrorDetailOut]] = None


# First validation issue, formatted for the caller.
def first_issue_message(exc: ValidationError) -> Optional[str]:
    issues = exc.errors()
    if not issues:
        return None
    return issues[0].get("msg")


# Up to ``limit`` (path, message) pairs from a validation error.
def issue_details(exc: ValidationError, limit: int = 3) -> List[Dict[str, str]]:
    details = []
    for issue in exc.errors()[:limit]:
        path = ".".join(str(part) for part in issue.get("loc", ()))
        details.append({"path": path, "message": issue.get("msg", "")})
    return details
