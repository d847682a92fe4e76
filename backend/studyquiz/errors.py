# Error taxonomy shared by the orchestrators and the HTTP boundary.
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

MAX_ERROR_DETAILS = 3


@dataclass
class ErrorDetail:
    path: str
    message: str


@dataclass(eq=False)
class QuizPipelineError(Exception):
    """Tagged pipeline failure: stable ``code``, human ``message``, HTTP ``status``."""

    code: str
    message: str
    status: int
    details: List[ErrorDetail] = field(default_factory=list)

    def __post_init__(self) -> None:
        super().__init__(self.message)
        self.details = list(self.details)[:MAX_ERROR_DETAILS]

    def to_envelope(self) -> Dict[str, Any]:
        envelope: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "status": self.status,
        }
        if self.details:
            envelope["details"] = [
                {"path": detail.path, "message": detail.message} for detail in self.details
            ]
        return envelope


# Factories for the codes raised in more than one place.
def schema_invalid(message: Optional[str]) -> QuizPipelineError:
    return QuizPipelineError("SCHEMA_INVALID", message or "Invalid request data", 400)


def not_found(message: str) -> QuizPipelineError:
    return QuizPipelineError("NOT_FOUND", message, 404)


def bad_request(message: str) -> QuizPipelineError:
    return QuizPipelineError("BAD_REQUEST", message, 400)


def server_error(message: str) -> QuizPipelineError:
    return QuizPipelineError("SERVER_ERROR", message, 500)
