# FastAPI app, routes, and error envelope handling.
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from openai import AsyncOpenAI
from sqlalchemy.orm import Session

from studyquiz.ai_router import ROUTER_TASKS, ModelRouter, detect_model_family, get_task_models
from studyquiz.analytics import AnalyticsRecorder, background_tasks
from studyquiz.config import Settings, get_settings, validate_ai_config
from studyquiz.database import Base, SessionLocal, engine, get_db
from studyquiz.errors import QuizPipelineError, schema_invalid
from studyquiz.generation import GenerationOrchestrator
from studyquiz.grading import GradingOrchestrator
from studyquiz.logging_config import log_fields, setup_logging
from studyquiz.schemas import ErrorOut, GenerateQuizOutput, GradeOutput, QuizConfig
from studyquiz.store import QuizStore

REQUEST_ID_HEADER = "X-Request-ID"

ERROR_RESPONSES = {code: {"model": ErrorOut} for code in (400, 401, 402, 404, 429, 500, 502)}


# Configure logging and tables; on shutdown flush analytics and close the shared OpenAI client.
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FORMAT"))
    Base.metadata.create_all(bind=engine)
    app.state.openai_client = None
    yield
    await background_tasks.drain()
    client = app.state.openai_client
    if client is not None:
        app.state.openai_client = None
        await client.close()


app = FastAPI(title="StudyQuiz API", lifespan=lifespan)
logger = logging.getLogger("studyquiz.api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)


# Tag every request with a trace id and echo it on the response.
@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


@app.exception_handler(QuizPipelineError)
async def pipeline_error_handler(request: Request, exc: QuizPipelineError):
    return JSONResponse(status_code=exc.status, content=exc.to_envelope())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    request_id = _request_id(request)
    logger.exception(
        "Unhandled error", extra=log_fields(request_id=request_id, path=request.url.path)
    )
    envelope = QuizPipelineError("SERVER_ERROR", "Internal server error", 500).to_envelope()
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=envelope,
        headers={REQUEST_ID_HEADER: request_id},
    )


# Caller identity is supplied by the auth layer in front of this service.
def require_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise QuizPipelineError("UNAUTHORIZED", "Authentication required", 401)
    return x_user_id.strip()


# Parse the body ourselves so shape errors use the pipeline envelope.
async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise schema_invalid("Request body must be valid JSON")


# One OpenAI client per app, created on first use once a key is configured.
async def get_model_router(request: Request) -> ModelRouter:
    settings = get_settings()
    client = getattr(request.app.state, "openai_client", None)
    if client is None and settings.openai_api_key:
        client = AsyncOpenAI(api_key=settings.openai_api_key)
        request.app.state.openai_client = client
    return ModelRouter(settings, client=client)


def get_recorder() -> AnalyticsRecorder:
    return AnalyticsRecorder(SessionLocal)


TYPING_CONFIG = QuizConfig(
    question_type="typing", question_count=1, coverage="key_concepts", difficulty="medium"
)


def describe_models(task: str, settings: Settings, config: Optional[QuizConfig] = None) -> Dict[str, str]:
    models = get_task_models(task, settings, config)
    return {
        "default": models.default_model,
        "default_family": detect_model_family(models.default_model),
        "fallback": models.fallback_model,
        "fallback_family": detect_model_family(models.fallback_model),
    }


# Router configuration summary; degraded when the AI layer is not configured.
@app.get("/health")
def health():
    settings = get_settings()
    problem = validate_ai_config(settings)
    tasks = {task: describe_models(task, settings) for task in ROUTER_TASKS}
    tasks["quiz_generation_typing"] = describe_models("quiz_generation", settings, TYPING_CONFIG)
    return {
        "status": "healthy" if problem is None else "degraded",
        "ai_configured": problem is None,
        "router": {
            "fallback_enabled": settings.fallback_enabled,
            "retry_enabled": settings.retry_enabled,
            "tasks": tasks,
        },
    }


@app.post(
    "/quizzes/generate",
    response_model=GenerateQuizOutput,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def generate_quiz(
    request: Request,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
    router: ModelRouter = Depends(get_model_router),
):
    data = await read_json(request)
    settings = get_settings()
    orchestrator = GenerationOrchestrator(QuizStore(db), router, get_recorder(), settings)
    context = {
        "request_id": _request_id(request),
        "user_id": user_id,
        "debug": request.headers.get("X-Debug-Timing") == "1",
    }
    result = await orchestrator.generate_quiz(data, context)
    return result.output


@app.post("/quizzes/grade", response_model=GradeOutput, responses=ERROR_RESPONSES)
async def grade_quiz(
    request: Request,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    data = await read_json(request)
    settings = get_settings()
    orchestrator = GradingOrchestrator(QuizStore(db), get_recorder(), settings)
    context = {"request_id": _request_id(request), "user_id": user_id}
    return await orchestrator.grade(data, context)
