# Client-side coordinator that stages, locks and cancels quiz generation requests.
import asyncio
import enum
import logging
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError

from studyquiz.quiz_config import QuizConfigError, normalize_quiz_config
from studyquiz.schemas import NOTES_MAX_CHARS, NOTES_MIN_CHARS, GenerateQuizOutput, QuizConfig

logger = logging.getLogger("studyquiz.coordinator")

REASSURANCE_AFTER_SECONDS = 15.0
HONESTY_BUDGET_MS = 400
STAGE_MIN_MS = 250


class GenerationStage(str, enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    GENERATING = "generating"
    VALIDATING = "validating"
    FINALIZING = "finalizing"
    ERROR = "error"


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class InvalidSubmission(ValueError):
    """Submission rejected before any request was made."""


class RequestFailed(Exception):
    def __init__(self, code: str, message: str, status: int):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "status": self.status}


class HttpQuizTransport:
    """Posts generation requests to the API and unwraps error envelopes."""

    def __init__(self, client: httpx.AsyncClient, user_id: str, debug_timing: bool = False):
        self.client = client
        self.user_id = user_id
        self.debug_timing = debug_timing

    async def generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"X-User-Id": self.user_id}
        if self.debug_timing:
            headers["X-Debug-Timing"] = "1"
        try:
            response = await self.client.post("/quizzes/generate", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise RequestFailed("NETWORK_ERROR", str(exc) or "Network request failed", 0) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error:
            raise RequestFailed(
                body.get("code", "SERVER_ERROR"),
                body.get("message", f"Request failed with status {response.status_code}"),
                body.get("status", response.status_code),
            )
        return body

    async def aclose(self) -> None:
        await self.client.aclose()


def validate_submission(
    notes_text: str, config: Optional[Dict[str, Any]] = None
) -> Tuple[str, QuizConfig]:
    notes = (notes_text or "").strip()
    if len(notes) < NOTES_MIN_CHARS:
        raise InvalidSubmission("Notes text must be at least 20 characters")
    if len(notes) > NOTES_MAX_CHARS:
        raise InvalidSubmission("Notes text too long (max 50,000 characters)")
    try:
        quiz_config = normalize_quiz_config(config)
    except QuizConfigError as exc:
        raise InvalidSubmission(str(exc)) from exc
    return notes, quiz_config


class GenerationCoordinator:
    def __init__(
        self,
        transport: HttpQuizTransport,
        on_success: Optional[Callable[[GenerateQuizOutput], None]] = None,
        on_reassurance: Optional[Callable[[], None]] = None,
        on_stage: Optional[Callable[[GenerationStage], None]] = None,
        reassurance_after: float = REASSURANCE_AFTER_SECONDS,
        honesty_budget_ms: int = HONESTY_BUDGET_MS,
        stage_min_ms: int = STAGE_MIN_MS,
    ):
        self.transport = transport
        self.on_success = on_success
        self.on_reassurance = on_reassurance
        self.on_stage = on_stage
        self.reassurance_after = reassurance_after
        self.honesty_budget_ms = honesty_budget_ms
        self.stage_min_ms = stage_min_ms

        self.sequence = 0
        self.locked = False
        self.stage = GenerationStage.IDLE
        self.show_reassurance = False
        self.last_error: Optional[Dict[str, Any]] = None

        self._token: Optional[CancellationToken] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._inflight: Optional[asyncio.Future] = None
        self._budget_left_ms = 0
        self._last_submission: Optional[Tuple[str, Optional[str], Optional[Dict[str, Any]]]] = None
        self._torn_down = False

    def _is_current(self, sequence: int, token: CancellationToken) -> bool:
        return sequence == self.sequence and not token.cancelled and not self._torn_down

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set_stage(self, stage: GenerationStage) -> None:
        self._cancel_timer()
        self.show_reassurance = False
        self.stage = stage
        if stage is GenerationStage.GENERATING:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.reassurance_after, self._reassure, self.sequence)
        if self.on_stage is not None:
            self.on_stage(stage)

    def _reassure(self, sequence: int) -> None:
        self._timer = None
        if (
            sequence != self.sequence
            or self._torn_down
            or self.stage is not GenerationStage.GENERATING
        ):
            return
        self.show_reassurance = True
        if self.on_reassurance is not None:
            self.on_reassurance()

    # Keep a stage visible briefly, until the shared budget runs out.
    async def _hold(self, token: CancellationToken) -> None:
        if self._budget_left_ms <= 0 or self.stage_min_ms <= 0:
            return
        delay_ms = min(self.stage_min_ms, self._budget_left_ms)
        self._budget_left_ms -= delay_ms
        try:
            await asyncio.wait_for(token.wait(), timeout=delay_ms / 1000)
        except asyncio.TimeoutError:
            pass

    async def _send(self, token: CancellationToken, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        request = asyncio.ensure_future(self.transport.generate(payload))
        self._inflight = request
        watcher = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({request, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()
            if not request.done():
                request.cancel()
            self._inflight = None

        if token.cancelled or request.cancelled():
            if request.done() and not request.cancelled():
                # Mark the discarded outcome as retrieved.
                request.exception()
            return None
        return request.result()

    async def submit(
        self,
        notes_text: str,
        class_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> Optional[GenerateQuizOutput]:
        notes, quiz_config = validate_submission(notes_text, config)
        if self.locked or self._torn_down:
            logger.debug("Dropping duplicate submission while a request is in flight")
            return None

        self.locked = True
        self.sequence += 1
        sequence = self.sequence
        token = CancellationToken()
        self._token = token
        self._budget_left_ms = self.honesty_budget_ms
        self._last_submission = (notes_text, class_id, config)
        self.last_error = None

        payload: Dict[str, Any] = {
            "notes_text": notes,
            "config": quiz_config.model_dump(exclude_none=True),
        }
        if class_id:
            payload["class_id"] = class_id

        try:
            return await self._run(sequence, token, payload)
        except RequestFailed as exc:
            if self._is_current(sequence, token):
                self._fail(exc.to_dict())
            return None
        except Exception:
            if self._is_current(sequence, token):
                self._fail({"code": "UNKNOWN_ERROR", "message": "Quiz generation failed", "status": 0})
            raise

    async def _run(
        self, sequence: int, token: CancellationToken, payload: Dict[str, Any]
    ) -> Optional[GenerateQuizOutput]:
        self._set_stage(GenerationStage.SENDING)
        await self._hold(token)
        if not self._is_current(sequence, token):
            return None

        self._set_stage(GenerationStage.GENERATING)
        body = await self._send(token, payload)
        if body is None or not self._is_current(sequence, token):
            return None

        self._set_stage(GenerationStage.VALIDATING)
        try:
            result = GenerateQuizOutput.model_validate(body)
        except ValidationError as exc:
            raise RequestFailed("INVALID_RESPONSE", "Server returned an unexpected response", 502) from exc
        await self._hold(token)
        if not self._is_current(sequence, token):
            return None

        self._set_stage(GenerationStage.FINALIZING)
        await self._hold(token)
        if not self._is_current(sequence, token):
            return None

        self._set_stage(GenerationStage.IDLE)
        self.locked = False
        if self.on_success is not None:
            self.on_success(result)
        return result

    def _fail(self, error: Dict[str, Any]) -> None:
        self.last_error = error
        self._set_stage(GenerationStage.ERROR)
        self.locked = False

    # Abort the in-flight request and return to idle without surfacing an error.
    def cancel(self) -> None:
        if not self.locked:
            return
        if self._token is not None:
            self._token.cancel()
        if self._inflight is not None:
            self._inflight.cancel()
        self._cancel_timer()
        self.show_reassurance = False
        self.stage = GenerationStage.IDLE
        self.locked = False
        if self.on_stage is not None and not self._torn_down:
            self.on_stage(self.stage)

    async def retry(self) -> Optional[GenerateQuizOutput]:
        if self._last_submission is None:
            return None
        notes_text, class_id, config = self._last_submission
        return await self.submit(notes_text, class_id=class_id, config=config)

    def teardown(self) -> None:
        self._torn_down = True
        self.cancel()
        self._cancel_timer()
        self.on_success = None
        self.on_reassurance = None
        self.on_stage = None
