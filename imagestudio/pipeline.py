"""Image-artifact lifecycle pipeline.

One ``Orchestrator.run`` call drives a single request through
``IDLE -> VALIDATING -> QUOTA_CHECK -> CALLING -> DECODING -> PERSISTING -> DONE``; any step can
end in ``FAILED``. Listeners receive every transition.

Usage is recorded as soon as an image is confirmed, before persistence, so a failed save never
refunds quota and never discards the image.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Protocol

from .codec import to_blob
from .errors import (
    DecodeError,
    GenerationError,
    ImageStudioError,
    NotAuthenticated,
    ValidationError,
)
from .models import (
    Artifact,
    GenerationRequest,
    GenerationResult,
    Identity,
    Mode,
    Modality,
    QuotaState,
)
from .quota import QuotaTracker

logger = logging.getLogger("image-studio.pipeline")

MAX_PROMPT_LENGTH = 2000
NO_RESULT_MESSAGE = "The model did not return an image. Try rephrasing your prompt."


class PipelineState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    QUOTA_CHECK = "quota_check"
    CALLING = "calling"
    DECODING = "decoding"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class ImageGenerator(Protocol):
    async def generate(self, prompt_text: str, modalities: tuple[Modality, ...]) -> GenerationResult | None: ...

    async def edit(self, prompt_text: str, source_bytes: bytes, mime_type: str) -> GenerationResult | None: ...


class ArtifactSaver(Protocol):
    async def save(self, image_bytes: bytes, mime_type: str, prompt_text: str, owner_id: str) -> Artifact: ...


@dataclass(frozen=True)
class PipelineEvent:
    run_id: str
    previous: PipelineState
    state: PipelineState
    failure_kind: str | None = None


PipelineListener = Callable[[PipelineEvent], None]


@dataclass
class PipelineOutcome:
    run_id: str
    state: PipelineState = PipelineState.IDLE
    result: GenerationResult | None = None
    artifact: Artifact | None = None
    quota: QuotaState | None = None
    error: ImageStudioError | None = None
    failed_in: PipelineState | None = None
    warnings: list[ImageStudioError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.DONE

    @property
    def no_result(self) -> bool:
        return self.succeeded and self.result is None


def log_transition(event: PipelineEvent) -> None:
    if event.failure_kind:
        logger.info("[%s] %s -> %s (%s)", event.run_id, event.previous.value, event.state.value, event.failure_kind)
    else:
        logger.info("[%s] %s -> %s", event.run_id, event.previous.value, event.state.value)


def validate_request(request: GenerationRequest, max_source_bytes: int | None = None) -> GenerationRequest:
    prompt_text = (request.prompt_text or "").strip()
    if not prompt_text:
        raise ValidationError("Please enter a prompt.")
    if len(prompt_text) > MAX_PROMPT_LENGTH:
        raise ValidationError(f"Prompts are limited to {MAX_PROMPT_LENGTH} characters.")
    if request.mode is Mode.EDIT:
        if request.source_image is None or not request.source_image.data:
            raise ValidationError("Please upload an image to edit.")
        if not request.source_image.mime_type.startswith("image/"):
            raise ValidationError(f"Unsupported image type '{request.source_image.mime_type}'.")
        if max_source_bytes is not None and len(request.source_image.data) > max_source_bytes:
            raise ValidationError(f"Images are limited to {max_source_bytes} bytes.")
    elif request.source_image is not None:
        raise ValidationError("Generate requests must not include a source image.")
    if not request.response_modalities:
        raise ValidationError("At least one response modality is required.")
    return GenerationRequest(
        prompt_text=prompt_text,
        mode=request.mode,
        source_image=request.source_image,
        response_modalities=request.response_modalities,
    )


def decode_result(result: GenerationResult) -> GenerationResult:
    """Turn a raw model result into image bytes, or raise ``DecodeError``."""
    if isinstance(result.image_bytes, str):
        blob = to_blob(result.image_bytes, result.mime_type)
        result = replace(result, image_bytes=blob.data, mime_type=blob.mime_type)
    if not result.image_bytes:
        raise DecodeError("The model returned an empty image.")
    if not result.mime_type.startswith("image/"):
        raise DecodeError(f"The model returned unsupported content '{result.mime_type}'.")
    return result


def collect_late_call(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning("Generation call failed after its timeout: %s", error)
    else:
        logger.info("Generation call finished after its timeout; result discarded")


class _Run:
    def __init__(self, listeners: list[PipelineListener]):
        self.outcome = PipelineOutcome(run_id=uuid.uuid4().hex[:12])
        self._listeners = listeners

    @property
    def state(self) -> PipelineState:
        return self.outcome.state

    def advance(self, state: PipelineState, failure_kind: str | None = None) -> None:
        event = PipelineEvent(self.outcome.run_id, self.outcome.state, state, failure_kind)
        self.outcome.state = state
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:  # pragma: no cover - listener bugs must not break a run
                logger.exception("Pipeline listener failed on %s", state.value)

    def fail(self, error: ImageStudioError) -> PipelineOutcome:
        self.outcome.error = error
        self.outcome.failed_in = self.outcome.state
        self.advance(PipelineState.FAILED, error.kind)
        return self.outcome


class Orchestrator:
    def __init__(
        self,
        generator: ImageGenerator,
        quota: QuotaTracker,
        saver: ArtifactSaver | None = None,
        *,
        timeout_seconds: float | None = None,
        max_source_bytes: int | None = None,
    ):
        self._generator = generator
        self._quota = quota
        self._saver = saver
        self._timeout_seconds = timeout_seconds
        self._max_source_bytes = max_source_bytes
        self._listeners: list[PipelineListener] = [log_transition]

    def subscribe(self, listener: PipelineListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def run(self, request: GenerationRequest, identity: Identity) -> PipelineOutcome:
        run = _Run(list(self._listeners))
        try:
            return await self._run(run, request, identity)
        except ImageStudioError as exc:
            return run.fail(exc)
        except Exception as exc:
            logger.exception("Unexpected pipeline failure in state %s", run.state.value)
            error = GenerationError(f"Unexpected failure: {exc}")
            error.__cause__ = exc
            return run.fail(error)

    async def _run(self, run: _Run, request: GenerationRequest, identity: Identity) -> PipelineOutcome:
        outcome = run.outcome

        run.advance(PipelineState.VALIDATING)
        request = validate_request(request, self._max_source_bytes)

        run.advance(PipelineState.QUOTA_CHECK)
        outcome.quota = await self._quota.ensure_allowed(identity)

        run.advance(PipelineState.CALLING)
        result = await self._call(request)

        run.advance(PipelineState.DECODING)
        if result is None:
            run.advance(PipelineState.DONE)
            return outcome
        result = decode_result(result)
        outcome.result = result

        try:
            outcome.quota = await self._quota.record_usage(identity)
        except ImageStudioError as exc:
            logger.warning("Generated image but usage was not recorded: %s", exc)
            outcome.warnings.append(exc)

        run.advance(PipelineState.PERSISTING)
        outcome.artifact = await self._persist(result, outcome, request, identity)

        run.advance(PipelineState.DONE)
        return outcome

    async def _call(self, request: GenerationRequest) -> GenerationResult | None:
        if request.mode is Mode.EDIT:
            source = request.source_image
            if source is None:
                raise ValidationError("Please upload an image to edit.")
            call = self._generator.edit(request.prompt_text, source.data, source.mime_type)
        else:
            call = self._generator.generate(request.prompt_text, request.response_modalities)

        if self._timeout_seconds is None:
            return await call
        task = asyncio.ensure_future(call)
        try:
            # shield keeps the remote call running to completion after the caller stops waiting.
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            task.add_done_callback(collect_late_call)
            raise GenerationError(
                f"Image generation timed out after {self._timeout_seconds:g} seconds.",
                reason="timeout",
            ) from exc

    async def _persist(
        self,
        result: GenerationResult,
        outcome: PipelineOutcome,
        request: GenerationRequest,
        identity: Identity,
    ) -> Artifact | None:
        if self._saver is None:
            return None
        if identity.is_anonymous:
            outcome.warnings.append(NotAuthenticated("Image generated but not saved. Sign in to keep a history."))
            return None
        try:
            return await self._saver.save(result.image_bytes, result.mime_type, request.prompt_text, identity.id)
        except ImageStudioError as exc:
            logger.warning("Image generated but failed to save: %s", exc)
            outcome.warnings.append(exc)
        except Exception as exc:
            logger.exception("Unexpected persistence failure")
            warning = ImageStudioError(f"Image generated but failed to save: {exc}")
            warning.__cause__ = exc
            outcome.warnings.append(warning)
        return None
