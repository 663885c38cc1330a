from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import config
from .codec import encode_base64, to_blob
from .errors import (
    ConfigurationError,
    DecodeError,
    GenerationError,
    ImageStudioError,
    NotAuthenticated,
    ValidationError,
)
from .generation import GenerationClient
from .models import Artifact, GenerationRequest, Identity, Mode, QuotaState, parse_modalities
from .persistence import AnonymousAuthContext, ArtifactGateway, AuthContext
from .pipeline import NO_RESULT_MESSAGE, Orchestrator, PipelineOutcome
from .quota import JsonFileQuotaStore, QuotaTracker
from .supabase_backend import (
    SupabaseArtifactRecords,
    SupabaseAuthContext,
    SupabaseObjectStorage,
    SupabaseUsageLedger,
    get_service_client,
    sign_in,
    sign_out,
    sign_up,
)

load_dotenv()

logging.basicConfig(level=config.get_log_level())
logger = logging.getLogger("image-studio")

DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
MAX_GALLERY_PAGE = 200

STATUS_BY_KIND: dict[str, int] = {
    "validation": 400,
    "not_authenticated": 401,
    "not_found": 404,
    "quota_exceeded": 429,
    "configuration": 500,
    "persistence": 500,
    "persistence_partial_failure": 500,
    "generation": 502,
    "decode": 502,
    "quota_unavailable": 503,
}


class ImageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str | None = None
    image_data: str | None = Field(default=None, alias="imageData")
    mime_type: str | None = Field(default=None, alias="mimeType", max_length=100)
    response_modalities: list[str] | None = Field(default=None, alias="responseModalities")


class Credentials(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=6, max_length=200)


class ImagePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str
    mime_type: str = Field(alias="mimeType")
    text: str | None = None


class ArtifactPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    prompt: str
    image_url: str = Field(alias="imageUrl")
    created_at: str | None = Field(default=None, alias="createdAt")


class QuotaPayload(BaseModel):
    identity: str
    used: int
    limit: int
    remaining: int
    window: str


class WarningPayload(BaseModel):
    kind: str
    error: str


class ImageResponse(BaseModel):
    success: bool
    image: ImagePayload | None = None
    artifact: ArtifactPayload | None = None
    quota: QuotaPayload | None = None
    warnings: list[WarningPayload] = Field(default_factory=list)
    message: str | None = None


class GalleryResponse(BaseModel):
    images: list[ArtifactPayload]
    count: int


def artifact_payload(artifact: Artifact) -> ArtifactPayload:
    return ArtifactPayload(
        id=artifact.id,
        prompt=artifact.prompt_text,
        image_url=artifact.storage_ref,
        created_at=artifact.created_at.isoformat() if artifact.created_at else None,
    )


def quota_payload(state: QuotaState) -> QuotaPayload:
    return QuotaPayload(
        identity=state.identity.kind,
        used=state.used_count,
        limit=state.limit,
        remaining=state.remaining,
        window=state.window_scope,
    )


def error_response(error: ImageStudioError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(error.kind, 500)
    headers: dict[str, str] = {}
    if isinstance(error, GenerationError):
        if error.reason == "rate_limited":
            status_code = 429
            headers["Retry-After"] = str(error.retry_after_seconds or config.get_retry_after_seconds())
        elif error.reason == "timeout":
            status_code = 504
    if status_code >= 500:
        logger.warning("Request failed (%s): %s", error.kind, error)
    return JSONResponse(
        status_code=status_code,
        content={"error": error.message, "kind": error.kind},
        headers=headers or None,
    )


def outcome_response(outcome: PipelineOutcome) -> ImageResponse | JSONResponse:
    if outcome.error is not None:
        return error_response(outcome.error)

    response = ImageResponse(
        success=True,
        quota=quota_payload(outcome.quota) if outcome.quota else None,
        warnings=[WarningPayload(kind=warning.kind, error=warning.message) for warning in outcome.warnings],
    )
    if outcome.result is None:
        response.message = NO_RESULT_MESSAGE
        return response

    response.image = ImagePayload(
        data=encode_base64(outcome.result.image_bytes),
        mime_type=outcome.result.mime_type,
        text=outcome.result.caption,
    )
    if outcome.artifact is not None:
        response.artifact = artifact_payload(outcome.artifact)
    return response


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise NotAuthenticated("Authorization header must be 'Bearer <token>'.")
    return token.strip()


def supabase_configured() -> bool:
    return bool(config.get_supabase_url() and config.get_supabase_service_key())


@lru_cache(maxsize=1)
def get_generation_client() -> GenerationClient:
    return GenerationClient()


@lru_cache(maxsize=1)
def get_anonymous_quota_store() -> JsonFileQuotaStore:
    return JsonFileQuotaStore(config.get_anonymous_quota_state_path())


async def get_auth_context(authorization: str | None = Header(default=None)) -> AuthContext:
    token = bearer_token(authorization)
    if token is None:
        return AnonymousAuthContext()
    return SupabaseAuthContext(await get_service_client(), token)


async def get_identity(
    auth: AuthContext = Depends(get_auth_context),
    authorization: str | None = Header(default=None),
    x_device_id: str | None = Header(default=None),
) -> Identity:
    user = await auth.get_current_user()
    if user is not None:
        return Identity.user(user.id)
    if authorization:
        raise NotAuthenticated("Your session has expired. Please sign in again.")
    device_id = (x_device_id or "").strip()
    if not DEVICE_ID_RE.match(device_id):
        raise ValidationError("Anonymous requests need an X-Device-Id header (letters, digits, '-' or '_').")
    return Identity.anonymous(device_id)


async def get_quota_tracker() -> QuotaTracker:
    ledger = None
    if supabase_configured():
        ledger = SupabaseUsageLedger(await get_service_client(), config.get_usage_table())
    return QuotaTracker(
        get_anonymous_quota_store(),
        ledger,
        anonymous_limit=config.get_anonymous_generation_limit(),
        daily_limit=config.get_daily_generation_limit(),
    )


async def get_artifact_gateway(auth: AuthContext = Depends(get_auth_context)) -> ArtifactGateway | None:
    if not supabase_configured():
        return None
    client = await get_service_client()
    bucket = config.get_image_bucket()
    return ArtifactGateway(
        SupabaseObjectStorage(client, bucket),
        SupabaseArtifactRecords(client, config.get_image_table()),
        auth,
        bucket,
    )


async def get_orchestrator(
    generator: GenerationClient = Depends(get_generation_client),
    quota: QuotaTracker = Depends(get_quota_tracker),
    gateway: ArtifactGateway | None = Depends(get_artifact_gateway),
) -> Orchestrator:
    return Orchestrator(
        generator,
        quota,
        gateway,
        timeout_seconds=config.get_pipeline_timeout_seconds(),
        max_source_bytes=config.get_max_source_image_bytes(),
    )


def require_gateway(gateway: ArtifactGateway | None) -> ArtifactGateway:
    if gateway is None:
        raise ConfigurationError("Image history requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY.")
    return gateway


def require_user(identity: Identity) -> Identity:
    if identity.is_anonymous:
        raise NotAuthenticated("Sign in to see your saved images.")
    return identity


def build_generation_request(payload: ImageRequest, mode: Mode) -> GenerationRequest:
    modalities = parse_modalities(payload.response_modalities)
    source_image = None
    if payload.image_data:
        try:
            source_image = to_blob(payload.image_data, payload.mime_type or "image/png")
        except DecodeError as exc:
            raise ValidationError(f"Valid image data is required: {exc}") from exc
    elif mode is Mode.EDIT:
        raise ValidationError("Valid image data is required.")
    return GenerationRequest(
        prompt_text=payload.prompt or "",
        mode=mode,
        source_image=source_image,
        response_modalities=modalities,
    )


app = FastAPI(title="Image Studio Service")


@app.exception_handler(ImageStudioError)
async def image_studio_error_handler(request: Request, exc: ImageStudioError) -> JSONResponse:
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(str(error.get("msg", "")) for error in exc.errors())
    return error_response(ValidationError(f"Invalid request body: {details}"))


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {
        "ok": bool(config.get_gemini_api_key()),
        "gemini_api_key_configured": bool(config.get_gemini_api_key()),
        "gemini_api_backend": config.get_api_backend(),
        "candidate_models": config.get_candidate_models(),
        "http_timeout_ms": config.get_http_timeout_ms(),
        "pipeline_timeout_seconds": config.get_pipeline_timeout_seconds(),
        "supabase_configured": supabase_configured(),
        "image_bucket": config.get_image_bucket(),
        "anonymous_generation_limit": config.get_anonymous_generation_limit(),
        "daily_generation_limit": config.get_daily_generation_limit(),
        "anonymous_quota_state_path": str(config.get_anonymous_quota_state_path()),
    }


@app.get("/api/quota", response_model=QuotaPayload)
async def quota_status(
    identity: Identity = Depends(get_identity),
    quota: QuotaTracker = Depends(get_quota_tracker),
) -> QuotaPayload:
    return quota_payload(await quota.state(identity))


@app.post("/api/generate", response_model=ImageResponse)
async def generate_image(
    payload: ImageRequest,
    identity: Identity = Depends(get_identity),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ImageResponse | JSONResponse:
    request = build_generation_request(payload, Mode.GENERATE)
    return outcome_response(await orchestrator.run(request, identity))


@app.post("/api/edit", response_model=ImageResponse)
async def edit_image(
    payload: ImageRequest,
    identity: Identity = Depends(get_identity),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ImageResponse | JSONResponse:
    request = build_generation_request(payload, Mode.EDIT)
    return outcome_response(await orchestrator.run(request, identity))


@app.get("/api/images", response_model=GalleryResponse)
async def list_images(
    limit: int | None = Query(default=None, ge=1, le=MAX_GALLERY_PAGE),
    identity: Identity = Depends(get_identity),
    gateway: ArtifactGateway | None = Depends(get_artifact_gateway),
) -> GalleryResponse:
    user = require_user(identity)
    gallery = require_gateway(gateway)
    artifacts = await gallery.list(user.id, limit)
    return GalleryResponse(
        images=[artifact_payload(artifact) for artifact in artifacts],
        count=await gallery.count(user.id),
    )


@app.delete("/api/images/{image_id}")
async def delete_image(
    image_id: str,
    identity: Identity = Depends(get_identity),
    gateway: ArtifactGateway | None = Depends(get_artifact_gateway),
) -> dict[str, bool]:
    user = require_user(identity)
    await require_gateway(gateway).delete(image_id, owner_id=user.id)
    return {"success": True}


@app.post("/api/auth/signup")
async def auth_sign_up(credentials: Credentials) -> dict[str, Any]:
    return await sign_up(credentials.email, credentials.password)


@app.post("/api/auth/signin")
async def auth_sign_in(credentials: Credentials) -> dict[str, Any]:
    return await sign_in(credentials.email, credentials.password)


@app.post("/api/auth/signout")
async def auth_sign_out(authorization: str | None = Header(default=None)) -> dict[str, bool]:
    token = bearer_token(authorization)
    if token is None:
        raise NotAuthenticated()
    await sign_out(token)
    return {"success": True}


def serve() -> None:
    uvicorn.run(
        "imagestudio.main:app",
        host=config.get_host(),
        port=config.get_port(),
        log_level=config.get_log_level().lower(),
    )
