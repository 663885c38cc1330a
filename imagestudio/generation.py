from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from google import genai
from google.genai import types
from google.genai.errors import ClientError

from . import config
from .errors import ConfigurationError, GenerationError
from .models import (
    DEFAULT_MODALITIES,
    GenerationResult,
    InlineDataPart,
    Modality,
    ResponsePart,
    TextPart,
    first_inline_data,
)

logger = logging.getLogger("image-studio.generation")

DEFAULT_INLINE_MIME_TYPE = "image/png"


@lru_cache(maxsize=16)
def get_api_key_client(api_key: str, backend: str, timeout_ms: int) -> genai.Client:
    # google-genai expects timeout in milliseconds.
    http_options = types.HttpOptions(timeout=timeout_ms)
    if backend == "gemini":
        return genai.Client(api_key=api_key, http_options=http_options)
    return genai.Client(vertexai=True, api_key=api_key, http_options=http_options)


def build_generate_config(backend: str, modalities: tuple[Modality, ...]) -> types.GenerateContentConfig:
    image_config_kwargs: dict[str, Any] = {
        "aspect_ratio": config.get_aspect_ratio(),
    }
    # Gemini Developer API currently rejects output_mime_type.
    if backend != "gemini":
        image_config_kwargs["output_mime_type"] = DEFAULT_INLINE_MIME_TYPE

    return types.GenerateContentConfig(
        temperature=1,
        top_p=0.95,
        max_output_tokens=config.get_max_output_tokens(),
        automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        response_modalities=[modality.value for modality in modalities],
        image_config=types.ImageConfig(**image_config_kwargs),
    )


def response_parts(response: Any) -> list[ResponsePart]:
    """Flatten the first candidate of a generate_content response into typed parts."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    content = getattr(candidates[0], "content", None)
    parts: list[ResponsePart] = []
    for part in getattr(content, "parts", None) or []:
        inline_data = getattr(part, "inline_data", None)
        raw_data = getattr(inline_data, "data", None)
        if raw_data:
            mime_type = getattr(inline_data, "mime_type", None) or DEFAULT_INLINE_MIME_TYPE
            parts.append(InlineDataPart(mime_type=mime_type, data=raw_data))
            continue
        text = getattr(part, "text", None)
        if text:
            parts.append(TextPart(text=text))
    return parts


def extract_result(response: Any, model: str | None = None) -> GenerationResult | None:
    try:
        parts = response_parts(response)
    except (AttributeError, TypeError, IndexError) as exc:
        raise GenerationError("Model response could not be parsed", model=model) from exc

    texts = [part.text for part in parts if isinstance(part, TextPart)]
    caption = "".join(texts) or None
    inline = first_inline_data(parts)
    if inline is None:
        block_reason = getattr(getattr(response, "prompt_feedback", None), "block_reason", None)
        if block_reason:
            logger.warning("Prompt blocked by safety filter: %s", block_reason)
        elif caption:
            logger.warning("Model returned text but no image output: %s", caption[:500])
        return None

    # Base64 text payloads are decoded by the pipeline.
    image_bytes = inline.data if isinstance(inline.data, str) else bytes(inline.data)
    return GenerationResult(image_bytes=image_bytes, mime_type=inline.mime_type, caption=caption, model=model)


def _status_code(error: Exception) -> int | None:
    code = getattr(error, "code", None)
    if isinstance(code, int):
        return code
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None)


def is_model_access_error(error: Exception) -> bool:
    if isinstance(error, ClientError) and _status_code(error) in {400, 403, 404}:
        text = str(error).lower()
        access_markers = [
            "publisher model",
            "not found",
            "not_found",
            "does not have access",
            "permission denied",
        ]
        return any(marker in text for marker in access_markers)
    return False


def is_rate_limit_error(error: Exception) -> bool:
    if isinstance(error, ClientError):
        return _status_code(error) == 429
    text = str(error).lower()
    return "resource_exhausted" in text or "429" in text


class GenerationClient:
    """Gemini image generation and editing.

    Returns ``None`` when the model answers without an inline image, and raises
    ``GenerationError`` for transport, auth or malformed-response failures.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        models: list[str] | None = None,
        client: genai.Client | None = None,
        backend: str | None = None,
    ):
        self._api_key = api_key
        self._models = models
        self._client = client
        self._backend = backend

    @property
    def models(self) -> list[str]:
        return list(self._models) if self._models else config.get_candidate_models()

    def _get_client(self) -> tuple[genai.Client, str]:
        if self._client is not None:
            return self._client, self._backend or "gemini"
        api_key = (self._api_key or config.get_gemini_api_key()).strip()
        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is not defined in environment variables")
        backend = self._backend or config.resolve_api_backend(api_key)
        return get_api_key_client(api_key, backend, config.get_http_timeout_ms()), backend

    async def generate(
        self,
        prompt_text: str,
        modalities: tuple[Modality, ...] = DEFAULT_MODALITIES,
    ) -> GenerationResult | None:
        parts = [types.Part.from_text(text=prompt_text)]
        return await self._generate_content(parts, modalities)

    async def edit(self, prompt_text: str, source_bytes: bytes, mime_type: str = "image/png") -> GenerationResult | None:
        parts = [
            types.Part.from_text(text=prompt_text),
            types.Part.from_bytes(data=source_bytes, mime_type=mime_type),
        ]
        return await self._generate_content(parts, DEFAULT_MODALITIES)

    async def _generate_content(
        self,
        parts: list[types.Part],
        modalities: tuple[Modality, ...],
    ) -> GenerationResult | None:
        client, backend = self._get_client()
        models = self.models
        generate_config = build_generate_config(backend, modalities)
        last_error: Exception | None = None

        for model_name in models:
            try:
                response = await client.aio.models.generate_content(
                    model=model_name,
                    contents=[types.Content(role="user", parts=parts)],
                    config=generate_config,
                )
            except Exception as exc:
                last_error = exc
                if is_rate_limit_error(exc):
                    logger.warning("Model '%s' hit upstream rate limit: %s", model_name, exc)
                    raise GenerationError(
                        f"Model '{model_name}' hit upstream rate limit. Please wait and retry.",
                        reason="rate_limited",
                        model=model_name,
                        retry_after_seconds=config.get_retry_after_seconds(),
                    ) from exc
                if is_model_access_error(exc):
                    logger.warning("Model '%s' unavailable: %s", model_name, exc)
                    continue
                logger.exception("Gemini generate_content call failed for model '%s'", model_name)
                raise GenerationError(f"Gemini request failed: {exc}", model=model_name) from exc

            if model_name != models[0]:
                logger.warning("Primary model '%s' unavailable; used fallback model '%s'", models[0], model_name)
            return extract_result(response, model=model_name)

        raise GenerationError(
            f"No usable Gemini image model found in candidates {models}: {last_error}",
            reason="no_model",
        ) from last_error
