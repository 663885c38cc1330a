from __future__ import annotations

import os
from pathlib import Path
from typing import Any

DEFAULT_MODEL = "gemini-2.5-flash-image"
DEFAULT_API_BACKEND = "auto"
DEFAULT_HTTP_TIMEOUT_MS = 105_000
DEFAULT_MAX_OUTPUT_TOKENS = 4096
DEFAULT_ASPECT_RATIO = "1:1"
DEFAULT_RETRY_AFTER_SECONDS = 30
DEFAULT_IMAGE_BUCKET = "images"
DEFAULT_IMAGE_TABLE = "generated_images"
DEFAULT_USAGE_TABLE = "generation_usage"
DEFAULT_ANONYMOUS_GENERATION_LIMIT = 5
DEFAULT_DAILY_GENERATION_LIMIT = 30
DEFAULT_ANONYMOUS_QUOTA_STATE_PATH = ".temp/anonymous-quota.json"
DEFAULT_MAX_SOURCE_IMAGE_BYTES = 20 * 1024 * 1024
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def parse_non_negative_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    if parsed < 0:
        return fallback
    return parsed


def parse_positive_int(value: Any, fallback: int) -> int:
    parsed = parse_non_negative_int(value, fallback)
    if parsed == 0:
        return fallback
    return parsed


def parse_name_list(raw_value: str) -> list[str]:
    ordered: list[str] = []
    for token in raw_value.split(","):
        name = token.strip()
        if name and name not in ordered:
            ordered.append(name)
    return ordered


def get_log_level() -> str:
    return (os.environ.get("IMAGE_STUDIO_LOG_LEVEL") or DEFAULT_LOG_LEVEL).strip().upper() or DEFAULT_LOG_LEVEL


def get_gemini_api_key() -> str:
    return (os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY") or "").strip()


def get_gemini_model() -> str:
    return (os.environ.get("GEMINI_MODEL") or DEFAULT_MODEL).strip() or DEFAULT_MODEL


def get_model_fallbacks() -> list[str]:
    return parse_name_list(os.environ.get("GEMINI_MODEL_FALLBACKS") or "")


def get_candidate_models(preferred_model: str | None = None) -> list[str]:
    ordered: list[str] = []
    for model_name in [(preferred_model or "").strip(), get_gemini_model(), *get_model_fallbacks()]:
        if model_name and model_name not in ordered:
            ordered.append(model_name)
    return ordered


def get_api_backend() -> str:
    raw = (os.environ.get("GEMINI_API_BACKEND") or DEFAULT_API_BACKEND).strip().lower()
    if raw in {"auto", "gemini", "vertex"}:
        return raw
    return DEFAULT_API_BACKEND


def resolve_api_backend(api_key: str) -> str:
    configured = get_api_backend()
    if configured in {"gemini", "vertex"}:
        return configured
    # Gemini Developer API keys start with AIza.
    return "gemini" if api_key.startswith("AIza") else "vertex"


def get_http_timeout_ms() -> int:
    return parse_positive_int(os.environ.get("GEMINI_HTTP_TIMEOUT_MS"), DEFAULT_HTTP_TIMEOUT_MS)


def get_max_output_tokens() -> int:
    return parse_positive_int(os.environ.get("GEMINI_MAX_OUTPUT_TOKENS"), DEFAULT_MAX_OUTPUT_TOKENS)


def get_aspect_ratio() -> str:
    return (os.environ.get("GEMINI_ASPECT_RATIO") or DEFAULT_ASPECT_RATIO).strip() or DEFAULT_ASPECT_RATIO


def get_retry_after_seconds() -> int:
    return parse_positive_int(os.environ.get("GEMINI_RETRY_AFTER_SECONDS"), DEFAULT_RETRY_AFTER_SECONDS)


def get_pipeline_timeout_seconds() -> float | None:
    raw = os.environ.get("PIPELINE_TIMEOUT_SECONDS")
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if value <= 0:
        return None
    return value


def get_supabase_url() -> str:
    return (os.environ.get("SUPABASE_URL") or "").strip()


def get_supabase_service_key() -> str:
    return (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()


def get_supabase_anon_key() -> str:
    return (os.environ.get("SUPABASE_ANON_KEY") or get_supabase_service_key()).strip()


def get_image_bucket() -> str:
    return (os.environ.get("IMAGE_BUCKET") or DEFAULT_IMAGE_BUCKET).strip() or DEFAULT_IMAGE_BUCKET


def get_image_table() -> str:
    return (os.environ.get("IMAGE_TABLE") or DEFAULT_IMAGE_TABLE).strip() or DEFAULT_IMAGE_TABLE


def get_usage_table() -> str:
    return (os.environ.get("USAGE_TABLE") or DEFAULT_USAGE_TABLE).strip() or DEFAULT_USAGE_TABLE


def get_anonymous_generation_limit() -> int:
    return parse_non_negative_int(os.environ.get("ANONYMOUS_GENERATION_LIMIT"), DEFAULT_ANONYMOUS_GENERATION_LIMIT)


def get_daily_generation_limit() -> int:
    return parse_non_negative_int(os.environ.get("DAILY_GENERATION_LIMIT"), DEFAULT_DAILY_GENERATION_LIMIT)


def get_anonymous_quota_state_path() -> Path:
    raw = (os.environ.get("ANONYMOUS_QUOTA_STATE_PATH") or DEFAULT_ANONYMOUS_QUOTA_STATE_PATH).strip()
    path = Path(raw)
    if not path.is_absolute():
        path = Path.cwd() / path
    return path


def get_max_source_image_bytes() -> int:
    return parse_positive_int(os.environ.get("MAX_SOURCE_IMAGE_BYTES"), DEFAULT_MAX_SOURCE_IMAGE_BYTES)


def get_host() -> str:
    return (os.environ.get("IMAGE_STUDIO_HOST") or DEFAULT_HOST).strip() or DEFAULT_HOST


def get_port() -> int:
    return parse_positive_int(os.environ.get("IMAGE_STUDIO_PORT"), DEFAULT_PORT)
