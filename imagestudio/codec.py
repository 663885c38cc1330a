from __future__ import annotations

import base64
import binascii
import re

from .errors import DecodeError, MalformedInput
from .models import Blob

DEFAULT_MIME_TYPE = "image/png"

_WHITESPACE_RE = re.compile(r"\s+")
_NON_BASE64_RE = re.compile(r"[^A-Za-z0-9+/=]")


def _b64decode(payload: str) -> bytes:
    return base64.b64decode(payload, validate=True)


def _mime_from_header(header: str) -> str:
    if not header.startswith("data:"):
        raise MalformedInput("Data URI must start with 'data:'")
    if not header.endswith(";base64"):
        raise MalformedInput("Data URI must declare ';base64' encoding")
    # MIME parameters such as charset stay on the type.
    mime_type = header[len("data:"):-len(";base64")].strip()
    if not mime_type:
        raise MalformedInput("Data URI is missing its MIME type")
    return mime_type


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def encode_data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{encode_base64(data)}"


def decode_data_uri(uri: str) -> tuple[bytes, str]:
    header, sep, payload = uri.partition(",")
    if not sep:
        raise MalformedInput("Data URI is missing the ',' separator")
    mime_type = _mime_from_header(header)
    try:
        return _b64decode(payload), mime_type
    except (ValueError, binascii.Error) as exc:
        raise DecodeError(f"Data URI payload is not valid base64: {exc}") from exc


def to_blob(value: str, declared_mime_type: str = DEFAULT_MIME_TYPE) -> Blob:
    """Decode a bare base64 string or a data URI into a Blob.

    Whitespace is always stripped before decoding. If strict decoding still fails, every
    character outside the base64 alphabet is dropped and decoding is retried once.
    """
    mime_type = declared_mime_type or DEFAULT_MIME_TYPE
    payload = value
    if "," in value:
        header, payload = value.split(",", 1)
        if header.startswith("data:"):
            mime_type = _mime_from_header(header)

    cleaned = _WHITESPACE_RE.sub("", payload)
    try:
        data = _b64decode(cleaned)
    except (ValueError, binascii.Error) as exc:
        stripped = _NON_BASE64_RE.sub("", cleaned)
        try:
            data = _b64decode(stripped)
        except (ValueError, binascii.Error):
            raise DecodeError(f"Failed to convert base64 to binary: {exc}") from exc
    if not data:
        raise DecodeError("Failed to convert base64 to binary: no image data")
    return Blob(data, mime_type)
