from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import NamedTuple, Union

from .errors import ValidationError


class Mode(str, Enum):
    GENERATE = "generate"
    EDIT = "edit"


class Modality(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"


DEFAULT_MODALITIES: tuple[Modality, ...] = (Modality.TEXT, Modality.IMAGE)


def parse_modalities(values: list[str] | None) -> tuple[Modality, ...]:
    if not values:
        return DEFAULT_MODALITIES
    ordered: list[Modality] = []
    for value in values:
        normalized = str(value).strip().upper()
        try:
            modality = Modality(normalized)
        except ValueError as exc:
            raise ValidationError(f"Unsupported response modality: {value!r}") from exc
        if modality not in ordered:
            ordered.append(modality)
    return tuple(ordered)


class Blob(NamedTuple):
    data: bytes
    mime_type: str


class TextPart(NamedTuple):
    text: str


class InlineDataPart(NamedTuple):
    mime_type: str
    data: bytes | str


ResponsePart = Union[TextPart, InlineDataPart]


def first_inline_data(parts: list[ResponsePart]) -> InlineDataPart | None:
    for part in parts:
        if isinstance(part, InlineDataPart) and part.data:
            return part
    return None


@dataclass(frozen=True)
class Identity:
    kind: str
    id: str

    @classmethod
    def anonymous(cls, device_id: str) -> Identity:
        return cls(kind="anonymous", id=device_id)

    @classmethod
    def user(cls, user_id: str) -> Identity:
        return cls(kind="user", id=user_id)

    @property
    def is_anonymous(self) -> bool:
        return self.kind == "anonymous"


@dataclass(frozen=True)
class GenerationRequest:
    prompt_text: str
    mode: Mode = Mode.GENERATE
    source_image: Blob | None = None
    response_modalities: tuple[Modality, ...] = DEFAULT_MODALITIES


@dataclass(frozen=True)
class GenerationResult:
    # Base64 text until the pipeline decodes it.
    image_bytes: bytes | str
    mime_type: str
    caption: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class QuotaState:
    identity: Identity
    used_count: int
    limit: int
    window_scope: str

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used_count)

    @property
    def allowed(self) -> bool:
        return self.used_count < self.limit


@dataclass(frozen=True)
class Artifact:
    id: str
    owner_id: str
    prompt_text: str
    storage_ref: str
    created_at: datetime | None
