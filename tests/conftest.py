"""Shared fixtures and in-memory collaborators for the image pipeline tests."""

from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

import pytest
from PIL import Image

from imagestudio.models import GenerationResult
from imagestudio.persistence import ArtifactGateway, AuthSession, AuthUser
from imagestudio.quota import MemoryQuotaStore, QuotaTracker

BUCKET = "images"
PUBLIC_PREFIX = "https://demo.supabase.co/storage/v1/object/public/images/"


def build_test_png(size: int = 16) -> bytes:
    image = Image.new("RGB", (size, size))
    pixels = image.load()
    for y in range(size):
        for x in range(size):
            shade = int((x + y) * 255 / (2 * size)) % 256
            pixels[x, y] = (shade, 0, 255 - shade)

    with io.BytesIO() as buffer:
        image.save(buffer, format="PNG")
        return buffer.getvalue()


def make_response(*parts: Any, block_reason: str | None = None) -> SimpleNamespace:
    """Shape-compatible stand-in for a google-genai GenerateContentResponse."""
    candidates = [SimpleNamespace(content=SimpleNamespace(parts=list(parts)), finish_reason="STOP")] if parts else []
    return SimpleNamespace(
        candidates=candidates,
        prompt_feedback=SimpleNamespace(block_reason=block_reason),
    )


def text_part(text: str) -> SimpleNamespace:
    return SimpleNamespace(text=text, inline_data=None)


def image_part(data: bytes | str, mime_type: str = "image/png") -> SimpleNamespace:
    return SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type))


class FakeAuth:
    def __init__(self, user: AuthUser | None = None):
        self.user = user

    async def get_current_user(self) -> AuthUser | None:
        return self.user

    async def get_session(self) -> AuthSession | None:
        if self.user is None:
            return None
        return AuthSession(access_token="token", user=self.user)


class FakeStorage:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.uploads: list[dict[str, Any]] = []
        self.removed: list[str] = []
        self.fail_upload = False
        self.fail_remove = False
        self.fail_public_url = False

    async def upload(self, key, data, *, content_type, cache_control="3600", upsert=False):
        if self.fail_upload:
            raise RuntimeError("storage unavailable")
        if key in self.objects and not upsert:
            raise RuntimeError("The resource already exists")
        self.uploads.append(
            {"key": key, "content_type": content_type, "cache_control": cache_control, "upsert": upsert}
        )
        self.objects[key] = data

    async def get_public_url(self, key):
        if self.fail_public_url:
            raise RuntimeError("url service down")
        return PUBLIC_PREFIX + key

    async def remove(self, keys):
        if self.fail_remove:
            raise RuntimeError("remove failed")
        for key in keys:
            self.removed.append(key)
            self.objects.pop(key, None)

    async def list(self, prefix):
        return [key for key in self.objects if key.startswith(prefix + "/")]


class FakeRecords:
    def __init__(self):
        self.rows: dict[str, dict[str, Any]] = {}
        self.fail_insert = False
        self.fail_delete = False
        self._next_id = 1
        self._clock = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def add(self, **row: Any) -> dict[str, Any]:
        record_id = str(self._next_id)
        self._next_id += 1
        self._clock += timedelta(minutes=1)
        stored = {"id": record_id, "created_at": self._clock.isoformat(), **row}
        self.rows[record_id] = stored
        return stored

    async def insert(self, row):
        if self.fail_insert:
            raise RuntimeError("insert rejected")
        return self.add(**row)

    async def fetch(self, record_id):
        return self.rows.get(record_id)

    async def list_for_owner(self, owner_id, limit=None):
        rows = [row for row in self.rows.values() if row["user_id"] == owner_id]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return rows if limit is None else rows[:limit]

    async def count_for_owner(self, owner_id):
        return len([row for row in self.rows.values() if row["user_id"] == owner_id])

    async def delete(self, record_id):
        if self.fail_delete:
            raise RuntimeError("delete rejected")
        self.rows.pop(record_id, None)


class FakeLedger:
    def __init__(self):
        self.entries: list[tuple[str, datetime]] = []
        self.fail = False

    def seed(self, user_id: str, count: int, when: datetime | None = None) -> None:
        stamp = when or datetime.now(timezone.utc)
        self.entries.extend((user_id, stamp) for _ in range(count))

    async def count_since(self, user_id, since):
        if self.fail:
            raise ConnectionError("ledger unreachable")
        return len([1 for owner, stamp in self.entries if owner == user_id and stamp >= since])

    async def append(self, user_id):
        if self.fail:
            raise ConnectionError("ledger unreachable")
        self.entries.append((user_id, datetime.now(timezone.utc)))


class FakeGenerator:
    def __init__(self, result: GenerationResult | None = None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls: list[tuple[Any, ...]] = []

    async def generate(self, prompt_text, modalities):
        self.calls.append(("generate", prompt_text, modalities))
        if self.error is not None:
            raise self.error
        return self.result

    async def edit(self, prompt_text, source_bytes, mime_type):
        self.calls.append(("edit", prompt_text, source_bytes, mime_type))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def png_bytes() -> bytes:
    return build_test_png()


@pytest.fixture
def generation_result(png_bytes) -> GenerationResult:
    return GenerationResult(image_bytes=png_bytes, mime_type="image/png", caption="A red bicycle.")


@pytest.fixture
def user() -> AuthUser:
    return AuthUser(id="user-1", email="rider@example.com")


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def records() -> FakeRecords:
    return FakeRecords()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def anonymous_store() -> MemoryQuotaStore:
    return MemoryQuotaStore()


@pytest.fixture
def tracker(anonymous_store, ledger) -> QuotaTracker:
    return QuotaTracker(anonymous_store, ledger, anonymous_limit=5, daily_limit=30)


@pytest.fixture
def gateway(storage, records, user) -> ArtifactGateway:
    return ArtifactGateway(storage, records, FakeAuth(user), BUCKET)
