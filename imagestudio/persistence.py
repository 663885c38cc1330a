from __future__ import annotations

import logging
import re
import time
import uuid
from datetime import datetime
from typing import Any, NamedTuple, Protocol
from urllib.parse import unquote

from .errors import ArtifactNotFound, NotAuthenticated, PersistenceError, PersistencePartialFailure
from .models import Artifact

logger = logging.getLogger("image-studio.persistence")

CACHE_CONTROL_SECONDS = "3600"


class AuthUser(NamedTuple):
    id: str
    email: str | None = None


class AuthSession(NamedTuple):
    access_token: str
    user: AuthUser


class AuthContext(Protocol):
    async def get_current_user(self) -> AuthUser | None: ...

    async def get_session(self) -> AuthSession | None: ...


class AnonymousAuthContext:
    async def get_current_user(self) -> AuthUser | None:
        return None

    async def get_session(self) -> AuthSession | None:
        return None


class ObjectStorage(Protocol):
    async def upload(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str = CACHE_CONTROL_SECONDS,
        upsert: bool = False,
    ) -> None: ...

    async def get_public_url(self, key: str) -> str: ...

    async def remove(self, keys: list[str]) -> None: ...

    async def list(self, prefix: str) -> list[str]: ...


class ArtifactRecords(Protocol):
    async def insert(self, row: dict[str, Any]) -> dict[str, Any]: ...

    async def fetch(self, record_id: str) -> dict[str, Any] | None: ...

    async def list_for_owner(self, owner_id: str, limit: int | None = None) -> list[dict[str, Any]]: ...

    async def count_for_owner(self, owner_id: str) -> int: ...

    async def delete(self, record_id: str) -> None: ...


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Unparseable created_at value: %r", value)
        return None


def artifact_from_row(row: dict[str, Any]) -> Artifact:
    return Artifact(
        id=str(row["id"]),
        owner_id=str(row.get("user_id") or ""),
        prompt_text=str(row.get("prompt") or ""),
        storage_ref=str(row.get("image_url") or ""),
        created_at=parse_timestamp(row.get("created_at")),
    )


def file_extension(mime_type: str) -> str:
    subtype = mime_type.split("/", 1)[1] if "/" in mime_type else ""
    subtype = subtype.split(";", 1)[0].split("+", 1)[0].strip()
    return subtype or "png"


def build_storage_key(owner_id: str, mime_type: str) -> str:
    # Millisecond timestamp plus a random suffix, so two saves in the same millisecond differ.
    filename = f"{owner_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.{file_extension(mime_type)}"
    return f"{owner_id}/{filename}"


def storage_key_from_url(url: str, bucket: str, owner_id: str) -> str:
    match = re.search(rf"/storage/v1/object/public/{re.escape(bucket)}/(.+)", url)
    if match and match.group(1):
        return unquote(match.group(1).split("?", 1)[0])
    filename = url.split("?", 1)[0].rsplit("/", 1)[-1]
    return f"{owner_id}/{filename}"


class ArtifactGateway:
    def __init__(self, storage: ObjectStorage, records: ArtifactRecords, auth: AuthContext, bucket: str):
        self._storage = storage
        self._records = records
        self._auth = auth
        self.bucket = bucket

    async def save(self, image_bytes: bytes, mime_type: str, prompt_text: str, owner_id: str) -> Artifact:
        session = await self._auth.get_session()
        if session is None:
            raise NotAuthenticated()

        storage_key = build_storage_key(owner_id, mime_type)
        try:
            await self._storage.upload(
                storage_key,
                image_bytes,
                content_type=mime_type,
                cache_control=CACHE_CONTROL_SECONDS,
                upsert=False,
            )
        except Exception as exc:
            logger.warning("Storage upload failed for '%s': %s", storage_key, exc)
            raise PersistenceError(f"Failed to upload image: {exc}") from exc

        try:
            public_url = await self._storage.get_public_url(storage_key)
        except Exception as exc:
            raise PersistencePartialFailure(
                f"Failed to get public URL for uploaded image: {exc}",
                storage_key=storage_key,
            ) from exc
        if not public_url:
            raise PersistencePartialFailure("Failed to get public URL for uploaded image", storage_key=storage_key)

        try:
            row = await self._records.insert(
                {
                    "user_id": owner_id,
                    "prompt": prompt_text,
                    "image_url": public_url,
                }
            )
        except Exception as exc:
            logger.warning("Record insert failed after upload of '%s': %s", storage_key, exc)
            raise PersistencePartialFailure(f"Failed to record saved image: {exc}", storage_key=storage_key) from exc

        artifact = artifact_from_row(row)
        logger.info("Saved artifact %s for owner %s at '%s'", artifact.id, owner_id, storage_key)
        return artifact

    async def list(self, owner_id: str, limit: int | None = None) -> list[Artifact]:
        try:
            rows = await self._records.list_for_owner(owner_id, limit)
        except Exception as exc:
            raise PersistenceError(f"Failed to list images: {exc}") from exc
        artifacts = [artifact_from_row(row) for row in rows]
        # Newest first regardless of store ordering.
        artifacts.sort(key=lambda item: item.created_at.timestamp() if item.created_at else 0.0, reverse=True)
        return artifacts

    async def count(self, owner_id: str) -> int:
        try:
            return await self._records.count_for_owner(owner_id)
        except Exception as exc:
            raise PersistenceError(f"Failed to count images: {exc}") from exc

    async def delete(self, artifact_id: str, owner_id: str | None = None) -> None:
        try:
            row = await self._records.fetch(artifact_id)
        except Exception as exc:
            raise PersistenceError(f"Failed to fetch image record: {exc}") from exc
        if row is None:
            raise ArtifactNotFound()
        artifact = artifact_from_row(row)
        if owner_id is not None and artifact.owner_id != owner_id:
            raise ArtifactNotFound()

        storage_key = storage_key_from_url(artifact.storage_ref, self.bucket, artifact.owner_id)
        await self._remove_blob(storage_key, artifact.owner_id)

        # The record goes regardless of the storage outcome.
        try:
            await self._records.delete(artifact_id)
        except Exception as exc:
            raise PersistenceError(f"Failed to delete image record: {exc}") from exc
        logger.info("Deleted artifact %s", artifact_id)

    async def _remove_blob(self, storage_key: str, owner_id: str) -> None:
        try:
            existing = await self._storage.list(owner_id)
        except Exception as exc:
            logger.warning("Could not list storage folder '%s': %s", owner_id, exc)
        else:
            if storage_key not in existing:
                logger.warning("Storage object '%s' not found before delete", storage_key)

        try:
            await self._storage.remove([storage_key])
            return
        except Exception as exc:
            logger.warning("Failed to delete '%s' from bucket '%s': %s", storage_key, self.bucket, exc)

        if "/" in storage_key:
            return
        alternate_key = f"{owner_id}/{storage_key}"
        try:
            await self._storage.remove([alternate_key])
        except Exception as exc:
            logger.warning("Alternate path deletion of '%s' also failed: %s", alternate_key, exc)
