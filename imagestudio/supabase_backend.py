from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from supabase import AsyncClient, AsyncClientOptions, acreate_client

from . import config
from .errors import ConfigurationError, NotAuthenticated
from .persistence import CACHE_CONTROL_SECONDS, AuthSession, AuthUser

logger = logging.getLogger("image-studio.supabase")

_service_client: AsyncClient | None = None


def _client_options() -> AsyncClientOptions:
    return AsyncClientOptions(persist_session=False, auto_refresh_token=False)


async def create_supabase_client(key: str | None = None) -> AsyncClient:
    url = config.get_supabase_url()
    api_key = key if key is not None else config.get_supabase_service_key()
    if not url or not api_key:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    return await acreate_client(url, api_key, options=_client_options())


async def get_service_client() -> AsyncClient:
    global _service_client
    if _service_client is None:
        _service_client = await create_supabase_client()
    return _service_client


class SupabaseObjectStorage:
    def __init__(self, client: AsyncClient, bucket: str):
        self._client = client
        self._bucket = bucket

    async def upload(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str = CACHE_CONTROL_SECONDS,
        upsert: bool = False,
    ) -> None:
        await self._client.storage.from_(self._bucket).upload(
            key,
            data,
            {
                "content-type": content_type,
                "cache-control": cache_control,
                "upsert": "true" if upsert else "false",
            },
        )

    async def get_public_url(self, key: str) -> str:
        return await self._client.storage.from_(self._bucket).get_public_url(key)

    async def remove(self, keys: list[str]) -> None:
        await self._client.storage.from_(self._bucket).remove(keys)

    async def list(self, prefix: str) -> list[str]:
        entries = await self._client.storage.from_(self._bucket).list(prefix)
        return [f"{prefix}/{entry['name']}" for entry in entries or [] if entry.get("name")]


class SupabaseArtifactRecords:
    def __init__(self, client: AsyncClient, table: str):
        self._client = client
        self._table = table

    async def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.table(self._table).insert(row).execute()
        rows = response.data or []
        if not rows:
            raise RuntimeError(f"Insert into '{self._table}' returned no row")
        return rows[0]

    async def fetch(self, record_id: str) -> dict[str, Any] | None:
        response = await self._client.table(self._table).select("*").eq("id", record_id).limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None

    async def list_for_owner(self, owner_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        query = self._client.table(self._table).select("*").eq("user_id", owner_id).order("created_at", desc=True)
        if limit is not None:
            query = query.limit(limit)
        response = await query.execute()
        return response.data or []

    async def count_for_owner(self, owner_id: str) -> int:
        response = await self._client.table(self._table).select("id", count="exact").eq("user_id", owner_id).execute()
        return response.count or 0

    async def delete(self, record_id: str) -> None:
        await self._client.table(self._table).delete().eq("id", record_id).execute()


class SupabaseUsageLedger:
    """One row per successful generation; the daily count is a range query."""

    def __init__(self, client: AsyncClient, table: str):
        self._client = client
        self._table = table

    async def count_since(self, user_id: str, since: datetime) -> int:
        response = await (
            self._client.table(self._table)
            .select("id", count="exact")
            .eq("user_id", user_id)
            .gte("created_at", since.isoformat())
            .execute()
        )
        return response.count or 0

    async def append(self, user_id: str) -> None:
        await self._client.table(self._table).insert({"user_id": user_id}).execute()


class SupabaseAuthContext:
    """Resolves the caller from a bearer access token."""

    def __init__(self, client: AsyncClient, access_token: str | None):
        self._client = client
        self._access_token = (access_token or "").strip() or None
        self._user: AuthUser | None = None
        self._resolved = False

    async def get_current_user(self) -> AuthUser | None:
        if self._resolved:
            return self._user
        self._resolved = True
        if not self._access_token:
            return None
        try:
            response = await self._client.auth.get_user(self._access_token)
        except Exception as exc:
            logger.info("Access token rejected: %s", exc)
            return None
        user = getattr(response, "user", None)
        if user is None:
            return None
        self._user = AuthUser(id=str(user.id), email=getattr(user, "email", None))
        return self._user

    async def get_session(self) -> AuthSession | None:
        user = await self.get_current_user()
        if user is None or self._access_token is None:
            return None
        return AuthSession(access_token=self._access_token, user=user)


def _session_payload(response: Any) -> dict[str, Any]:
    user = getattr(response, "user", None)
    session = getattr(response, "session", None)
    return {
        "user": {"id": str(user.id), "email": getattr(user, "email", None)} if user else None,
        "access_token": getattr(session, "access_token", None),
        "refresh_token": getattr(session, "refresh_token", None),
        "expires_at": getattr(session, "expires_at", None),
    }


async def sign_up(email: str, password: str) -> dict[str, Any]:
    # A throwaway client keeps the signed-in session off the shared service client.
    client = await create_supabase_client(config.get_supabase_anon_key())
    try:
        response = await client.auth.sign_up({"email": email, "password": password})
    except Exception as exc:
        raise NotAuthenticated(f"Sign up failed: {exc}") from exc
    finally:
        await client.auth.close()
    return _session_payload(response)


async def sign_in(email: str, password: str) -> dict[str, Any]:
    client = await create_supabase_client(config.get_supabase_anon_key())
    try:
        response = await client.auth.sign_in_with_password({"email": email, "password": password})
    except Exception as exc:
        raise NotAuthenticated(f"Sign in failed: {exc}") from exc
    finally:
        await client.auth.close()
    return _session_payload(response)


async def sign_out(access_token: str) -> None:
    client = await get_service_client()
    try:
        await client.auth.admin.sign_out(access_token)
    except Exception as exc:
        raise NotAuthenticated(f"Sign out failed: {exc}") from exc
