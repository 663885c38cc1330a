from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Protocol

from .config import parse_non_negative_int
from .errors import QuotaExceeded, QuotaUnavailable
from .models import Identity, QuotaState

logger = logging.getLogger("image-studio.quota")

WINDOW_PER_DAY = "per-day"
WINDOW_LIFETIME = "lifetime-until-reset"


def now_iso(ts: float | None = None) -> str:
    value = ts if ts is not None else time.time()
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(value))


def start_of_utc_day(now: datetime | None = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    return current.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class QuotaStore(Protocol):
    def get(self, device_id: str) -> int: ...

    def set(self, device_id: str, count: int) -> None: ...


class UsageLedger(Protocol):
    async def count_since(self, user_id: str, since: datetime) -> int: ...

    async def append(self, user_id: str) -> None: ...


class MemoryQuotaStore:
    def __init__(self, counts: dict[str, int] | None = None):
        self._counts: dict[str, int] = dict(counts or {})
        self._lock = Lock()

    def get(self, device_id: str) -> int:
        with self._lock:
            return self._counts.get(device_id, 0)

    def set(self, device_id: str, count: int) -> None:
        with self._lock:
            self._counts[device_id] = max(0, int(count))


class JsonFileQuotaStore:
    """Anonymous device counters kept in a small JSON state file."""

    def __init__(self, state_path: Path):
        self._state_path = state_path
        self._lock = Lock()
        self._state = self._load_state()

    def _empty_state(self) -> dict[str, Any]:
        return {
            "version": 1,
            "updated_at": now_iso(),
            "devices": {},
        }

    def _load_state(self) -> dict[str, Any]:
        if not self._state_path.exists():
            return self._empty_state()

        try:
            raw = json.loads(self._state_path.read_text(encoding="utf-8"))
        except Exception as exc:  # pragma: no cover - corrupt on-disk state
            logger.warning("Failed to load quota state '%s': %s", self._state_path, exc)
            return self._empty_state()

        devices = raw.get("devices") if isinstance(raw, dict) else {}
        normalized: dict[str, int] = {}
        if isinstance(devices, dict):
            for device_id, count in devices.items():
                if not isinstance(device_id, str) or not device_id:
                    continue
                parsed = parse_non_negative_int(count, -1)
                if parsed < 0:
                    continue
                normalized[device_id] = parsed

        return {
            "version": 1,
            "updated_at": raw.get("updated_at") if isinstance(raw, dict) else now_iso(),
            "devices": normalized,
        }

    def _persist_locked(self) -> None:
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._state_path.with_suffix(self._state_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._state, ensure_ascii=True, separators=(",", ":")), encoding="utf-8")
        tmp_path.replace(self._state_path)

    def get(self, device_id: str) -> int:
        with self._lock:
            return int(self._state["devices"].get(device_id, 0))

    def set(self, device_id: str, count: int) -> None:
        with self._lock:
            devices = self._state.setdefault("devices", {})
            if count <= 0:
                devices.pop(device_id, None)
            else:
                devices[device_id] = int(count)
            self._state["updated_at"] = now_iso()
            self._persist_locked()


class QuotaTracker:
    """Counts generations per identity against a ceiling.

    Anonymous devices are counted in a local ``QuotaStore`` for their whole lifetime.
    Signed-in users are counted in a ``UsageLedger`` per UTC day; ledger failures propagate as
    ``QuotaUnavailable`` so the caller decides how to degrade.
    """

    def __init__(
        self,
        anonymous_store: QuotaStore,
        usage_ledger: UsageLedger | None = None,
        *,
        anonymous_limit: int,
        daily_limit: int,
    ):
        self._anonymous_store = anonymous_store
        self._usage_ledger = usage_ledger
        self.anonymous_limit = anonymous_limit
        self.daily_limit = daily_limit

    def _require_ledger(self) -> UsageLedger:
        if self._usage_ledger is None:
            raise QuotaUnavailable("Usage tracking for signed-in users is not configured.")
        return self._usage_ledger

    async def _user_count(self, identity: Identity) -> int:
        ledger = self._require_ledger()
        try:
            return await ledger.count_since(identity.id, start_of_utc_day())
        except QuotaUnavailable:
            raise
        except Exception as exc:
            raise QuotaUnavailable() from exc

    async def state(self, identity: Identity) -> QuotaState:
        if identity.is_anonymous:
            return QuotaState(
                identity=identity,
                used_count=self._anonymous_store.get(identity.id),
                limit=self.anonymous_limit,
                window_scope=WINDOW_LIFETIME,
            )
        return QuotaState(
            identity=identity,
            used_count=await self._user_count(identity),
            limit=self.daily_limit,
            window_scope=WINDOW_PER_DAY,
        )

    async def check_allowed(self, identity: Identity) -> bool:
        return (await self.state(identity)).allowed

    async def ensure_allowed(self, identity: Identity) -> QuotaState:
        current = await self.state(identity)
        if not current.allowed:
            raise QuotaExceeded(identity.kind, current.used_count, current.limit)
        return current

    async def record_usage(self, identity: Identity) -> QuotaState:
        if identity.is_anonymous:
            used = self._anonymous_store.get(identity.id) + 1
            self._anonymous_store.set(identity.id, used)
            return QuotaState(identity, used, self.anonymous_limit, WINDOW_LIFETIME)

        used = await self._user_count(identity)
        try:
            await self._require_ledger().append(identity.id)
        except Exception as exc:
            raise QuotaUnavailable("Usage could not be recorded.") from exc
        return QuotaState(identity, used + 1, self.daily_limit, WINDOW_PER_DAY)

    def reset(self, identity: Identity) -> None:
        if not identity.is_anonymous:
            raise ValueError("Only anonymous device counters can be reset locally")
        self._anonymous_store.set(identity.id, 0)
        logger.info("Reset anonymous quota for device %s", identity.id)
