"""Process-wide cache of authority session credentials.

One lock guards one dict keyed by (tenant, service). Entries are immutable
``SessionCredential`` values replaced wholesale; readers never see a
half-written entry. The cache is injected into every session manager so
tests can pass their own instance with a fixed clock.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import increment_counter

from .dto import SessionCredential

logger = get_logger(__name__)


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


def credential_ttl(expires_at: datetime, now: datetime, safety_margin: timedelta) -> timedelta:
    """TTL for a credential the authority says expires at ``expires_at``."""

    ttl = (expires_at - safety_margin) - now
    return ttl if ttl > timedelta(0) else timedelta(0)


class SessionCache:
    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _default_clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], Tuple[SessionCredential, datetime]] = {}
        self._exchange_locks: Dict[Tuple[str, str], threading.Lock] = {}

    def exchange_lock(self, tenant_id: str, service: str) -> threading.Lock:
        """Lock guarding the authentication exchange for (tenant, service)."""
        with self._lock:
            return self._exchange_locks.setdefault((tenant_id, service), threading.Lock())

    def get(self, tenant_id: str, service: str) -> Optional[SessionCredential]:
        key = (tenant_id, service)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                increment_counter("arca_session_cache_total", labels={"result": "miss"})
                return None
            credential, valid_until = entry
            if now >= valid_until or not credential.is_valid(now):
                del self._entries[key]
                increment_counter("arca_session_cache_total", labels={"result": "expired"})
                return None
        increment_counter("arca_session_cache_total", labels={"result": "hit"})
        return credential

    def put(self, tenant_id: str, service: str, credential: SessionCredential, ttl: timedelta) -> None:
        if ttl <= timedelta(0):
            return
        valid_until = self._clock() + ttl
        with self._lock:
            self._entries[(tenant_id, service)] = (credential, valid_until)

    def invalidate(self, tenant_id: str, service: Optional[str] = None) -> int:
        with self._lock:
            if service is not None:
                removed = 1 if self._entries.pop((tenant_id, service), None) else 0
            else:
                keys = [k for k in self._entries if k[0] == tenant_id]
                for k in keys:
                    del self._entries[k]
                removed = len(keys)
        logger.info("session_cache_invalidated", extra={"tenant": tenant_id, "service": service, "removed": removed})
        return removed

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("session_cache_cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
