from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from backend.core.config import settings

Reason = Literal["missing", "malformed", "unknown", "ok"]


UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


@dataclass
class TenantValidationResult:
    ok: bool
    reason: Reason


def _allowlist() -> set[str]:
    raw = (settings.TENANT_ALLOWLIST or "").strip()
    return {t.strip().lower() for t in raw.split(",") if UUID_RE.match(t.strip())}


def validate_tenant(uuid_str: str | None) -> TenantValidationResult:
    """Tenant ids are UUIDs; outside development they must be allowlisted."""
    if not uuid_str:
        return TenantValidationResult(ok=False, reason="missing")
    candidate = uuid_str.strip().lower()
    if not UUID_RE.match(candidate):
        return TenantValidationResult(ok=False, reason="malformed")
    allow = _allowlist()
    # In development mode, allow any valid UUID if allowlist is empty
    if not allow and settings.app_env == "development":
        return TenantValidationResult(ok=True, reason="ok")
    if candidate not in allow:
        return TenantValidationResult(ok=False, reason="unknown")
    return TenantValidationResult(ok=True, reason="ok")
