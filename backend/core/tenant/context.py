from __future__ import annotations

from fastapi import Header, HTTPException, status

from backend.core.observability.logging import set_tenant_id
from backend.core.observability.metrics import increment_counter
from backend.core.tenant.validator import validate_tenant

# validation reason -> (status, error code)
_REJECTIONS = {
    "missing": (status.HTTP_401_UNAUTHORIZED, "tenant_missing"),
    "malformed": (status.HTTP_401_UNAUTHORIZED, "tenant_malformed"),
    "unknown": (status.HTTP_403_FORBIDDEN, "tenant_unknown"),
}


async def require_tenant(
    tenant_header: str | None = Header(None, alias="X-Tenant-ID", convert_underscores=False)
) -> str:
    """Resolve the calling tenant from X-Tenant-ID and bind it to the logging context."""
    res = validate_tenant(tenant_header)
    if not res.ok:
        increment_counter("tenant_validation_failures_total", labels={"reason": res.reason})
        code, error = _REJECTIONS[res.reason]
        raise HTTPException(status_code=code, detail={"error": error, "detail": res.reason})
    tenant_id = tenant_header.strip().lower()  # type: ignore[union-attr]
    set_tenant_id(tenant_id)
    return tenant_id
