"""Health and readiness endpoints."""

from importlib import metadata
from typing import Any

from fastapi import APIRouter
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from backend.core.config import settings

router = APIRouter()

DISTRIBUTION = "arca-invoicing"


def get_version() -> str:
    """Installed distribution version, ``dev`` from a source checkout."""
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return "dev"


def check_database() -> str:
    """Check database connectivity with a light query."""
    try:
        engine = create_engine(settings.database_url, future=True)
        with engine.connect() as conn:
            value = conn.execute(text("SELECT 1")).scalar()
        engine.dispose()
        return "OK" if value == 1 else "FAIL"
    except SQLAlchemyError:
        return "FAIL"


def check_vault() -> str:
    """The credential vault key must be present and well-formed."""
    from agents.arca.errors import VaultError
    from agents.arca.vault import CredentialVault

    try:
        CredentialVault.from_settings()
    except VaultError:
        return "FAIL"
    return "OK"


@router.get("/health/ready")
def readiness_check() -> dict[str, Any]:
    """Readiness endpoint for load balancers."""
    db_status = check_database()
    vault_status = check_vault()

    return {
        "status": "OK" if db_status == "OK" and vault_status == "OK" else "DEGRADED",
        "version": get_version(),
        "db": db_status,
        "vault": vault_status,
    }


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """Liveness endpoint - always OK if service is running."""
    return {"status": "OK"}
