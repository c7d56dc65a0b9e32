"""Invoicing app module.

Provides the FastAPI router and the Tenant Session Factory for ARCA
electronic invoicing.
"""

from .api import router as invoicing_router  # re-export for app integration
from .factory import TenantSession, TenantSessionFactory

__all__ = [
    "invoicing_router",
    "TenantSession",
    "TenantSessionFactory",
]
