from fastapi import FastAPI

from backend.apps.invoicing.api import get_factory
from backend.apps.invoicing.api import router as invoicing_router
from backend.core.config import settings
from backend.core.observability import init_observability
from backend.core.observability.health import router as health_router


def create_app() -> FastAPI:
    init_observability(enable_metrics=settings.enable_metrics)

    # Outside development a missing or malformed vault key fails at startup
    if settings.app_env != "development":
        get_factory()

    app = FastAPI(title="ARCA Invoicing Backend")

    # Routers
    app.include_router(health_router)
    app.include_router(invoicing_router)

    return app


# ASGI app instance
app = create_app()
