from fastapi import FastAPI

from backend.core.config import settings
from backend.core.observability import init_observability
from backend.core.observability.health import router as health_router
from backend.apps.receipts.api import router as receipts_router


def create_app() -> FastAPI:
    init_observability(enable_metrics=settings.enable_metrics)

    app = FastAPI(title="NFC-e Issuing Backend")

    # Routers
    app.include_router(health_router)
    app.include_router(receipts_router)

    return app


# ASGI app instance
app = create_app()
