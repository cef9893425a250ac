"""
Admin API (FastAPI).

Функции:
- /health
- /metrics (включая глубину очереди и DLQ)
- /v1/admin/housekeeper/* - служебные операции над очередью очистки
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from apps.api_gateway.routers.admin import router as admin_router
from entity_housekeeper.common.logging import get_project_logger, setup_logging
from entity_housekeeper.common.metrics import setup_metrics_endpoint
from entity_housekeeper.services.container import get_runtime

log = get_project_logger()


def _channel_provider():
    return get_runtime().channel


def _create_app() -> FastAPI:
    app = FastAPI(title="Entity Housekeeper", version="0.1.0")

    setup_metrics_endpoint(app, channel_provider=_channel_provider)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True}

    app.include_router(admin_router, prefix="/v1")
    return app


setup_logging()
log.info("api_gateway_ready")

app = _create_app()
