from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.settings import S
from app.metrics import METRICS_ENABLED, metrics_endpoint, metrics_middleware, set_app_info
from app.routers.billing import router as billing_router
from app.routers.misc import router as misc_router
from app.routers.users import router as users_router
from app.services.wiring import Services, build_services


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(services: Services | None = None) -> FastAPI:
    configure_logging(S.log_level)
    app = FastAPI(title="Credit Provisioning Backend", version="0.1.0")
    app.state.services = services or build_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=S.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    if METRICS_ENABLED:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    app.include_router(misc_router)
    app.include_router(billing_router)
    app.include_router(users_router)

    return app


app = create_app()
