# main.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from . import auth, campaigns, pledges
from .config import Settings, load_settings
from .db import init_db, make_engine, make_session_factory
from .errors import install_error_handlers
from .payments import build_payment_provider
from .ratelimit import install_rate_limits

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Pledgr API",
        version="1.0.0",
        docs_url="/docs",
        redoc_url=None,
        openapi_url="/openapi.json",
    )

    # -----------------------------------------------------------------------
    # State: settings, DB, payments
    # -----------------------------------------------------------------------

    engine = make_engine(settings)
    init_db(engine)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.payment_provider = build_payment_provider(settings)

    # -----------------------------------------------------------------------
    # Middleware & errors
    # -----------------------------------------------------------------------

    install_rate_limits(app, settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    app.include_router(auth.router)
    app.include_router(campaigns.router)
    app.include_router(pledges.router)

    @app.get("/", include_in_schema=False)
    def index():
        return RedirectResponse(url="/docs")

    @app.get("/healthz", include_in_schema=False)
    def healthz():
        return {
            "ok": True,
            "database": engine.dialect.name,
            "environment": settings.environment,
        }

    logger.info("Pledgr API ready (%s, %s)", settings.environment, engine.dialect.name)
    return app
