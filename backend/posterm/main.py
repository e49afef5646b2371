"""
FastAPI application entrypoint.
"""
from __future__ import annotations
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from posterm.core.config import Settings, get_settings
from posterm.core.logging import setup_logging, get_logger
from posterm.services.core_state import TerminalCore
from posterm.api import bank, payments, terminal_ws, terminals

logger = get_logger(__name__)


def create_app(settings: Settings | None = None, core: TerminalCore | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.DEBUG)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown."""
        logger.info("Starting %s v%s", settings.APP_NAME, settings.VERSION)
        app.state.core = core or TerminalCore(settings)
        await app.state.core.init()
        yield
        await app.state.core.close()
        logger.info("Shutting down.")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        description="Payment terminal session core — bank authorization cycle and terminal channel.",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(terminals.router, tags=["Terminals"])
    app.include_router(payments.router, tags=["Payments"])
    app.include_router(bank.router, tags=["Bank"])
    app.include_router(terminal_ws.router, tags=["Terminal channel"])

    @app.get("/health", tags=["System"])
    async def health():
        core_state: TerminalCore = app.state.core
        return {
            "status": "ok",
            "version": settings.VERSION,
            "connected_terminals": len(core_state.channel.get_connected_terminals()),
            "bank": core_state.bank.config(),
        }

    return app


app = create_app()
