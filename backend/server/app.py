"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (connection orchestrator)
- Register routes
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import AppConfig
from observability import logger
from session.connection_orchestrator import ConnectionOrchestrator, build_orchestrator

from server.routes import register_routes


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator: ConnectionOrchestrator = app.state.orchestrator

    try:
        yield
    finally:
        await orchestrator.shutdown()


def create_app(
    config: AppConfig | None = None,
    orchestrator: ConnectionOrchestrator | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with a pre-built orchestrator and fake collaborators
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    logger.configure(enable_json_logs=config.enable_json_logs)

    app = FastAPI(title="EnchantNet Connection API", lifespan=lifespan)

    app.state.config = config

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # One orchestrator per process; it owns the only session
    app.state.orchestrator = orchestrator or build_orchestrator(config)

    # Routes
    register_routes(app)

    return app
