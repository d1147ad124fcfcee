"""
Echo Chat - FastAPI Application
=================================
Creates and wires the FastAPI application that hosts the chat server.

Responsibilities:
    - Load configuration (config.yaml + PORT override + caller overrides)
    - Open the credential store and message log (fatal if unavailable)
    - Build the registry, handshake, router and connection supervisor
    - Register the WebSocket endpoint ("/" and "/ws") and the HTTP routes
    - Lifespan: repair stale online flags on start, shut the supervisor
      down on stop

Architecture:
    Every component receives its collaborators explicitly; the only
    shared instances live on app.state for the entry point and tests.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket

from chatserver.auth import AuthHandshake
from chatserver.config import ConfigManager
from chatserver.logger import ServerLogger
from chatserver.manager import ConnectionSupervisor
from chatserver.registry import SessionRegistry
from chatserver.router import MessageRouter
from chatserver.routes import create_router
from chatserver.store import CredentialStore, MessageLog


def create_app(project_dir: str | None = None, overrides: dict | None = None) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    Args:
        project_dir: Root directory of the project. If None, auto-detected
                     from this file's location.
        overrides:   Config values merged over config.yaml (CLI flags, tests).

    Returns:
        Configured FastAPI application ready to run with uvicorn.

    Raises:
        PersistenceUnavailable: If the data directory cannot be used.
    """
    # -- Resolve configuration -------------------------------------------------
    if project_dir is None:
        project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    config_manager = ConfigManager(project_dir)
    config = config_manager.load(overrides)

    server_cfg = config["server"]
    auth_cfg = config["auth"]
    log_cfg = config["logging"]

    logger = ServerLogger(
        log_dir=config_manager.resolve(log_cfg["log_dir"]) if log_cfg.get("log_dir") else None,
        echo=log_cfg.get("echo", True),
    )
    if "_config_error" in config:
        logger.warning(f"config.yaml could not be read, using defaults: {config['_config_error']}")

    # -- Initialize components -------------------------------------------------
    data_dir = config_manager.resolve(config["storage"]["data_dir"])
    store = CredentialStore(data_dir, logger=logger)
    message_log = MessageLog(data_dir)
    registry = SessionRegistry(logger=logger)
    handshake = AuthHandshake(
        store,
        registry,
        logger=logger,
        auto_register=auth_cfg["auto_register"],
        bcrypt_rounds=auth_cfg["bcrypt_rounds"],
        store_timeout=auth_cfg["store_timeout"],
    )
    router = MessageRouter(registry, message_log, logger=logger)
    supervisor = ConnectionSupervisor(
        registry,
        handshake,
        router,
        logger=logger,
        auth_timeout=auth_cfg["timeout"],
        send_timeout=server_cfg["send_timeout"],
    )

    # -- Lifespan --------------------------------------------------------------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repaired = store.reset_all_offline()
        if repaired:
            logger.info(f"Reset {repaired} stale online flag(s) from a previous run")
        logger.info(f"Echo chat server ready ({len(store)} registered user(s))")
        yield
        await supervisor.shutdown(grace=server_cfg["shutdown_grace"])

    # -- Create FastAPI app ----------------------------------------------------
    app = FastAPI(
        title="Echo Chat",
        description="WebSocket chat server with login, broadcasts and whispers",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # -- Store components on app state -----------------------------------------
    app.state.config = config
    app.state.logger = logger
    app.state.store = store
    app.state.message_log = message_log
    app.state.registry = registry
    app.state.supervisor = supervisor

    app.include_router(create_router(supervisor))

    # -- WebSocket endpoint ----------------------------------------------------
    @app.websocket("/")
    @app.websocket("/ws")
    async def chat_endpoint(websocket: WebSocket):
        """First frame is the credentials payload; every later frame is chat."""
        await supervisor.handle(websocket)

    return app
