#!/usr/bin/env python3
"""
Echo Chat - Entry Point
=========================
One-command startup for the echo chat server.

Usage:
    python app.py              # Start with config.yaml / PORT / defaults
    python app.py --port 9000  # Start on custom port

This script:
    1. Loads environment variables from .env (PORT)
    2. Builds the FastAPI application (config.yaml + overrides)
    3. Runs uvicorn, telling connected users before the server goes down

Clients connect to ws://<host>:<port>/ and send
{"username": "...", "password": "..."} as their first frame.
"""

import os
import argparse
import uvicorn
from dotenv import load_dotenv

from chatserver.errors import PersistenceUnavailable
from chatserver.main import create_app
from chatserver.manager import ConnectionSupervisor


class ChatServer(uvicorn.Server):
    """
    uvicorn server that drains chat sessions before its own shutdown.

    uvicorn closes open WebSockets before the application's lifespan
    shutdown runs, so the shutdown notice has to go out from here.
    """

    def __init__(self, config: uvicorn.Config, supervisor: ConnectionSupervisor, grace: float):
        super().__init__(config)
        self.supervisor = supervisor
        self.grace = grace

    async def shutdown(self, sockets=None):
        await self.supervisor.shutdown(grace=self.grace)
        await super().shutdown(sockets=sockets)


def main():
    """Parse arguments, load config, and start the chat server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="Echo Chat - WebSocket chat server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (overrides PORT and config.yaml)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides config.yaml)",
    )
    args = parser.parse_args()

    # -- Resolve project directory ---------------------------------------------
    project_dir = os.path.dirname(os.path.abspath(__file__))

    # -- Load environment variables from .env ----------------------------------
    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    # -- Build the application -------------------------------------------------
    overrides = {"server": {}}
    if args.port:
        overrides["server"]["port"] = args.port
    if args.host:
        overrides["server"]["host"] = args.host

    try:
        app = create_app(project_dir, overrides)
    except PersistenceUnavailable as e:
        print(f"[FATAL] Storage unavailable: {e}", flush=True)
        raise SystemExit(1)

    server_cfg = app.state.config["server"]
    host, port = server_cfg["host"], server_cfg["port"]

    # -- Print startup banner --------------------------------------------------
    print()
    print("  ╔══════════════════════════════════════════════╗")
    print("  ║           ECHO CHAT v1.0                     ║")
    print("  ║   WebSocket chat server                      ║")
    print("  ╚══════════════════════════════════════════════╝")
    print()
    print(f"  Chat   : ws://{host}:{port}/")
    print(f"  Status : http://{host}:{port}/api/status")
    print()

    # -- Start the server ------------------------------------------------------
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
        timeout_graceful_shutdown=server_cfg["shutdown_grace"],
    )
    ChatServer(config, app.state.supervisor, grace=server_cfg["shutdown_grace"]).run()


if __name__ == "__main__":
    main()
