"""
Echo Chat - Server Package
==========================
The WebSocket chat server core.

This package provides:
- A one-shot username/password handshake for every new connection
- Tracking of who is online, one live session per username
- Public broadcasts and private "whisper" messages
- File-backed credential store and message audit log

Architecture:
    main.py     -> FastAPI app creation, component wiring, lifespan
    manager.py  -> Connection supervisor (per-connection lifecycle, shutdown)
    auth.py     -> Credential parsing, bcrypt hashing, handshake state machine
    router.py   -> Whisper grammar, broadcast/whisper delivery, audit records
    registry.py -> Live session registry and best-effort delivery
    session.py  -> Per-connection state (AwaitingCredentials/Authenticated/Closed)
    store.py    -> Credential store (users.json) and message log (messages.jsonl)
    routes.py   -> Read-only HTTP status endpoints
    config.py   -> config.yaml + .env loading
    logger.py   -> Per-day log files + terminal output
    errors.py   -> Error taxonomy
"""
