"""
Echo Chat - HTTP Routes
=========================
Read-only HTTP endpoints next to the chat WebSocket.

Route groups:
    /api/health - Liveness check
    /api/status - Who is online, pending handshakes, shutdown state
"""

from fastapi import APIRouter
from pydantic import BaseModel, Field

from chatserver.manager import ConnectionSupervisor


# =============================================================================
# Response Models (Pydantic)
# =============================================================================

class HealthResponse(BaseModel):
    status: str = "ok"

class StatusResponse(BaseModel):
    """Current connection summary."""
    online: list[str] = Field(description="Usernames with a live session")
    online_count: int
    pending: int = Field(description="Connections still in the handshake")
    shutting_down: bool


# =============================================================================
# Router Factory
# =============================================================================

def create_router(supervisor: ConnectionSupervisor) -> APIRouter:
    """
    Create the API router.

    Args:
        supervisor: The connection supervisor to report on.

    Returns:
        Configured APIRouter with all endpoints registered.
    """
    router = APIRouter(prefix="/api")

    @router.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse()

    @router.get("/status", response_model=StatusResponse)
    async def status():
        return StatusResponse(**supervisor.status)

    return router
