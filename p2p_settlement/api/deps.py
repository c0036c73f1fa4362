"""
Reusable FastAPI dependencies.

Dependencies:
  - get_engine     — the QueueEngine owned by the application lifespan
  - require_admin  — shared-token check for administrator routes (401)
"""

import hmac

from fastapi import Header, HTTPException, Request, status

from p2p_settlement.config import settings
from p2p_settlement.queue_engine.engine import QueueEngine


def get_engine(request: Request) -> QueueEngine:
    return request.app.state.queue_engine


async def require_admin(
    x_admin_token: str | None = Header(None, description="Administrator API token"),
) -> None:
    """Reject the request unless ``X-Admin-Token`` matches ``ADMIN_API_TOKEN``."""
    if not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode(), settings.ADMIN_API_TOKEN.encode(),
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
        )
