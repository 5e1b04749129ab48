"""FastAPI dependency injection for pipeline resources and the acting user.

Authentication is handled upstream; this service only reads the optional
X-User-ID header to attribute activities and notifications.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.outreach.api.middleware.logging import USER_ID_HEADER
from src.outreach.pipeline.repository import DealRepository


async def get_actor_id(request: Request) -> int | None:
    """Return the acting user's id from X-User-ID, or None if absent or non-numeric."""
    raw = request.headers.get(USER_ID_HEADER)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def get_deal_repository(request: Request) -> DealRepository:
    """Retrieve DealRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "deal_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized",
        )
    return repo
