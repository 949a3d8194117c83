"""
Caller identity.

Authentication happens upstream; the identity middleware stores the
authenticated user id on request.state.user_id. The engine only reads it.
"""

import logging

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)


def get_current_user_id(request: Request) -> str:
    """Return the authenticated user id or raise 401."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        logger.warning("Request without authenticated user", extra={
            "path": request.url.path,
        })
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return str(user_id)
