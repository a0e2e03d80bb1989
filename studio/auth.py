"""
Caller identity for the API.

Clients send the Supabase session access token as
``Authorization: Bearer <jwt>``. The token is verified with Supabase
Auth and the user id is handed to the routes as an explicit value.
"""

import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .supabase_client import get_supabase

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> str:
    """Resolve the authenticated user id or answer 401."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        response = get_supabase().auth.get_user(credentials.credentials)
    except Exception as e:
        logger.warning(f"Token verification failed: {e}")
        raise HTTPException(status_code=401, detail="Unauthorized")

    user = getattr(response, "user", None)
    if user is None or not getattr(user, "id", None):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return str(user.id)
