"""
Authentication dependencies for FastAPI.
"""
from fastapi import Request, HTTPException, status

from .middleware import USER_ID_HEADER, auth_error
from .models import User
from .repository import get_user_repository


async def get_current_user(request: Request) -> User:
    """
    Caller behind the request, registered on first sight.
    Raises 401 when the middleware found no caller id.
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=auth_error("AUTH_REQUIRED", f"Missing {USER_ID_HEADER} header"),
        )
    return get_user_repository().get_or_create(user_id)
