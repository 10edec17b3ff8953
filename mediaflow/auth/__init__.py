"""
Authentication Module.
Caller identity arrives pre-validated via the X-User-Id header.
"""
from .models import User, Plan, STARTING_CREDITS
from .repository import get_user_repository, reset_repository
from .middleware import AuthMiddleware
from .dependencies import get_current_user

__all__ = [
    "User",
    "Plan",
    "STARTING_CREDITS",
    "get_user_repository",
    "reset_repository",
    "AuthMiddleware",
    "get_current_user",
]
