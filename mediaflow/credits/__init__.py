"""
Credits Module.
"""
from .service import CreditService, DebitResult, get_credit_service, reset_credit_service
from .exceptions import CreditError, InsufficientBalance, JobNotOwnedError

__all__ = [
    "CreditService",
    "DebitResult",
    "get_credit_service",
    "reset_credit_service",
    "CreditError",
    "InsufficientBalance",
    "JobNotOwnedError",
]
