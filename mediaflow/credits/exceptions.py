"""
Credit-related exceptions.
Each carries its HTTP mapping so routes can raise ``err.to_http_exception()``.
"""
from typing import Any, Dict

from fastapi import HTTPException, status


class CreditError(Exception):
    """Base credit error."""

    code = "CREDIT_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    title = "Credit error"
    hint = ""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {}

    def to_http_exception(self) -> HTTPException:
        detail = {"error": self.title, "code": self.code, "message": self.hint or self.message}
        detail.update(self.details())
        return HTTPException(status_code=self.status_code, detail=detail)


class InsufficientBalance(CreditError):
    """The caller's balance cannot cover the quoted estimate."""

    code = "INSUFFICIENT_BALANCE"
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    title = "Insufficient balance"
    hint = "Top up your credits to run this job"

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(f"{user_id} needs {required} credits, has {available}")

    def details(self) -> Dict[str, Any]:
        return {"required": self.required, "available": self.available}


class JobNotOwnedError(CreditError):
    """A caller asked about a job submitted by someone else."""

    code = "JOB_NOT_OWNED"
    status_code = status.HTTP_403_FORBIDDEN
    title = "Access denied"
    hint = "You do not have permission to access this job"

    def __init__(self, user_id: str, job_id: str):
        self.user_id = user_id
        self.job_id = job_id
        super().__init__(f"{user_id} does not own job {job_id}")
