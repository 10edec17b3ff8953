"""
Provider exceptions.
"""
from typing import Optional


class ProviderError(Exception):
    """A remote provider call failed; status_code is set for HTTP rejections."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.message = message
        self.status_code = status_code
        super().__init__(f"[{provider}] {message}")


class ProviderUnavailable(ProviderError):
    """Not configured (no API key) or credentials rejected; retrying will not help."""

    def __init__(self, provider: str, reason: str = "unavailable", status_code: Optional[int] = None):
        super().__init__(provider, f"Provider unavailable: {reason}", status_code)
        self.reason = reason
