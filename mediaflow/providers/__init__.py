"""
External service providers.
"""
from .exceptions import ProviderError, ProviderUnavailable

__all__ = ["ProviderError", "ProviderUnavailable"]
