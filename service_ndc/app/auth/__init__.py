"""
Provider authentication for the NDC service.
"""

from .manager import AuthManager, extract_token
from .token_cache import CachedToken, TokenCache

__all__ = [
    "AuthManager",
    "CachedToken",
    "TokenCache",
    "extract_token",
]
