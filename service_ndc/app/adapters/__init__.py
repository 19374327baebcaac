"""
Adapters package for the NDC service.

Contains the raw HTTP exchange with the provider and inspection of provider
response bodies. Adapters never retry and never consult breakers.
"""

from .http_transport import HttpTransport, RawResponse
from .provider_errors import inspect_body

__all__ = [
    "HttpTransport",
    "RawResponse",
    "inspect_body",
]
