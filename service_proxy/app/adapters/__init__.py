"""
Adapters package for the Proxy Service.

Contains the HTTP client wrapper for the upstream. Adapters own timeouts and
map transport failures onto shared errors; they never retry.
"""

from .upstream_client import UpstreamClient, UpstreamResponse

__all__ = [
    "UpstreamClient",
    "UpstreamResponse",
]
