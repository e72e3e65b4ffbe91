"""
Shared error handling for the caching proxy.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ProxyException(Exception):
    """Base exception for proxy services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ServiceError(ProxyException):
    """Service-related errors."""

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class ExternalServiceError(ProxyException):
    """External service errors."""

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class UpstreamFetchError(ExternalServiceError):
    """Transport-level failure while fetching from the upstream."""

    def __init__(self, url: str, message: str = "Upstream fetch failed", details: Optional[Dict[str, Any]] = None):
        self.url = url
        super().__init__("upstream", message, {"url": url, **(details or {})})


class CacheDecodeError(ProxyException):
    """Stored cache bytes could not be decoded into a record."""

    def __init__(self, message: str = "Cache record could not be decoded", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_DECODE_ERROR", message, details)
