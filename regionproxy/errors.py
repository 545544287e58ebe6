"""Exceptions raised by region-proxy operations."""


class RegionProxyError(Exception):
    """Base class for all region-proxy failures."""


class NotFoundError(RegionProxyError):
    """No matching image, region or resource."""


class WaitTimeoutError(RegionProxyError):
    """A polling budget was exhausted."""


class BackendRejectedError(RegionProxyError):
    """The cloud API refused or failed a call."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class AlreadyRunningError(RegionProxyError):
    """A session already exists."""


class NotRunningError(RegionProxyError):
    """No session exists."""


class LocalIOError(RegionProxyError):
    """Local file or process operation failed."""
