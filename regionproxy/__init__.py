"""Region Proxy - SOCKS proxy through a throwaway AWS EC2 instance."""

from .cli import app
from .errors import (
    AlreadyRunningError,
    BackendRejectedError,
    LocalIOError,
    NotFoundError,
    NotRunningError,
    RegionProxyError,
    WaitTimeoutError,
)
from .orchestrator import Orchestrator, StopResult
from .providers import EC2Backend, ResourceBackend, get_backend
from .reconcile import Reconciler
from .state import SessionStore
from .tunnel import SSHTunnel
from .types import CleanupResult, OrphanSet, Preferences, SessionData, SessionStatus
from .utils import error, log, setup_logging, warn

__all__ = [
    "app",
    "Orchestrator",
    "StopResult",
    "Reconciler",
    "SessionStore",
    "SSHTunnel",
    "EC2Backend",
    "ResourceBackend",
    "get_backend",
    "RegionProxyError",
    "NotFoundError",
    "WaitTimeoutError",
    "BackendRejectedError",
    "AlreadyRunningError",
    "NotRunningError",
    "LocalIOError",
    "CleanupResult",
    "OrphanSet",
    "Preferences",
    "SessionData",
    "SessionStatus",
    "log",
    "warn",
    "error",
    "setup_logging",
]
