"""
Local, periodically refreshed mirrors of remote tracker issues and queries.
"""

from __future__ import annotations

from .cache import IdentityCache
from .config import TrackerConfig
from .context import RemoteContext
from .errors import ConfigurationError, NotFoundError, RemoteError, UnsupportedOperationError
from .issue import IssueEntity
from .models import AuthMode, IssueSnapshot, IssueStatusKind
from .query import QueryDiff, SavedQuery
from .registry import REGISTRY, ContextRegistry
from .scheduler import RefreshScheduler

__version__ = "0.1.0"

__all__ = [
    "REGISTRY",
    "AuthMode",
    "ConfigurationError",
    "ContextRegistry",
    "IdentityCache",
    "IssueEntity",
    "IssueSnapshot",
    "IssueStatusKind",
    "NotFoundError",
    "QueryDiff",
    "RefreshScheduler",
    "RemoteContext",
    "RemoteError",
    "SavedQuery",
    "TrackerConfig",
    "UnsupportedOperationError",
    "main",
]


def main() -> None:
    from .server import main as server_main

    server_main()
