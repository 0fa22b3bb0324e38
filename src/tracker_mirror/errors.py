"""
Error taxonomy shared by the remote client, the cache and the scheduler.
"""

from __future__ import annotations


class RemoteError(RuntimeError):
    """Raised when a call to the remote tracker fails."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class NotFoundError(RemoteError):
    """Raised when the remote entity no longer exists."""

    def __init__(self, message: str):
        super().__init__("not_found", message)


class ConfigurationError(ValueError):
    """Raised when a context is missing connection settings."""


class UnsupportedOperationError(NotImplementedError):
    """Raised when the remote server does not offer a required operation."""
