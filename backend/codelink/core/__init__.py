"""Core application configuration and utilities."""

from codelink.core.config import Settings, settings
from codelink.core.errors import CodeLinkError, EmbeddingUnavailable, StorageUnavailable, UnknownCode
from codelink.core.logging import configure_logging

__all__ = [
    # Config
    "Settings",
    "settings",
    # Errors
    "CodeLinkError",
    "EmbeddingUnavailable",
    "StorageUnavailable",
    "UnknownCode",
    # Logging
    "configure_logging",
]
