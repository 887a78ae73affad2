"""
Custom exception classes for the Telligent migration tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class ConfigurationError(MigrationError):
    """Raised when environment, CLI arguments or the category mapping are invalid."""


class SourceQueryError(MigrationError):
    """Raised when a query against the legacy database fails."""


class OrderingError(MigrationError):
    """Raised when a source page is not strictly ordered past the watermark."""


class TargetError(MigrationError):
    """Raised by a target platform that rejects a single record."""
