"""
Telligent Migration Tool

Migrates Telligent Community forums into a discussion platform: categories,
users, topics, replies, attachments, accepted answers and permalinks. Runs are
resumable through a persisted identity mapping.
"""

from __future__ import annotations

from .cli import main
from .exceptions import ConfigurationError, MigrationError, OrderingError, SourceQueryError, TargetError
from .orchestrator import MigrationResult, MigrationStats, TelligentMigrator
from .state import IdentityMapper
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "IdentityMapper",
    "MigrationError",
    "MigrationResult",
    "MigrationStats",
    "OrderingError",
    "SourceQueryError",
    "TargetError",
    "TelligentMigrator",
    "main",
    "setup_logging",
]
