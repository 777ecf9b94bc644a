"""
storyhub Database Layer

This module provides the SQLite client and service classes for
interacting with the database.
"""

from .client import Database, DatabaseError
from .catalog import CatalogService, ScenarioPayload
from .stories import StoryService
from .jobs import JobQueueService, JobStatus, LockLostError

__all__ = [
    "Database",
    "DatabaseError",
    "CatalogService",
    "ScenarioPayload",
    "StoryService",
    "JobQueueService",
    "JobStatus",
    "LockLostError",
]
