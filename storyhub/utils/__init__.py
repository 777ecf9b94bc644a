"""Utility modules for storyhub."""

from storyhub.utils.logging import (
    get_logger,
    get_log_buffer,
    configure_logging,
    LogLevel,
    LogEntry,
    AppLogger,
    story_logger,
    job_logger,
    storage_logger,
)

__all__ = [
    "get_logger",
    "get_log_buffer",
    "configure_logging",
    "LogLevel",
    "LogEntry",
    "AppLogger",
    "story_logger",
    "job_logger",
    "storage_logger",
]
