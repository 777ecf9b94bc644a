"""
Story generation jobs: batch runner and triggers.

Components:
- GenerationRunner: reconcile + sequential claim/process loop
- GenerationScheduler: periodic capped batches (APScheduler)

Usage:
    # One-shot batch
    python -m storyhub.jobs.run_once --limit 5

    # Long-running scheduled worker
    python -m storyhub.jobs.run_worker
"""

from storyhub.jobs.runner import (
    BatchResult,
    GenerationRunner,
    JobRunResult,
    clamp_limit,
    create_runner,
    make_lock_id,
)
from storyhub.jobs.scheduler import GenerationScheduler

__all__ = [
    # Runner
    "BatchResult",
    "GenerationRunner",
    "JobRunResult",
    "clamp_limit",
    "create_runner",
    "make_lock_id",

    # Scheduler
    "GenerationScheduler",
]
