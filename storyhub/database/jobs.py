"""
Job Queue Service

Story generation jobs: one row per scenario, claimed by batch runners
under a lock and retried until they succeed or run out of attempts.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any, List
from uuid import uuid4

from .catalog import ScenarioPayload
from .client import Database, to_db_time, utc_now


class JobStatus(str, Enum):
    """Status values for story generation jobs"""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCK_TIMEOUT_MINUTES = 10

# Fresh work first, then retries (failed or abandoned); FIFO inside each class.
_ELIGIBLE_JOBS_SQL = """
    SELECT j.id AS job_id, j.status, j.attempt_count,
           s.id AS scenario_id, s.slug, s.title, s.seed_text,
           p.name AS place_name, c.name AS category_name
    FROM story_generation_jobs j
    JOIN scenarios s ON s.id = j.scenario_id
    JOIN places p ON p.id = s.place_id
    JOIN categories c ON c.id = s.category_id
    WHERE (
            j.status = 'queued'
            OR (j.status IN ('failed', 'running') AND j.attempt_count < ?)
          )
      AND (j.locked_at IS NULL OR j.locked_at < ?)
    ORDER BY CASE WHEN j.status = 'queued' THEN 0 ELSE 1 END,
             j.created_at ASC,
             j.rowid ASC
    LIMIT 1
"""

_LOCK_HELD_SQL = """
    SELECT 1 FROM story_generation_jobs
    WHERE scenario_id = ? AND status = 'running' AND locked_by = ?
"""


class LockLostError(Exception):
    """The job was reclaimed by another runner while this one worked on it."""
    pass


class JobQueueService:
    """
    Service class for job queue operations.

    Provides:
    - Idempotent job creation for scenarios that still need a story
    - Atomic claiming (select + lock in one IMMEDIATE transaction)
    - Stale-lock recovery for crashed workers
    - Dashboard counts and paging
    """

    def __init__(
        self,
        db: Database,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lock_timeout_minutes: int = DEFAULT_LOCK_TIMEOUT_MINUTES,
    ):
        self.db = db
        self.max_attempts = max_attempts
        self.lock_timeout = timedelta(minutes=lock_timeout_minutes)

    def _stale_cutoff(self, now: datetime) -> str:
        return to_db_time(now - self.lock_timeout)

    # =========================================================================
    # Job Creation
    # =========================================================================

    async def create_missing_jobs(self) -> int:
        """
        Queue a job for every scenario with neither a story nor a job.

        Safe to call repeatedly and concurrently: the unique scenario_id
        constraint turns a racing duplicate insert into a no-op.

        Returns the number of jobs actually created.
        """
        now = to_db_time(utc_now())
        async with self.db.transaction() as conn:
            async with conn.execute(
                """
                SELECT s.id
                FROM scenarios s
                LEFT JOIN stories st ON st.scenario_id = s.id
                LEFT JOIN story_generation_jobs j ON j.scenario_id = s.id
                WHERE st.id IS NULL AND j.id IS NULL
                ORDER BY s.created_at, s.rowid
                """
            ) as cursor:
                missing = [row["id"] for row in await cursor.fetchall()]

            if not missing:
                return 0

            cursor = await conn.executemany(
                """
                INSERT INTO story_generation_jobs
                (id, scenario_id, status, attempt_count, created_at, updated_at)
                VALUES (?, ?, 'queued', 0, ?, ?)
                ON CONFLICT(scenario_id) DO NOTHING
                """,
                [(str(uuid4()), scenario_id, now, now) for scenario_id in missing]
            )
            created = cursor.rowcount
            await cursor.close()
        return created

    # =========================================================================
    # Claiming
    # =========================================================================

    async def claim_next_job(self, lock_id: str, now: Optional[datetime] = None) -> Optional[ScenarioPayload]:
        """
        Claim the next eligible job and return its scenario.

        Selection, lock and payload read happen in one transaction; the
        UPDATE re-checks the lock columns so a row that changed hands
        since the SELECT is never claimed twice.

        Returns None when no job is available.
        """
        now = now or utc_now()
        now_str = to_db_time(now)
        cutoff = self._stale_cutoff(now)

        async with self.db.transaction() as conn:
            async with conn.execute(_ELIGIBLE_JOBS_SQL, (self.max_attempts, cutoff)) as cursor:
                row = await cursor.fetchone()

            if row is None:
                return None

            cursor = await conn.execute(
                """
                UPDATE story_generation_jobs
                SET status = 'running',
                    locked_at = ?,
                    locked_by = ?,
                    last_attempt_at = ?,
                    attempt_count = attempt_count + 1,
                    updated_at = ?
                WHERE id = ?
                  AND status = ?
                  AND (locked_at IS NULL OR locked_at < ?)
                """,
                (now_str, lock_id, now_str, now_str, row["job_id"], row["status"], cutoff)
            )
            claimed = cursor.rowcount == 1
            await cursor.close()

        if not claimed:
            return None
        return ScenarioPayload.from_row(row)

    async def peek_next_scenario(self, now: Optional[datetime] = None) -> Optional[ScenarioPayload]:
        """Preview the scenario claim_next_job would return, without locking it."""
        now = now or utc_now()
        row = await self.db.fetchone(_ELIGIBLE_JOBS_SQL, (self.max_attempts, self._stale_cutoff(now)))
        return ScenarioPayload.from_row(row) if row else None

    # =========================================================================
    # Job Status Updates
    # =========================================================================

    async def holds_lock(self, scenario_id: str, lock_id: str) -> bool:
        """True while `lock_id` is still the running owner of the job."""
        row = await self.db.fetchone(_LOCK_HELD_SQL, (scenario_id, lock_id))
        return row is not None

    async def mark_succeeded(self, scenario_id: str, lock_id: Optional[str] = None) -> bool:
        """
        Mark a job as succeeded and release its lock.

        With a lock_id, the update only applies while that lock is still
        held; returns False when another runner has taken the job over.
        """
        sql = """
            UPDATE story_generation_jobs
            SET status = 'succeeded',
                locked_at = NULL,
                locked_by = NULL,
                last_error = NULL,
                updated_at = ?
            WHERE scenario_id = ?
        """
        params = [to_db_time(utc_now()), scenario_id]
        if lock_id is not None:
            sql += " AND status = 'running' AND locked_by = ?"
            params.append(lock_id)
        return await self.db.execute(sql, params) == 1

    async def mark_failed(self, scenario_id: str, error_message: str, lock_id: Optional[str] = None) -> bool:
        """
        Mark a job as failed and release its lock.

        attempt_count is left alone, so the job stays claimable only while
        it is under max_attempts. Fenced on lock_id like mark_succeeded.
        """
        sql = """
            UPDATE story_generation_jobs
            SET status = 'failed',
                locked_at = NULL,
                locked_by = NULL,
                last_error = ?,
                updated_at = ?
            WHERE scenario_id = ?
        """
        params = [error_message, to_db_time(utc_now()), scenario_id]
        if lock_id is not None:
            sql += " AND status = 'running' AND locked_by = ?"
            params.append(lock_id)
        return await self.db.execute(sql, params) == 1

    async def reset_job(self, scenario_id: str, clear_attempts: bool = False) -> bool:
        """
        Put a job back in the queue (admin action).

        Attempts are kept unless clear_attempts is set; a job already at
        max_attempts needs clear_attempts=True to run again.
        """
        attempts_sql = ", attempt_count = 0" if clear_attempts else ""
        changed = await self.db.execute(
            f"""
            UPDATE story_generation_jobs
            SET status = 'queued',
                locked_at = NULL,
                locked_by = NULL,
                updated_at = ?{attempts_sql}
            WHERE scenario_id = ?
            """,
            (to_db_time(utc_now()), scenario_id)
        )
        return changed == 1

    # =========================================================================
    # Job Recovery
    # =========================================================================

    async def fail_exhausted_stale_jobs(self, now: Optional[datetime] = None) -> int:
        """
        Close out jobs abandoned in 'running' on their final attempt.

        Stale running jobs with attempts left are simply claimable again;
        those already at max_attempts would otherwise stay 'running'
        forever, so they are moved to 'failed'.

        Returns the number of jobs updated.
        """
        now = now or utc_now()
        return await self.db.execute(
            """
            UPDATE story_generation_jobs
            SET status = 'failed',
                last_error = COALESCE(last_error || ' | ', '') || ?,
                locked_at = NULL,
                locked_by = NULL,
                updated_at = ?
            WHERE status = 'running'
              AND attempt_count >= ?
              AND locked_at IS NOT NULL
              AND locked_at < ?
            """,
            (
                "Lock expired on final attempt (worker crash/timeout)",
                to_db_time(now),
                self.max_attempts,
                self._stale_cutoff(now),
            )
        )

    # =========================================================================
    # Job Retrieval
    # =========================================================================

    async def get_job_by_scenario(self, scenario_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.fetchone(
            "SELECT * FROM story_generation_jobs WHERE scenario_id = ?",
            (scenario_id,)
        )
        return dict(row) if row else None

    # =========================================================================
    # Admin/Dashboard Queries
    # =========================================================================

    async def get_status_counts(self) -> Dict[str, int]:
        """Job counts for every status (zero-filled)."""
        rows = await self.db.fetchall(
            "SELECT status, COUNT(*) AS n FROM story_generation_jobs GROUP BY status"
        )
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    async def get_jobs_page(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """Most recently updated jobs first, with their scenario slug and title."""
        limit = min(max(limit, 1), 200)
        offset = max(offset, 0)
        rows = await self.db.fetchall(
            """
            SELECT j.id, j.scenario_id, s.slug AS scenario_slug, s.title AS scenario_title,
                   j.status, j.attempt_count, j.last_error, j.last_attempt_at,
                   j.created_at, j.updated_at
            FROM story_generation_jobs j
            JOIN scenarios s ON s.id = j.scenario_id
            ORDER BY j.updated_at DESC, j.rowid DESC
            LIMIT ? OFFSET ?
            """,
            (limit, offset)
        )
        return [dict(row) for row in rows]

    async def get_jobs_total_count(self) -> int:
        row = await self.db.fetchone("SELECT COUNT(*) AS n FROM story_generation_jobs")
        return row["n"]
