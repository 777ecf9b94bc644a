"""
Story Service

Persists generated stories and their vocabulary. One story per
scenario; vocabulary items are keyed by (story, phrase).
"""

from typing import Optional, Dict, Any, List, Iterable
from uuid import uuid4

from .client import Database, to_db_time, utc_now
from .jobs import LockLostError, _LOCK_HELD_SQL


async def _require_lock(conn, scenario_id: str, lock_id: str):
    async with conn.execute(_LOCK_HELD_SQL, (scenario_id, lock_id)) as cursor:
        if await cursor.fetchone() is None:
            raise LockLostError(f"Lock {lock_id} no longer held for scenario {scenario_id}")


class StoryService:
    """
    Service class for story operations.
    """

    def __init__(self, db: Database):
        self.db = db

    # =========================================================================
    # Story Writes
    # =========================================================================

    async def upsert_story_with_vocabulary(
        self,
        scenario_id: str,
        scenario_slug: str,
        title: str,
        body: str,
        key_phrases: Iterable[Dict[str, Any]],
        *,
        audio_url: Optional[str] = None,
        lock_id: Optional[str] = None,
    ) -> str:
        """
        Create or overwrite the story for a scenario and upsert its vocabulary.

        Runs in one transaction. An existing audio_url is kept unless a new
        one is passed, so re-generating text never drops narration.

        Args:
            scenario_id: Scenario the story belongs to
            scenario_slug: Used as the story slug
            title: Story title
            body: Plain story text
            key_phrases: Dicts with phrase, meaning_en, optional meaning_zh/type
            audio_url: Public narration URL, if already known
            lock_id: When given, the write only happens while this lock
                still owns the scenario's running job

        Returns:
            The story id

        Raises:
            LockLostError: lock_id no longer holds the job
        """
        now = to_db_time(utc_now())

        async with self.db.transaction() as conn:
            if lock_id is not None:
                await _require_lock(conn, scenario_id, lock_id)
            await conn.execute(
                """
                INSERT INTO stories (id, slug, title, body, audio_url, scenario_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(scenario_id) DO UPDATE SET
                    slug = excluded.slug,
                    title = excluded.title,
                    body = excluded.body,
                    audio_url = COALESCE(excluded.audio_url, stories.audio_url),
                    updated_at = excluded.updated_at
                """,
                (str(uuid4()), scenario_slug, title, body, audio_url or None, scenario_id, now, now)
            )
            async with conn.execute(
                "SELECT id FROM stories WHERE scenario_id = ?", (scenario_id,)
            ) as cursor:
                story_id = (await cursor.fetchone())["id"]

            for phrase in key_phrases:
                await conn.execute(
                    """
                    INSERT INTO vocabulary_items
                    (id, story_id, phrase, meaning_en, meaning_zh, type, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(story_id, phrase) DO UPDATE SET
                        meaning_en = excluded.meaning_en,
                        meaning_zh = excluded.meaning_zh,
                        type = excluded.type,
                        updated_at = excluded.updated_at
                    """,
                    (
                        str(uuid4()),
                        story_id,
                        phrase["phrase"],
                        phrase["meaning_en"],
                        phrase.get("meaning_zh"),
                        phrase.get("type"),
                        now,
                        now,
                    )
                )

        return story_id

    async def update_audio_url(self, scenario_id: str, audio_url: str, lock_id: Optional[str] = None) -> bool:
        """Attach the uploaded narration to the scenario's story."""
        async with self.db.transaction() as conn:
            if lock_id is not None:
                await _require_lock(conn, scenario_id, lock_id)
            cursor = await conn.execute(
                "UPDATE stories SET audio_url = ?, updated_at = ? WHERE scenario_id = ?",
                (audio_url, to_db_time(utc_now()), scenario_id)
            )
            changed = cursor.rowcount
            await cursor.close()
        return changed == 1

    # =========================================================================
    # Story Retrieval
    # =========================================================================

    async def get_story_by_scenario_id(self, scenario_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.fetchone("SELECT * FROM stories WHERE scenario_id = ?", (scenario_id,))
        return dict(row) if row else None

    async def get_story_by_scenario_slug(self, scenario_slug: str) -> Optional[Dict[str, Any]]:
        row = await self.db.fetchone(
            """
            SELECT st.*
            FROM stories st
            JOIN scenarios s ON s.id = st.scenario_id
            WHERE s.slug = ?
            """,
            (scenario_slug,)
        )
        return dict(row) if row else None

    async def get_vocabulary_items(self, story_id: str) -> List[Dict[str, Any]]:
        rows = await self.db.fetchall(
            """
            SELECT id, phrase, meaning_en, meaning_zh, type
            FROM vocabulary_items
            WHERE story_id = ?
            ORDER BY created_at, rowid
            """,
            (story_id,)
        )
        return [dict(row) for row in rows]

    async def count_stories(self) -> int:
        row = await self.db.fetchone("SELECT COUNT(*) AS n FROM stories")
        return row["n"]
