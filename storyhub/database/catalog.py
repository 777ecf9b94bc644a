"""
Catalog Service

Categories, places and scenarios: the read-mostly content catalog the
generation pipeline writes stories for. Seeding helpers live here so
import scripts and tests build scenarios the same way.
"""

import re
from dataclasses import dataclass
from typing import Optional, Dict, Any
from uuid import uuid4

from .client import Database, to_db_time, utc_now


CATEGORY_DISPLAY_OVERRIDES = {
    "BuildingsAndFacilities": "Buildings & Facilities",
    "StoresAndMarkets": "Stores & Markets",
    "FoodAndDining": "Food & Dining",
    "PublicPlaces": "Public Places",
    "SchoolAcademic": "School & Academic",
    "WorkOffices": "Work & Offices",
    "OutdoorsNature": "Outdoors & Nature",
}


@dataclass(frozen=True)
class ScenarioPayload:
    """Everything the generation pipeline needs to know about one scenario."""
    id: str
    slug: str
    title: str
    seed_text: str
    place_name: str
    category_name: str

    @classmethod
    def from_row(cls, row) -> "ScenarioPayload":
        return cls(
            id=row["scenario_id"],
            slug=row["slug"],
            title=row["title"],
            seed_text=row["seed_text"],
            place_name=row["place_name"],
            category_name=row["category_name"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "title": self.title,
            "seedText": self.seed_text,
            "placeName": self.place_name,
            "categoryName": self.category_name,
        }


def to_display_name(key: str) -> str:
    """'FoodAndDining' -> 'Food & Dining', 'living_room' -> 'living room'."""
    if key in CATEGORY_DISPLAY_OVERRIDES:
        return CATEGORY_DISPLAY_OVERRIDES[key]
    spaced = re.sub(r"([a-z])([A-Z])", r"\1 \2", key)
    return spaced.replace("_", " ").strip()


def slugify(value: str) -> str:
    value = value.lower().replace("&", "and").replace("/", " ")
    value = re.sub(r"['’]", "", value)
    value = re.sub(r"[^a-z0-9\s-]", "", value).strip()
    value = re.sub(r"\s+", "-", value)
    return re.sub(r"-+", "-", value)


def short_hash(value: str) -> str:
    """Small deterministic (non-cryptographic) hash used to keep slugs unique."""
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    acc = 0
    for char in value:
        acc = ((acc << 5) - acc + ord(char)) & 0xFFFFFFFF
    if acc & 0x80000000:
        acc -= 0x100000000
    acc = abs(acc)

    if acc == 0:
        return "0"
    encoded = ""
    while acc:
        acc, rem = divmod(acc, 36)
        encoded = digits[rem] + encoded
    return encoded[:6]


def build_scenario_title(seed_text: str, place_name: str) -> str:
    return f"{seed_text} ({place_name})"


def build_scenario_slug(place_name: str, seed_text: str) -> str:
    return f"{slugify(place_name)}-{slugify(seed_text)}-{short_hash(place_name + seed_text)}"


class CatalogService:
    """
    Service class for catalog operations.
    """

    def __init__(self, db: Database):
        self.db = db

    async def add_category(self, name: str, description: Optional[str] = None, slug: Optional[str] = None) -> str:
        """Insert a category (or reuse the one with the same slug). Returns its id."""
        slug = slug or slugify(name)
        now = to_db_time(utc_now())
        async with self.db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO categories (id, slug, name, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    name = excluded.name,
                    description = COALESCE(excluded.description, categories.description),
                    updated_at = excluded.updated_at
                """,
                (str(uuid4()), slug, name, description, now, now)
            )
            async with conn.execute("SELECT id FROM categories WHERE slug = ?", (slug,)) as cursor:
                row = await cursor.fetchone()
        return row["id"]

    async def add_place(self, category_id: str, name: str, slug: Optional[str] = None) -> str:
        slug = slug or slugify(name)
        now = to_db_time(utc_now())
        async with self.db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO places (id, slug, name, category_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(category_id, slug) DO UPDATE SET
                    name = excluded.name,
                    updated_at = excluded.updated_at
                """,
                (str(uuid4()), slug, name, category_id, now, now)
            )
            async with conn.execute(
                "SELECT id FROM places WHERE category_id = ? AND slug = ?",
                (category_id, slug)
            ) as cursor:
                row = await cursor.fetchone()
        return row["id"]

    async def add_scenario(
        self,
        category_id: str,
        place_id: str,
        seed_text: str,
        *,
        slug: Optional[str] = None,
        title: Optional[str] = None,
        short_description: str = "",
    ) -> str:
        """
        Insert a scenario. Title and slug are derived from the place name
        and seed text unless given explicitly.

        Returns the scenario id (existing id if the place/seed pair exists).
        """
        place = await self.db.fetchone("SELECT name FROM places WHERE id = ?", (place_id,))
        if place is None:
            raise ValueError(f"Unknown place: {place_id}")

        slug = slug or build_scenario_slug(place["name"], seed_text)
        title = title or build_scenario_title(seed_text, place["name"])
        now = to_db_time(utc_now())

        async with self.db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO scenarios
                (id, slug, title, short_description, seed_text, category_id, place_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(place_id, seed_text) DO NOTHING
                """,
                (str(uuid4()), slug, title, short_description, seed_text, category_id, place_id, now, now)
            )
            async with conn.execute(
                "SELECT id FROM scenarios WHERE place_id = ? AND seed_text = ?",
                (place_id, seed_text)
            ) as cursor:
                row = await cursor.fetchone()
        return row["id"]

    async def get_scenario_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        row = await self.db.fetchone(
            """
            SELECT s.id, s.slug, s.title, s.seed_text, s.short_description,
                   p.name AS place_name, c.name AS category_name
            FROM scenarios s
            JOIN places p ON p.id = s.place_id
            JOIN categories c ON c.id = s.category_id
            WHERE s.slug = ?
            """,
            (slug,)
        )
        return dict(row) if row else None

    async def count_scenarios(self) -> int:
        row = await self.db.fetchone("SELECT COUNT(*) AS n FROM scenarios")
        return row["n"]
