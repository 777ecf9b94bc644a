import pytest

from storyhub.database.catalog import (
    build_scenario_slug,
    build_scenario_title,
    short_hash,
    slugify,
    to_display_name,
)


def test_slugify():
    assert slugify("Can't find my keys") == "cant-find-my-keys"
    assert slugify("Food & Dining") == "food-and-dining"
    assert slugify("  living   room / closet ") == "living-room-closet"


def test_display_names():
    assert to_display_name("FoodAndDining") == "Food & Dining"
    assert to_display_name("living_room") == "living room"
    assert to_display_name("HomeLife") == "Home Life"


def test_short_hash_is_stable_and_short():
    assert short_hash("bedroomlost keys") == short_hash("bedroomlost keys")
    assert short_hash("bedroomlost keys") != short_hash("bedroommaking the bed")
    assert 1 <= len(short_hash("anything")) <= 6
    assert short_hash("") == "0"


def test_scenario_slug_and_title():
    slug = build_scenario_slug("bedroom", "Lost keys")
    assert slug.startswith("bedroom-lost-keys-")
    assert slug == f"bedroom-lost-keys-{short_hash('bedroomLost keys')}"
    assert build_scenario_title("Lost keys", "bedroom") == "Lost keys (bedroom)"


@pytest.mark.anyio
async def test_add_scenario_is_idempotent(catalog):
    category_id = await catalog.add_category("Home")
    place_id = await catalog.add_place(category_id, "bedroom")

    first = await catalog.add_scenario(category_id, place_id, "lost keys")
    second = await catalog.add_scenario(category_id, place_id, "lost keys")

    assert first == second
    assert await catalog.count_scenarios() == 1
    assert await catalog.add_category("Home") == category_id


@pytest.mark.anyio
async def test_add_scenario_with_explicit_slug(catalog):
    category_id = await catalog.add_category("Home")
    place_id = await catalog.add_place(category_id, "bedroom")
    await catalog.add_scenario(category_id, place_id, "keys", slug="bedroom-keys-1a2b3c", title="Keys")

    scenario = await catalog.get_scenario_by_slug("bedroom-keys-1a2b3c")
    assert scenario["title"] == "Keys"
    assert scenario["place_name"] == "bedroom"
    assert scenario["category_name"] == "Home"


@pytest.mark.anyio
async def test_add_scenario_rejects_unknown_place(catalog):
    category_id = await catalog.add_category("Home")
    with pytest.raises(ValueError):
        await catalog.add_scenario(category_id, "nope", "lost keys")
