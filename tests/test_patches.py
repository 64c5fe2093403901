"""Tests for the patch state machine: plant, boost, sweep, harvest, expand."""

from datetime import timedelta

import pytest

import database
from errors import InsufficientResourceError, NotFoundError, StateConflictError, ValidationError
from ledger import get_resources
from patches import (
    apply_booster, expand_farm, get_farm_status, growth_progress, harvest, harvest_all,
    monitor_crop_growth, plant, sweep_ready
)
from timeutils import from_db, to_db


def crop_fields_coupled(patch):
    return (
        (patch["crop_type"] is None)
        == (patch["plant_time"] is None)
        == (patch["harvest_time"] is None)
    )


class TestNewUserFarm:
    async def test_starting_state(self, user):
        res = await get_resources(user)
        assert res["water_drops"] == 10
        assert res["potato_seeds"] == 1

        status = await get_farm_status(user)
        assert status["unlocked"] == 3
        assert len(status["patches"]) == 8
        assert all(p["crop_type"] is None for p in status["patches"])


class TestPlant:
    async def test_potato_full_cycle(self, user, now, fetch_patch):
        """10 water + 1 seed -> plant, sweep after 24h, harvest 100 coins."""
        result = await plant(user, 1, "potato", now)
        assert result["harvest_time"] == now + timedelta(hours=24)

        patch = await fetch_patch(user, 1)
        assert patch["crop_type"] == "potato"
        assert from_db(patch["harvest_time"]) == now + timedelta(hours=24)
        assert crop_fields_coupled(patch)

        res = await get_resources(user)
        assert res["water_drops"] == 0
        assert res["potato_seeds"] == 0

        ready = await monitor_crop_growth(now + timedelta(hours=24))
        assert [p["patch_number"] for p in ready] == [1]
        assert (await fetch_patch(user, 1))["is_ready"] == 1

        earnings = await harvest(user, 1, now + timedelta(hours=24))
        assert earnings == 100

        patch = await fetch_patch(user, 1)
        assert patch["crop_type"] is None
        assert crop_fields_coupled(patch)
        assert (await get_resources(user))["sbr_coins"] == 100

    async def test_failed_plant_changes_nothing(self, user, now, set_resources, fetch_patch):
        await set_resources(user, water_drops=5)
        before_res = await get_resources(user)
        before_patch = await fetch_patch(user, 1)

        with pytest.raises(InsufficientResourceError):
            await plant(user, 1, "potato", now)

        assert await get_resources(user) == before_res
        assert await fetch_patch(user, 1) == before_patch

    async def test_missing_seed(self, user, now, set_resources):
        await set_resources(user, potato_seeds=0)
        with pytest.raises(InsufficientResourceError):
            await plant(user, 1, "potato", now)
        assert (await get_resources(user))["water_drops"] == 10

    async def test_occupied_patch(self, user, now, set_resources):
        await set_resources(user, water_drops=100, potato_seeds=2)
        await plant(user, 1, "potato", now)
        with pytest.raises(StateConflictError):
            await plant(user, 1, "potato", now)
        res = await get_resources(user)
        assert res["potato_seeds"] == 1
        assert res["water_drops"] == 90

    async def test_locked_patch(self, user, now):
        with pytest.raises(StateConflictError):
            await plant(user, 4, "potato", now)

    @pytest.mark.parametrize("number", [0, 9, -1])
    async def test_unknown_patch_number(self, user, now, number):
        with pytest.raises(ValidationError):
            await plant(user, number, "potato", now)

    async def test_unknown_crop(self, user, now):
        with pytest.raises(ValidationError):
            await plant(user, 1, "banana", now)

    async def test_unknown_user(self, now):
        with pytest.raises(NotFoundError):
            await plant(999, 1, "potato", now)

    async def test_carrot_costs_heavy_water(self, user, now, set_resources):
        await set_resources(user, carrot_seeds=1, heavy_water_drops=1, water_drops=0)
        result = await plant(user, 2, "carrot", now)
        assert result["harvest_time"] == now + timedelta(hours=144)
        res = await get_resources(user)
        assert res["heavy_water_drops"] == 0
        assert res["carrot_seeds"] == 0

    async def test_carrot_without_heavy_water(self, user, now, set_resources):
        await set_resources(user, carrot_seeds=1, heavy_water_drops=0, water_drops=100)
        with pytest.raises(InsufficientResourceError):
            await plant(user, 2, "carrot", now)
        assert (await get_resources(user))["water_drops"] == 100

    async def test_stats_updated(self, user, now):
        await plant(user, 1, "potato", now)
        profile = await database.get_user_with_resources(user)
        assert profile["crops_planted"] == 1


class TestSweep:
    def test_sweep_is_pure_and_idempotent(self, now):
        patches = [
            {"id": 1, "crop_type": "potato", "is_ready": 0, "harvest_time": to_db(now - timedelta(minutes=1))},
            {"id": 2, "crop_type": "tomato", "is_ready": 0, "harvest_time": to_db(now + timedelta(hours=1))},
            {"id": 3, "crop_type": None, "is_ready": 0, "harvest_time": None},
            {"id": 4, "crop_type": "onion", "is_ready": 1, "harvest_time": to_db(now - timedelta(hours=5))},
        ]
        ready = sweep_ready(patches, now)
        assert [p["id"] for p in ready] == [1]
        assert patches[0]["is_ready"] == 0

        for p in ready:
            p["is_ready"] = 1
        assert sweep_ready(patches, now) == []

    def test_due_exactly_now_is_ready(self, now):
        patches = [{"id": 1, "crop_type": "potato", "is_ready": 0, "harvest_time": to_db(now)}]
        assert len(sweep_ready(patches, now)) == 1

    async def test_monitor_twice(self, user, now):
        await plant(user, 1, "potato", now)
        later = now + timedelta(hours=25)
        assert len(await monitor_crop_growth(later)) == 1
        assert await monitor_crop_growth(later) == []

    async def test_monitor_skips_growing(self, user, now):
        await plant(user, 1, "potato", now)
        assert await monitor_crop_growth(now + timedelta(hours=23)) == []


class TestHarvest:
    async def test_not_ready_fails_without_change(self, user, now, fetch_patch):
        await plant(user, 1, "potato", now)
        before = await fetch_patch(user, 1)
        with pytest.raises(StateConflictError):
            await harvest(user, 1, now + timedelta(hours=23))
        assert await fetch_patch(user, 1) == before
        assert (await get_resources(user))["sbr_coins"] == 0

    async def test_due_before_sweep(self, user, now):
        await plant(user, 1, "potato", now)
        assert await harvest(user, 1, now + timedelta(hours=24, seconds=30)) == 100

    async def test_credited_once(self, user, now):
        await plant(user, 1, "potato", now)
        later = now + timedelta(hours=24)
        await harvest(user, 1, later)
        with pytest.raises(StateConflictError):
            await harvest(user, 1, later)
        assert (await get_resources(user))["sbr_coins"] == 100

    async def test_empty_patch(self, user, now):
        with pytest.raises(StateConflictError):
            await harvest(user, 1, now)

    async def test_harvest_all(self, user, now, set_resources):
        await set_resources(user, water_drops=100, potato_seeds=2, tomato_seeds=1)
        await plant(user, 1, "potato", now)
        await plant(user, 2, "potato", now)
        await plant(user, 3, "tomato", now)

        count, total = await harvest_all(user, now + timedelta(hours=24))
        assert (count, total) == (2, 200)

        status = await get_farm_status(user, now + timedelta(hours=24))
        assert status["patches"][2]["crop_type"] == "tomato"

    async def test_harvest_all_nothing_ready(self, user, now):
        with pytest.raises(StateConflictError):
            await harvest_all(user, now)


class TestBooster:
    async def test_shifts_harvest_two_hours(self, user, now, set_resources):
        await set_resources(user, boosters=1)
        await plant(user, 1, "potato", now)
        result = await apply_booster(user, 1, now)
        assert result["harvest_time"] == now + timedelta(hours=22)
        assert result["is_ready"] is False
        assert (await get_resources(user))["boosters"] == 0

    async def test_cap_per_planting(self, user, now, set_resources):
        # картофель: 12 часов / 2 = 6 бустеров
        await set_resources(user, boosters=10)
        await plant(user, 1, "potato", now)
        for _ in range(6):
            await apply_booster(user, 1, now)
        with pytest.raises(StateConflictError):
            await apply_booster(user, 1, now)
        assert (await get_resources(user))["boosters"] == 4

    async def test_boost_into_ready(self, user, now, set_resources):
        await set_resources(user, boosters=1)
        await plant(user, 1, "potato", now)
        result = await apply_booster(user, 1, now + timedelta(hours=23))
        assert result["is_ready"] is True
        assert await harvest(user, 1, now + timedelta(hours=23)) == 100

    async def test_ready_patch_rejected(self, user, now, set_resources):
        await set_resources(user, boosters=1)
        await plant(user, 1, "potato", now)
        with pytest.raises(StateConflictError):
            await apply_booster(user, 1, now + timedelta(hours=24))
        assert (await get_resources(user))["boosters"] == 1

    async def test_no_boosters(self, user, now):
        await plant(user, 1, "potato", now)
        with pytest.raises(InsufficientResourceError):
            await apply_booster(user, 1, now)

    async def test_empty_patch(self, user, now, set_resources):
        await set_resources(user, boosters=1)
        with pytest.raises(StateConflictError):
            await apply_booster(user, 1, now)

    async def test_counter_resets_after_harvest(self, user, now, set_resources, fetch_patch):
        await set_resources(user, boosters=2, potato_seeds=2, water_drops=20)
        await plant(user, 1, "potato", now)
        await apply_booster(user, 1, now)
        await harvest(user, 1, now + timedelta(hours=22))
        await plant(user, 1, "potato", now + timedelta(hours=22))
        assert (await fetch_patch(user, 1))["boosters_used"] == 0


class TestExpand:
    async def test_unlocks_next_patch(self, user, set_resources):
        await set_resources(user, parts_owned=10)
        assert await expand_farm(user) == 4
        assert (await get_resources(user))["parts_owned"] == 0

    async def test_not_enough_parts(self, user, set_resources):
        await set_resources(user, parts_owned=9)
        with pytest.raises(InsufficientResourceError):
            await expand_farm(user)

    async def test_all_unlocked(self, user, set_resources):
        await set_resources(user, parts_owned=50)
        async with database.transaction() as db:
            await db.execute("UPDATE patches SET is_unlocked = 1 WHERE telegram_id = ?", (user,))
        with pytest.raises(StateConflictError):
            await expand_farm(user)
        assert (await get_resources(user))["parts_owned"] == 50


class TestProgress:
    def test_growth_progress(self, now):
        end = now + timedelta(hours=10)
        assert growth_progress(now, end, now) == 0.0
        assert growth_progress(now, end, now + timedelta(hours=5)) == 50.0
        assert growth_progress(now, end, now + timedelta(hours=20)) == 100.0
        assert growth_progress(None, None, now) == 0.0

    async def test_farm_status_annotations(self, user, now):
        await plant(user, 1, "potato", now)
        status = await get_farm_status(user, now + timedelta(hours=6))
        patch = status["patches"][0]
        assert patch["progress_percent"] == 25.0
        assert patch["time_remaining"] == 18 * 3600
        assert patch["is_ready"] is False
        assert patch["boosters_left"] == 6
