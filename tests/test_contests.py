"""Tests for the contest lifecycle: create, join, ad progress, settlement."""

import random
from datetime import timedelta

import pytest
import pytest_asyncio

import contests
import database
import vip
from errors import InsufficientResourceError, NotFoundError, StateConflictError, ValidationError
from ledger import get_resources
from notifications import get_pending
from timeutils import to_db

POOL = {
    "first": {"sbr_coins": 1000, "water_drops": 50},
    "second": {"sbr_coins": 500},
    "third": 250,
}


@pytest.fixture
def new_contest(now):
    async def _create(ads_required=2, entry_cost=0, prize_pool=None, max_participants=None):
        return await contests.create(
            "special", now - timedelta(hours=1), now + timedelta(hours=1),
            entry_cost=entry_cost, ads_required=ads_required,
            prize_pool=POOL if prize_pool is None else prize_pool,
            max_participants=max_participants, now=now,
        )
    return _create


@pytest_asyncio.fixture
async def players(make_user):
    return [await make_user(telegram_id) for telegram_id in (11, 22, 33, 44)]


async def enter(contest, telegram_id, ads, now):
    await contests.join(telegram_id, contest.id, now)
    for _ in range(ads):
        await contests.record_ad_watch(telegram_id, contest.id, now)


def expected_order(ids, seed):
    order = list(ids)
    random.Random(seed).shuffle(order)
    return order


class TestPrizeParsing:
    def test_int_shorthand(self):
        assert contests.Prize.from_dict(250) == contests.Prize(sbr_coins=250)

    def test_vip_prize_defaults_duration(self):
        prize = contests.Prize.from_dict({"vip_tier": 1})
        assert prize.duration_days == 30

    @pytest.mark.parametrize("data", [{"gems": 5}, {"sbr_coins": -1}, {"sbr_coins": "10"}, "big"])
    def test_invalid(self, data):
        with pytest.raises(ValidationError):
            contests.Prize.from_dict(data)

    def test_unknown_place(self):
        with pytest.raises(ValidationError):
            contests.PrizePool.from_dict({"fourth": 10})

    def test_prize_for_place(self):
        pool = contests.PrizePool.from_dict(POOL)
        assert pool.for_place(3) == contests.Prize(sbr_coins=250)
        assert pool.participation is None


class TestCreate:
    async def test_end_before_start(self, now):
        with pytest.raises(ValidationError):
            await contests.create("special", now, now, 0, 0, POOL)

    async def test_unknown_type(self, now):
        with pytest.raises(ValidationError):
            await contests.create("yearly", now, now + timedelta(days=1), 0, 0, POOL)

    async def test_created_active(self, new_contest, now):
        contest = await new_contest()
        assert contest.status == "active"
        assert contest.is_open(now)
        assert [c.id for c in await contests.get_active_contests(now)] == [contest.id]


class TestJoin:
    async def test_entry_cost_charged_once(self, user, new_contest, now, set_resources):
        await set_resources(user, sbr_coins=100)
        contest = await new_contest(entry_cost=20)
        assert await contests.join(user, contest.id, now) is True
        assert await contests.join(user, contest.id, now) is False
        assert (await get_resources(user))["sbr_coins"] == 80

    async def test_cannot_afford(self, user, new_contest, now):
        contest = await new_contest(entry_cost=20)
        with pytest.raises(InsufficientResourceError):
            await contests.join(user, contest.id, now)
        assert await contests.get_user_participation(user) == {}

    async def test_ended(self, user, new_contest, now):
        contest = await new_contest()
        with pytest.raises(StateConflictError):
            await contests.join(user, contest.id, now + timedelta(hours=1))

    async def test_full(self, players, new_contest, now):
        contest = await new_contest(max_participants=1)
        await contests.join(players[0], contest.id, now)
        with pytest.raises(StateConflictError):
            await contests.join(players[1], contest.id, now)

    async def test_unknown_contest(self, user, now):
        with pytest.raises(NotFoundError):
            await contests.join(user, 999, now)


class TestAdProgress:
    async def test_counts_per_participant(self, user, new_contest, now):
        contest = await new_contest()
        await contests.join(user, contest.id, now)
        assert await contests.record_ad_watch(user, contest.id, now) == 1
        assert await contests.record_ad_watch(user, contest.id, now) == 2
        assert await contests.get_user_participation(user) == {contest.id: 2}

    async def test_not_a_participant(self, user, new_contest, now):
        contest = await new_contest()
        with pytest.raises(NotFoundError):
            await contests.record_ad_watch(user, contest.id, now)

    async def test_record_all_open(self, user, new_contest, now):
        first = await new_contest()
        second = await new_contest()
        await contests.join(user, first.id, now)
        await contests.join(user, second.id, now)
        assert await contests.record_ad_watch_all(user, now) == 2
        assert await contests.record_ad_watch_all(user, now + timedelta(hours=2)) == 0


class TestAdWatch:
    async def test_water_and_progress(self, user, new_contest, now):
        contest = await new_contest()
        await contests.join(user, contest.id, now)
        assert await contests.process_ad_watch(user, now) == (1, 1)
        assert await contests.get_user_participation(user) == {contest.id: 1}
        res = await get_resources(user)
        assert res["water_drops"] == 11
        assert res["ads_watched_today"] == 1

    async def test_without_contests(self, user, now):
        assert await contests.process_ad_watch(user, now) == (1, 0)

    async def test_progress_failure_rolls_back_reward(self, user, new_contest, now, monkeypatch):
        """Если прогресс в конкурсах не записался, вода и счётчики рекламы не меняются."""
        contest = await new_contest()
        await contests.join(user, contest.id, now)

        async def broken(telegram_id, now=None, db=None):
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(contests, "record_ad_watch_all", broken)
        with pytest.raises(RuntimeError):
            await contests.process_ad_watch(user, now)

        res = await get_resources(user)
        assert res["water_drops"] == 10
        assert res["last_ad_watch"] is None
        assert res["ads_watched_today"] == 0
        assert res["ads_watched_total"] == 0
        assert await contests.get_user_participation(user) == {contest.id: 0}


class TestSettle:
    async def test_three_qualified(self, players, new_contest, now):
        contest = await new_contest(ads_required=5)
        for telegram_id in players[:3]:
            await enter(contest, telegram_id, 5, now)
        await enter(contest, players[3], 3, now)

        settled = await contests.settle(contest.id, now + timedelta(hours=1), rng=random.Random(42))
        order = expected_order(players[:3], 42)

        assert settled.status == "ended"
        assert [(w.place, w.telegram_id) for w in settled.winners] == list(zip((1, 2, 3), order))

        first, second, third = [await get_resources(t) for t in order]
        assert first["sbr_coins"] == 1000
        assert first["water_drops"] == 60
        assert second["sbr_coins"] == 500
        assert third["sbr_coins"] == 250
        assert (await get_resources(players[3]))["sbr_coins"] == 0

        profile = await database.get_user_with_resources(order[0])
        assert profile["contests_won"] == 1
        assert sorted(n["telegram_id"] for n in await get_pending()) == sorted(order)

    async def test_idempotent(self, players, new_contest, now):
        contest = await new_contest(ads_required=0)
        await enter(contest, players[0], 0, now)
        later = now + timedelta(hours=1)
        first = await contests.settle(contest.id, later, rng=random.Random(1))
        again = await contests.settle(contest.id, later, rng=random.Random(2))
        assert again.winners == first.winners
        assert (await get_resources(players[0]))["sbr_coins"] == 1000

    async def test_nobody_qualified(self, players, new_contest, now):
        contest = await new_contest(ads_required=5)
        await enter(contest, players[0], 4, now)
        settled = await contests.settle(contest.id, now + timedelta(hours=1))
        assert settled.status == "ended"
        assert settled.winners == []

    async def test_participation_prize(self, players, new_contest, now):
        pool = dict(POOL, participation={"water_drops": 5})
        contest = await new_contest(ads_required=1, prize_pool=pool)
        for telegram_id in players:
            await enter(contest, telegram_id, 1, now)

        settled = await contests.settle(contest.id, now + timedelta(hours=1), rng=random.Random(7))
        winners = {w.telegram_id for w in settled.winners}
        (rest,) = set(players) - winners
        res = await get_resources(rest)
        assert res["water_drops"] == 15
        assert res["sbr_coins"] == 0

    async def test_before_end_requires_force(self, players, new_contest, now):
        contest = await new_contest(ads_required=0)
        await enter(contest, players[0], 0, now)
        with pytest.raises(StateConflictError):
            await contests.settle(contest.id, now)
        settled = await contests.settle(contest.id, now, force=True)
        assert settled.winners[0].telegram_id == players[0]

    async def test_vip_prize(self, players, now):
        contest = await contests.create(
            "monthly", now - timedelta(days=1), now, 0, 0,
            {"first": {"vip_tier": 1, "duration_days": 30}}, now=now
        )
        await contests.join(players[0], contest.id, now - timedelta(hours=1))
        await contests.settle(contest.id, now)
        sub = await vip.get_active_subscription(players[0], now)
        assert sub["tier"] == 1
        assert sub["payment_method"] == "contest"

    async def test_settle_due(self, user, new_contest, now):
        due = await new_contest(ads_required=0)
        await contests.create("special", now, now + timedelta(days=2), 0, 0, POOL, now=now)
        settled = await contests.settle_due_contests(now + timedelta(hours=1))
        assert [c.id for c in settled] == [due.id]
        assert [c.status for c in await contests.list_contests("ended")] == ["ended"]


class TestPresets:
    async def test_daily(self, now):
        contest = await contests.create_daily_contest(now)
        assert to_db(contest.start_date) == "2025-03-10T00:00:00+00:00"
        assert to_db(contest.end_date) == "2025-03-10T23:30:00+00:00"
        assert contest.entry_cost == 20
        assert contest.ads_required == 5

        again = await contests.create_daily_contest(now + timedelta(hours=3))
        assert again.id == contest.id

    async def test_daily_skipped_after_end(self, now):
        late = now.replace(hour=23, minute=45)
        assert await contests.create_daily_contest(late) is None
        assert await contests.list_contests() == []

    async def test_existing_daily_returned_after_end(self, now):
        contest = await contests.create_daily_contest(now)
        again = await contests.create_daily_contest(now.replace(hour=23, minute=45))
        assert again.id == contest.id

    async def test_weekly_ends_sunday(self, now):
        contest = await contests.create_weekly_contest(now + timedelta(days=2))
        assert to_db(contest.start_date) == "2025-03-10T00:00:00+00:00"
        assert to_db(contest.end_date) == "2025-03-16T23:30:00+00:00"

    async def test_monthly(self, now):
        contest = await contests.create_monthly_contest(now)
        assert to_db(contest.end_date) == "2025-03-31T23:30:00+00:00"
        assert contest.prize_pool.first.vip_tier == 1
