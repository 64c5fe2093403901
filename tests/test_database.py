"""Tests for user registration, referrals, bans and maintenance helpers."""

import os
from datetime import timedelta

import pytest

import database
from errors import NotFoundError
from ledger import get_resources


class TestRegistration:
    async def test_new_user_gets_starting_farm(self, now):
        user = await database.get_or_create_user(5, now=now, username="anna")
        assert user["is_new"] is True
        assert user["username"] == "anna"
        assert len(user["referral_code"]) == 8

        res = await get_resources(5)
        assert res["water_drops"] == 10
        assert res["potato_seeds"] == 1

    async def test_existing_user_not_reset(self, user, now, set_resources):
        await set_resources(user, water_drops=77)
        again = await database.get_or_create_user(user, now=now + timedelta(hours=1))
        assert again["is_new"] is False
        assert (await get_resources(user))["water_drops"] == 77

    async def test_require_unknown_user(self):
        async with database.transaction() as db:
            with pytest.raises(NotFoundError):
                await database.require_user(db, 404)


class TestReferral:
    async def test_referrer_rewarded_once(self, user, now):
        code = (await database.get_user(user))["referral_code"]

        invited = await database.get_or_create_user(2002, referral_code=f"ref_{code.lower()}", now=now)
        assert invited["referred_by"] == user
        assert await database.get_referral_count(user) == 1
        assert (await get_resources(user))["water_drops"] == 15

        # повторный /start с тем же кодом ничего не даёт
        await database.get_or_create_user(2002, referral_code=code, now=now)
        assert await database.get_referral_count(user) == 1

    async def test_unknown_code_ignored(self, now):
        invited = await database.get_or_create_user(2002, referral_code="NOPE", now=now)
        assert invited["referred_by"] is None


class TestBans:
    async def test_ban_and_unban(self, user):
        await database.ban_user(user, "спам")
        assert await database.is_banned(user)
        assert (await database.get_user_stats())["banned_users"] == 1

        await database.unban_user(user)
        assert not await database.is_banned(user)

    async def test_ban_unknown_user(self):
        with pytest.raises(NotFoundError):
            await database.ban_user(404, "спам")


class TestMaintenance:
    async def test_user_stats(self, user, now):
        stats = await database.get_user_stats(now)
        assert stats["total_users"] == 1
        assert stats["new_today"] == 1
        assert stats["vip_users"] == 0

    async def test_list_users_search(self, user, make_user):
        await make_user(2002, username="other")
        found = await database.list_users(search="farm")
        assert [u["telegram_id"] for u in found] == [user]

    async def test_backup_rotation(self, user, now, tmp_path, monkeypatch):
        monkeypatch.setattr(database, "BACKUP_KEEP", 2)
        backup_dir = str(tmp_path / "backups")
        for hour in range(3):
            await database.backup_database(now + timedelta(hours=hour), backup_dir)
        assert len(os.listdir(backup_dir)) == 2

    async def test_cleanup_keeps_fresh_rows(self, user, now):
        removed = await database.cleanup_old_data(now)
        assert removed == {"vip_rewards": 0, "contests": 0, "notifications": 0}
