"""Shared fixtures: every test gets its own SQLite file."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

import database

# понедельник, середина дня
T0 = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(autouse=True)
async def fresh_db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_NAME", str(tmp_path / "test.db"))
    await database.init_db()
    yield


@pytest.fixture
def now():
    return T0


@pytest.fixture
def make_user(now):
    async def _make(telegram_id=1001, **profile):
        user = await database.get_or_create_user(telegram_id, now=now, **profile)
        return user["telegram_id"]
    return _make


@pytest_asyncio.fixture
async def user(make_user):
    return await make_user(1001, username="farmer")


@pytest.fixture
def set_resources():
    async def _set(telegram_id, **values):
        assignments = ", ".join(f"{column} = ?" for column in values)
        async with database.transaction() as db:
            await db.execute(
                f"UPDATE user_resources SET {assignments} WHERE telegram_id = ?",
                (*values.values(), telegram_id)
            )
    return _set


@pytest.fixture
def fetch_patch():
    async def _fetch(telegram_id, number):
        async with database.transaction() as db:
            cursor = await db.execute(
                "SELECT * FROM patches WHERE telegram_id = ? AND patch_number = ?",
                (telegram_id, number)
            )
            return dict(await cursor.fetchone())
    return _fetch
