"""Tests for the admin REST API."""

from datetime import timedelta

import jwt
import pytest
import pytest_asyncio
from aiohttp import test_utils

import admin_server
import contests
import database
import vip
from ledger import get_resources
from notifications import get_pending
from timeutils import utcnow


@pytest_asyncio.fixture
async def client(monkeypatch):
    monkeypatch.setattr(admin_server, "ADMIN_USERNAME", "admin")
    monkeypatch.setattr(admin_server, "ADMIN_PASSWORD", "secret")
    async with test_utils.TestClient(test_utils.TestServer(admin_server.create_app())) as client:
        yield client


@pytest.fixture
def auth():
    return {"Authorization": f"Bearer {admin_server.create_token('admin')}"}


class TestAuth:
    async def test_health_is_public(self, client):
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.text() == "OK"

    async def test_token_required(self, client):
        resp = await client.get("/api/stats/overview")
        assert resp.status == 401

    async def test_login(self, client):
        resp = await client.post("/api/auth/login", json={"username": "admin", "password": "secret"})
        assert resp.status == 200
        token = (await resp.json())["token"]
        assert admin_server.verify_token(token)["sub"] == "admin"

        resp = await client.get("/api/stats/overview", headers={"Authorization": f"Bearer {token}"})
        assert resp.status == 200

    async def test_bad_password(self, client):
        resp = await client.post("/api/auth/login", json={"username": "admin", "password": "guess"})
        assert resp.status == 401

    async def test_login_disabled_without_password(self, client, monkeypatch):
        monkeypatch.setattr(admin_server, "ADMIN_PASSWORD", "")
        resp = await client.post("/api/auth/login", json={"username": "admin", "password": ""})
        assert resp.status == 403

    async def test_expired_token(self, client):
        token = admin_server.create_token("admin", now=utcnow() - timedelta(days=2))
        resp = await client.get("/api/users", headers={"Authorization": f"Bearer {token}"})
        assert resp.status == 401

    async def test_garbage_token(self, client):
        resp = await client.get("/api/users", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status == 401

    async def test_non_admin_role(self, client):
        token = jwt.encode(
            {"sub": "viewer", "role": "viewer", "exp": utcnow() + timedelta(hours=1)},
            admin_server.ADMIN_JWT_SECRET, algorithm=admin_server.JWT_ALGORITHM
        )
        resp = await client.get("/api/users", headers={"Authorization": f"Bearer {token}"})
        assert resp.status == 403


class TestUsers:
    async def test_list_and_details(self, client, auth, user):
        resp = await client.get("/api/users", headers=auth)
        assert [u["telegram_id"] for u in (await resp.json())["users"]] == [user]

        resp = await client.get(f"/api/users/{user}", headers=auth)
        body = await resp.json()
        assert body["user"]["username"] == "farmer"
        assert len(body["patches"]) == 8
        assert body["vip"] is None

    async def test_unknown_user(self, client, auth):
        assert (await client.get("/api/users/404", headers=auth)).status == 404
        assert (await client.post("/api/users/404/ban", headers=auth, json={})).status == 404

    async def test_bad_id(self, client, auth):
        assert (await client.get("/api/users/abc", headers=auth)).status == 400

    async def test_ban(self, client, auth, user):
        resp = await client.post(f"/api/users/{user}/ban", headers=auth, json={"reason": "боты"})
        assert resp.status == 200
        assert await database.is_banned(user)

        await client.post(f"/api/users/{user}/unban", headers=auth)
        assert not await database.is_banned(user)

    async def test_gift_capped(self, client, auth, user):
        resp = await client.post(f"/api/users/{user}/gift", headers=auth, json={"type": "water_drops", "amount": 500})
        assert resp.status == 200
        assert (await resp.json())["applied"] == {"water_drops": 90}
        assert (await get_resources(user))["water_drops"] == 100
        assert len(await get_pending()) == 1

    async def test_gift_invalid_type(self, client, auth, user):
        resp = await client.post(f"/api/users/{user}/gift", headers=auth, json={"type": "gold", "amount": 5})
        assert resp.status == 400
        assert "error" in await resp.json()

    async def test_invalid_json(self, client, auth, user):
        resp = await client.post(
            f"/api/users/{user}/gift", headers={**auth, "Content-Type": "application/json"}, data="{oops"
        )
        assert resp.status == 400


class TestVipAndPayments:
    async def test_create_subscription(self, client, auth, user):
        resp = await client.post("/api/vip/create", headers=auth, json={"telegram_id": user, "tier": 2})
        assert resp.status == 200
        assert (await vip.get_active_subscription(user))["tier"] == 2

        resp = await client.get("/api/vip/subscriptions", headers=auth)
        assert len((await resp.json())["subscriptions"]) == 1

    async def test_zero_duration_rejected(self, client, auth, user):
        resp = await client.post(
            "/api/vip/create", headers=auth, json={"telegram_id": user, "tier": 1, "duration_days": 0}
        )
        assert resp.status == 400
        assert await vip.get_active_subscription(user) is None

    async def test_invalid_tier(self, client, auth, user):
        resp = await client.post("/api/vip/create", headers=auth, json={"telegram_id": user, "tier": 9})
        assert resp.status == 400

    async def test_approve_twice(self, client, auth, user):
        payment_id = await vip.request_purchase(user, 1)
        resp = await client.get("/api/payments/pending", headers=auth)
        assert [p["id"] for p in (await resp.json())["payments"]] == [payment_id]

        resp = await client.post(f"/api/payments/{payment_id}/approve", headers=auth, json={"notes": "tx ok"})
        assert resp.status == 200
        assert (await resp.json())["subscription"]["tier"] == 1

        resp = await client.post(f"/api/payments/{payment_id}/approve", headers=auth)
        assert resp.status == 409

    async def test_reject(self, client, auth, user):
        payment_id = await vip.request_purchase(user, 1)
        resp = await client.post(f"/api/payments/{payment_id}/reject", headers=auth, json={"reason": "нет оплаты"})
        assert resp.status == 200
        assert await vip.list_pending_payments() == []


class TestContests:
    async def test_create_end_participants(self, client, auth, user):
        end = (utcnow() + timedelta(hours=2)).isoformat()
        resp = await client.post(
            "/api/contests", headers=auth,
            json={"type": "special", "end_date": end, "prize_pool": {"first": 100}}
        )
        assert resp.status == 201
        contest_id = (await resp.json())["contest"]["id"]

        await contests.join(user, contest_id)
        resp = await client.get(f"/api/contests/{contest_id}/participants", headers=auth)
        assert [p["telegram_id"] for p in (await resp.json())["participants"]] == [user]

        resp = await client.post(f"/api/contests/{contest_id}/end", headers=auth)
        body = await resp.json()
        assert body["contest"]["status"] == "ended"
        assert body["contest"]["winners"][0]["telegram_id"] == user
        assert (await get_resources(user))["sbr_coins"] == 100

        resp = await client.get("/api/contests?status=ended", headers=auth)
        assert len((await resp.json())["contests"]) == 1

    async def test_create_invalid(self, client, auth):
        resp = await client.post("/api/contests", headers=auth, json={"type": "special"})
        assert resp.status == 400
        resp = await client.post(
            "/api/contests", headers=auth,
            json={"type": "special", "end_date": "tomorrow", "prize_pool": {}}
        )
        assert resp.status == 400

    @pytest.mark.parametrize("limit, status", [(0, 400), (-3, 400), (None, 201), (5, 201)])
    async def test_max_participants(self, client, auth, limit, status):
        """Ноль участников - ошибка, а не «без ограничений»."""
        end = (utcnow() + timedelta(hours=2)).isoformat()
        resp = await client.post(
            "/api/contests", headers=auth,
            json={"type": "special", "end_date": end, "max_participants": limit}
        )
        assert resp.status == status
        if status == 201:
            assert (await resp.json())["contest"]["max_participants"] == limit
        else:
            assert await contests.list_contests() == []

    async def test_unknown_contest(self, client, auth):
        assert (await client.post("/api/contests/77/end", headers=auth)).status == 404


class TestNotificationsAndSystem:
    async def test_broadcast(self, client, auth, user):
        resp = await client.post("/api/notifications/broadcast", headers=auth, json={"message": "Обновление"})
        assert (await resp.json())["recipients"] == 1

        resp = await client.post("/api/notifications/broadcast", headers=auth, json={})
        assert resp.status == 400

    async def test_single_notification(self, client, auth, user):
        resp = await client.post(
            "/api/notifications/user", headers=auth,
            json={"telegram_id": user, "message": "Привет", "priority": "high"}
        )
        assert resp.status == 200
        resp = await client.get("/api/notifications/history", headers=auth)
        assert (await resp.json())["notifications"][0]["priority"] == "high"

    async def test_stats(self, client, auth, user):
        resp = await client.get("/api/stats/overview", headers=auth)
        body = await resp.json()
        assert body["users"]["total_users"] == 1
        assert body["pending_payments"] == 0

        resp = await client.get("/api/stats/games", headers=auth)
        assert (await resp.json())["total_crops_planted"] == 0

    async def test_system_status_without_scheduler(self, client, auth):
        resp = await client.get("/api/system/status", headers=auth)
        assert (await resp.json())["jobs"] == []

    async def test_backup(self, client, auth, tmp_path, monkeypatch):
        monkeypatch.setattr(database, "BACKUP_DIR", str(tmp_path / "backups"))
        resp = await client.post("/api/system/backup", headers=auth)
        assert resp.status == 200
        assert (await resp.json())["path"].startswith(str(tmp_path))
