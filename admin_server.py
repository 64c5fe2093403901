import functools
import hmac
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt
from aiohttp import web

from config import ADMIN_JWT_SECRET, ADMIN_PASSWORD, ADMIN_TOKEN_TTL_HOURS, ADMIN_USERNAME
import contests
from database import (
    backup_database, ban_user, get_game_stats, get_user_stats, get_user_with_resources,
    list_users, require_user, transaction, unban_user
)
from errors import InsufficientResourceError, NotFoundError, StateConflictError, ValidationError
from ledger import describe, gift
from notifications import (
    broadcast, enqueue, get_notification_stats, get_recent_notifications
)
from patches import get_patches
from timeutils import ensure_utc, to_db, utcnow
import vip

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

PUBLIC_PATHS = {"/", "/health", "/api/auth/login"}

ERROR_STATUS = (
    (ValidationError, 400),
    (InsufficientResourceError, 400),
    (StateConflictError, 409),
    (NotFoundError, 404),
)

routes = web.RouteTableDef()

FARM_SCHEDULER = web.AppKey("farm_scheduler", object)


def create_token(username: str, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    payload = {
        "sub": username,
        "role": "admin",
        "iat": now,
        "exp": now + timedelta(hours=ADMIN_TOKEN_TTL_HOURS),
    }
    return jwt.encode(payload, ADMIN_JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, ADMIN_JWT_SECRET, algorithms=[JWT_ALGORITHM], options={"require": ["exp", "sub"]})


_dumps = functools.partial(json.dumps, default=str, ensure_ascii=False)


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def error_response(message: str, status: int) -> web.Response:
    return json_response({"error": message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except (ValidationError, InsufficientResourceError, StateConflictError, NotFoundError) as e:
        status = next(code for cls, code in ERROR_STATUS if isinstance(e, cls))
        return error_response(str(e), status)
    except Exception:
        logger.exception(f"Ошибка админ-API {request.method} {request.path}")
        return error_response("Internal server error", 500)


@web.middleware
async def auth_middleware(request: web.Request, handler):
    if request.path in PUBLIC_PATHS or not request.path.startswith("/api/"):
        return await handler(request)

    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return error_response("Authorization required", 401)
    try:
        payload = verify_token(header[len("Bearer "):])
    except jwt.ExpiredSignatureError:
        return error_response("Token expired", 401)
    except jwt.InvalidTokenError:
        return error_response("Invalid token", 401)
    if payload.get("role") != "admin":
        return error_response("Admin role required", 403)

    request["admin"] = payload["sub"]
    return await handler(request)


async def read_json(request: web.Request) -> Dict:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Тело запроса должно быть JSON")
    if not isinstance(data, dict):
        raise ValidationError("Тело запроса должно быть JSON-объектом")
    return data


def int_param(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Параметр {name} должен быть целым числом")


def parse_time(value: Any, name: str) -> datetime:
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value))
        except ValueError:
            pass
    raise ValidationError(f"Параметр {name} должен быть датой ISO-8601")


def match_id(request: web.Request) -> int:
    return int_param(request.match_info["id"], "id")


async def health_check(request):
    return web.Response(text="OK")


@routes.post("/api/auth/login")
async def login(request: web.Request):
    if not ADMIN_PASSWORD:
        return error_response("Admin access is not configured", 403)
    data = await read_json(request)
    username = str(data.get("username", ""))
    password = str(data.get("password", ""))
    if not (hmac.compare_digest(username, ADMIN_USERNAME) and hmac.compare_digest(password, ADMIN_PASSWORD)):
        logger.warning(f"Неудачный вход в админ-панель: {username!r}")
        return error_response("Invalid credentials", 401)
    logger.info(f"Вход в админ-панель: {username}")
    return json_response({
        "token": create_token(username),
        "expires_in": ADMIN_TOKEN_TTL_HOURS * 3600,
    })


# Статистика

@routes.get("/api/stats/overview")
async def stats_overview(request: web.Request):
    return json_response({
        "users": await get_user_stats(),
        "notifications": await get_notification_stats(),
        "pending_payments": len(await vip.list_pending_payments()),
    })


@routes.get("/api/stats/games")
async def stats_games(request: web.Request):
    return json_response(await get_game_stats())


# Пользователи

@routes.get("/api/users")
async def users_list(request: web.Request):
    limit = int_param(request.query.get("limit", 50), "limit")
    offset = int_param(request.query.get("offset", 0), "offset")
    users = await list_users(min(limit, 500), offset, request.query.get("search"))
    return json_response({"users": users, "limit": limit, "offset": offset})


@routes.get("/api/users/{id}")
async def user_details(request: web.Request):
    telegram_id = match_id(request)
    user = await get_user_with_resources(telegram_id)
    if not user:
        raise NotFoundError(f"Пользователь {telegram_id} не найден")
    return json_response({
        "user": user,
        "patches": await get_patches(telegram_id),
        "vip": await vip.get_active_subscription(telegram_id),
    })


@routes.post("/api/users/{id}/ban")
async def user_ban(request: web.Request):
    telegram_id = match_id(request)
    data = await read_json(request)
    reason = data.get("reason") or "Нарушение правил"
    await ban_user(telegram_id, reason)
    return json_response({"success": True})


@routes.post("/api/users/{id}/unban")
async def user_unban(request: web.Request):
    await unban_user(match_id(request))
    return json_response({"success": True})


@routes.post("/api/users/{id}/gift")
async def user_gift(request: web.Request):
    telegram_id = match_id(request)
    data = await read_json(request)
    amount = int_param(data.get("amount"), "amount")
    async with transaction() as db:
        await require_user(db, telegram_id)
        applied = await gift(telegram_id, data.get("type"), amount, db=db)
        await enqueue(telegram_id, f"Подарок от администрации: {describe(applied)}", "admin", db=db)
    logger.info(f"{request['admin']} подарил {telegram_id}: {applied}")
    return json_response({"success": True, "applied": applied})


# VIP и платежи

@routes.get("/api/vip/subscriptions")
async def vip_subscriptions(request: web.Request):
    active_only = request.query.get("active", "1") != "0"
    return json_response({"subscriptions": await vip.list_subscriptions(active_only)})


@routes.post("/api/vip/create")
async def vip_create(request: web.Request):
    data = await read_json(request)
    telegram_id = int_param(data.get("telegram_id"), "telegram_id")
    tier = int_param(data.get("tier"), "tier")
    duration = (
        int_param(data["duration_days"], "duration_days") if data.get("duration_days") is not None else None
    )
    async with transaction() as db:
        subscription = await vip.purchase(
            telegram_id, tier, duration, payment_method="admin",
            transaction_id=f"admin:{request['admin']}", db=db
        )
        await enqueue(
            telegram_id, f"Вам выдана подписка {vip.get_tier(tier).name}!", "vip", "high", db=db
        )
    return json_response({"success": True, "subscription": subscription})


@routes.get("/api/payments/pending")
async def payments_pending(request: web.Request):
    return json_response({"payments": await vip.list_pending_payments()})


@routes.post("/api/payments/{id}/approve")
async def payment_approve(request: web.Request):
    data = await read_json(request)
    subscription = await vip.approve_payment(match_id(request), request["admin"], data.get("notes"))
    return json_response({"success": True, "subscription": subscription})


@routes.post("/api/payments/{id}/reject")
async def payment_reject(request: web.Request):
    data = await read_json(request)
    await vip.reject_payment(match_id(request), request["admin"], data.get("reason", ""))
    return json_response({"success": True})


# Конкурсы

@routes.get("/api/contests")
async def contests_list(request: web.Request):
    items = await contests.list_contests(request.query.get("status"))
    return json_response({"contests": [c.to_dict() for c in items]})


@routes.post("/api/contests")
async def contests_create(request: web.Request):
    data = await read_json(request)
    now = utcnow()
    start = parse_time(data["start_date"], "start_date") if data.get("start_date") else now
    if "end_date" not in data:
        raise ValidationError("Не указан end_date")
    contest = await contests.create(
        data.get("type", "special"),
        start,
        parse_time(data["end_date"], "end_date"),
        entry_cost=int_param(data.get("entry_cost", 0), "entry_cost"),
        ads_required=int_param(data.get("ads_required", 0), "ads_required"),
        prize_pool=data.get("prize_pool") or {},
        max_participants=int_param(data["max_participants"], "max_participants")
        if data.get("max_participants") is not None else None,
        now=now,
    )
    return json_response({"success": True, "contest": contest.to_dict()}, status=201)


@routes.post("/api/contests/{id}/end")
async def contests_end(request: web.Request):
    contest = await contests.settle(match_id(request), force=True)
    logger.info(f"{request['admin']} завершил конкурс #{contest.id}")
    return json_response({"success": True, "contest": contest.to_dict()})


@routes.get("/api/contests/{id}/participants")
async def contests_participants(request: web.Request):
    return json_response({"participants": await contests.get_participants(match_id(request))})


# Уведомления

@routes.post("/api/notifications/broadcast")
async def notifications_broadcast(request: web.Request):
    data = await read_json(request)
    message = data.get("message")
    if not message:
        raise ValidationError("Не указан текст сообщения")
    count = await broadcast(
        message,
        data.get("target_group", "all"),
        priority=data.get("priority", "normal"),
    )
    logger.info(f"{request['admin']} отправил рассылку ({count} получателей)")
    return json_response({"success": True, "recipients": count})


@routes.post("/api/notifications/user")
async def notifications_user(request: web.Request):
    data = await read_json(request)
    telegram_id = int_param(data.get("telegram_id"), "telegram_id")
    async with transaction() as db:
        await require_user(db, telegram_id)
        notification_id = await enqueue(
            telegram_id, data.get("message", ""), "admin", data.get("priority", "normal"), db=db
        )
    return json_response({"success": True, "id": notification_id})


@routes.get("/api/notifications/history")
async def notifications_history(request: web.Request):
    limit = int_param(request.query.get("limit", 50), "limit")
    return json_response({"notifications": await get_recent_notifications(min(limit, 500))})


# Система

@routes.get("/api/system/status")
async def system_status(request: web.Request):
    farm_scheduler = request.app.get(FARM_SCHEDULER)
    return json_response({
        "time": to_db(utcnow()),
        "jobs": farm_scheduler.status() if farm_scheduler else [],
        "notifications": await get_notification_stats(),
    })


@routes.post("/api/system/backup")
async def system_backup(request: web.Request):
    path = await backup_database()
    return json_response({"success": True, "path": path})


def create_app(farm_scheduler=None) -> web.Application:
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[FARM_SCHEDULER] = farm_scheduler
    app.router.add_get('/', health_check)
    app.router.add_get('/health', health_check)
    app.router.add_routes(routes)
    return app
