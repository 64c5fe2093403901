import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import aiosqlite

from config import ADMIN_IDS, VIP_TIERS
from database import connect, require_user, transaction
from errors import GameError, NotFoundError, StateConflictError, ValidationError
from ledger import Grant, apply_grant, describe
from notifications import enqueue
from timeutils import days_between, from_db, reward_day, seconds_left, to_db, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VipTier:
    level: int
    name: str
    price_usdt: int
    duration_days: int
    extra_patches: int
    daily_seeds: Dict[str, int] = field(default_factory=dict)
    daily_water: int = 0
    daily_parts: int = 0
    # культура -> раз в сколько дней выдаётся одно семя
    cadence_seeds: Dict[str, int] = field(default_factory=dict)


TIERS: Dict[int, VipTier] = {level: VipTier(level=level, **data) for level, data in VIP_TIERS.items()}


def get_tier(level: int) -> VipTier:
    tier = TIERS.get(level)
    if tier is None:
        raise ValidationError(f"Неверный уровень VIP: {level}. Доступны {min(TIERS)}-{max(TIERS)}")
    return tier


def benefit_bundle(level: int, days_since_start: int) -> Grant:
    """Набор ежедневной награды для уровня на N-й день подписки."""
    tier = get_tier(level)
    seeds = dict(tier.daily_seeds)
    for crop_type, every in tier.cadence_seeds.items():
        if days_since_start % every == 0:
            seeds[crop_type] = seeds.get(crop_type, 0) + 1
    return Grant(water_drops=tier.daily_water, parts_owned=tier.daily_parts, seeds=seeds)


async def fetch_active_subscription(db: aiosqlite.Connection, telegram_id: int,
                                    now: datetime) -> Optional[Dict]:
    cursor = await db.execute("""
        SELECT * FROM vip_subscriptions
        WHERE telegram_id = ? AND is_active = 1 AND end_date > ?
        ORDER BY tier DESC, end_date DESC
        LIMIT 1
    """, (telegram_id, to_db(now)))
    row = await cursor.fetchone()
    return dict(row) if row else None


async def get_active_subscription(telegram_id: int, now: Optional[datetime] = None) -> Optional[Dict]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        return await fetch_active_subscription(db, telegram_id, now or utcnow())


async def _purchase(db: aiosqlite.Connection, telegram_id: int, level: int,
                    duration_days: Optional[int], now: datetime,
                    payment_method: str, transaction_id: Optional[str]) -> Dict:
    tier = get_tier(level)
    duration = timedelta(days=tier.duration_days if duration_days is None else duration_days)
    if duration.total_seconds() <= 0:
        raise ValidationError("Срок подписки должен быть больше нуля")
    await require_user(db, telegram_id)

    cursor = await db.execute("""
        SELECT * FROM vip_subscriptions
        WHERE telegram_id = ? AND tier = ? AND is_active = 1 AND end_date > ?
        ORDER BY end_date DESC LIMIT 1
    """, (telegram_id, level, to_db(now)))
    current = await cursor.fetchone()

    if current:
        end_date = max(from_db(current["end_date"]), now) + duration
        await db.execute(
            "UPDATE vip_subscriptions SET end_date = ?, transaction_id = ? WHERE id = ?",
            (to_db(end_date), transaction_id, current["id"])
        )
        subscription_id = current["id"]
    else:
        end_date = now + duration
        cursor = await db.execute(
            """INSERT INTO vip_subscriptions
               (telegram_id, tier, start_date, end_date, is_active, payment_method, transaction_id)
               VALUES (?, ?, ?, ?, 1, ?, ?)""",
            (telegram_id, level, to_db(now), to_db(end_date), payment_method, transaction_id)
        )
        subscription_id = cursor.lastrowid

    logger.info(f"VIP {level} для {telegram_id} до {to_db(end_date)}")
    cursor = await db.execute("SELECT * FROM vip_subscriptions WHERE id = ?", (subscription_id,))
    return dict(await cursor.fetchone())


async def purchase(telegram_id: int, level: int, duration_days: Optional[int] = None,
                   now: Optional[datetime] = None, payment_method: str = "manual",
                   transaction_id: Optional[str] = None,
                   db: Optional[aiosqlite.Connection] = None) -> Dict:
    now = now or utcnow()
    if db is not None:
        return await _purchase(db, telegram_id, level, duration_days, now, payment_method, transaction_id)
    async with transaction() as tx:
        return await _purchase(tx, telegram_id, level, duration_days, now, payment_method, transaction_id)


async def expire_sweep(now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    async with transaction() as db:
        cursor = await db.execute(
            "SELECT id, telegram_id, tier FROM vip_subscriptions WHERE is_active = 1 AND end_date <= ?",
            (to_db(now),)
        )
        expired = [dict(r) for r in await cursor.fetchall()]
        if not expired:
            return 0

        await db.execute(
            "UPDATE vip_subscriptions SET is_active = 0 WHERE is_active = 1 AND end_date <= ?",
            (to_db(now),)
        )
        for sub in expired:
            await enqueue(
                sub["telegram_id"],
                f"Срок подписки {get_tier(sub['tier']).name} истёк. Продлить можно командой /vip",
                "vip", db=db, now=now
            )

    logger.info(f"Истекло VIP-подписок: {len(expired)}")
    return len(expired)


async def _claim_daily_reward(db: aiosqlite.Connection, telegram_id: int, now: datetime) -> Dict[str, int]:
    subscription = await fetch_active_subscription(db, telegram_id, now)
    if not subscription:
        raise StateConflictError("У вас нет активной VIP-подписки")

    day = reward_day(now)
    cursor = await db.execute(
        "SELECT 1 FROM vip_rewards WHERE telegram_id = ? AND reward_date = ?",
        (telegram_id, day)
    )
    if await cursor.fetchone():
        raise StateConflictError("VIP-награда уже получена сегодня")

    days = days_between(from_db(subscription["start_date"]), now)
    grant = benefit_bundle(subscription["tier"], days)
    applied = await apply_grant(db, telegram_id, grant)

    await db.execute(
        """INSERT INTO vip_rewards (telegram_id, tier, reward_date, rewards_claimed, claimed_at)
           VALUES (?, ?, ?, ?, ?)""",
        (telegram_id, subscription["tier"], day, json.dumps(applied), to_db(now))
    )
    return applied


async def claim_daily_reward(telegram_id: int, now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or utcnow()
    async with transaction() as db:
        return await _claim_daily_reward(db, telegram_id, now)


async def process_daily_rewards(now: Optional[datetime] = None) -> int:
    """Автоматическая выдача VIP-наград всем активным подписчикам.

    Кто уже забрал награду сегодня сам, пропускается.
    """
    now = now or utcnow()
    async with connect() as db:
        cursor = await db.execute("""
            SELECT DISTINCT v.telegram_id FROM vip_subscriptions v
            JOIN users u ON u.telegram_id = v.telegram_id
            WHERE v.is_active = 1 AND v.end_date > ? AND u.is_banned = 0
        """, (to_db(now),))
        users = [r[0] for r in await cursor.fetchall()]

    granted = 0
    for telegram_id in users:
        try:
            async with transaction() as db:
                applied = await _claim_daily_reward(db, telegram_id, now)
                await enqueue(telegram_id, f"Ежедневная VIP-награда: {describe(applied)}", "vip", db=db, now=now)
        except GameError as e:
            logger.debug(f"VIP-награда для {telegram_id} пропущена: {e}")
            continue
        granted += 1

    logger.info(f"VIP-награды выданы: {granted} из {len(users)}")
    return granted


async def can_claim_today(telegram_id: int, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        if not await fetch_active_subscription(db, telegram_id, now):
            return False
        cursor = await db.execute(
            "SELECT 1 FROM vip_rewards WHERE telegram_id = ? AND reward_date = ?",
            (telegram_id, reward_day(now))
        )
        return await cursor.fetchone() is None


async def get_vip_info(telegram_id: int, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    subscription = await get_active_subscription(telegram_id, now)
    if not subscription:
        return {"is_vip": False, "tiers": TIERS}

    end_date = from_db(subscription["end_date"])
    return {
        "is_vip": True,
        "tier": get_tier(subscription["tier"]),
        "subscription": subscription,
        "end_date": end_date,
        "days_left": seconds_left(end_date, now) // 86400,
        "can_claim_daily": await can_claim_today(telegram_id, now),
        "tiers": TIERS,
    }


async def list_subscriptions(active_only: bool = True, now: Optional[datetime] = None,
                             limit: int = 100) -> List[Dict]:
    now = now or utcnow()
    query = """
        SELECT v.*, u.username, u.first_name FROM vip_subscriptions v
        LEFT JOIN users u ON u.telegram_id = v.telegram_id
    """
    params: list = []
    if active_only:
        query += " WHERE v.is_active = 1 AND v.end_date > ?"
        params.append(to_db(now))
    query += " ORDER BY v.end_date DESC LIMIT ?"
    params.append(limit)
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(query, params)
        return [dict(r) for r in await cursor.fetchall()]


# Оплата VIP подтверждается администратором вручную

async def request_purchase(telegram_id: int, level: int, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    tier = get_tier(level)
    async with transaction() as db:
        await require_user(db, telegram_id)
        cursor = await db.execute(
            "SELECT id FROM payments WHERE telegram_id = ? AND kind = 'vip' AND status = 'pending'",
            (telegram_id,)
        )
        if await cursor.fetchone():
            raise StateConflictError("У вас уже есть заявка на VIP, ожидающая подтверждения")

        cursor = await db.execute(
            """INSERT INTO payments (telegram_id, kind, tier, amount, currency, status, created_at)
               VALUES (?, 'vip', ?, ?, 'USDT', 'pending', ?)""",
            (telegram_id, level, tier.price_usdt, to_db(now))
        )
        payment_id = cursor.lastrowid
        for admin_id in ADMIN_IDS:
            await enqueue(
                admin_id,
                f"Заявка #{payment_id}: {tier.name} для {telegram_id}, {tier.price_usdt} USDT",
                "payment", "high", db=db, now=now
            )

    logger.info(f"Заявка на оплату #{payment_id}: VIP {level} от {telegram_id}")
    return payment_id


async def list_pending_payments() -> List[Dict]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("""
            SELECT p.*, u.username, u.first_name FROM payments p
            LEFT JOIN users u ON u.telegram_id = p.telegram_id
            WHERE p.status = 'pending'
            ORDER BY p.created_at
        """)
        return [dict(r) for r in await cursor.fetchall()]


async def _fetch_pending_payment(db: aiosqlite.Connection, payment_id: int) -> Dict:
    cursor = await db.execute("SELECT * FROM payments WHERE id = ?", (payment_id,))
    row = await cursor.fetchone()
    if not row:
        raise NotFoundError(f"Платёж #{payment_id} не найден")
    if row["status"] != "pending":
        raise StateConflictError(f"Платёж #{payment_id} уже обработан ({row['status']})")
    return dict(row)


async def approve_payment(payment_id: int, processed_by: str, notes: Optional[str] = None,
                          now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    async with transaction() as db:
        payment = await _fetch_pending_payment(db, payment_id)
        subscription = await _purchase(
            db, payment["telegram_id"], payment["tier"], None, now,
            "manual_approval", str(payment_id)
        )
        await db.execute(
            """UPDATE payments SET status = 'approved', processed_at = ?, processed_by = ?, notes = ?
               WHERE id = ?""",
            (to_db(now), processed_by, notes, payment_id)
        )
        await enqueue(
            payment["telegram_id"],
            f"Подписка {get_tier(payment['tier']).name} активирована. Приятной игры!",
            "payment", "high", db=db, now=now
        )
    return subscription


async def reject_payment(payment_id: int, processed_by: str, reason: str = "",
                         now: Optional[datetime] = None):
    now = now or utcnow()
    async with transaction() as db:
        payment = await _fetch_pending_payment(db, payment_id)
        await db.execute(
            """UPDATE payments SET status = 'rejected', processed_at = ?, processed_by = ?, notes = ?
               WHERE id = ?""",
            (to_db(now), processed_by, reason, payment_id)
        )
        await enqueue(
            payment["telegram_id"],
            f"Заявка на VIP отклонена. Причина: {reason or 'не указана'}",
            "payment", db=db, now=now
        )
    logger.info(f"Платёж #{payment_id} отклонён ({processed_by})")
