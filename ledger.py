import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

import aiosqlite

from config import (
    AD_COOLDOWN_SECONDS, AD_DAILY_LIMIT, AD_WATER, BOOSTER_PRICE, DAILY_WATER,
    MAX_BOOSTERS, MAX_HEAVY_WATER, MAX_WATER, PART_PRICE, WATER_PER_HEAVY
)
from crops import CATALOG, get_crop
from database import connect, transaction
from errors import InsufficientResourceError, NotFoundError, StateConflictError, ValidationError
from timeutils import from_db, reward_day, to_db, utcnow

logger = logging.getLogger(__name__)

CAPS = {
    "water_drops": MAX_WATER,
    "heavy_water_drops": MAX_HEAVY_WATER,
    "boosters": MAX_BOOSTERS,
}

RESOURCE_NAMES = {
    "sbr_coins": "SBRcoins",
    "water_drops": "💧 вода",
    "heavy_water_drops": "💧 тяжёлая вода",
    "boosters": "⚡ бустеры",
    "parts_owned": "🧩 детали грядок",
    **{crop.seed_column: f"{crop.emoji} семена" for crop in CATALOG.values()},
}

GIFT_TYPES = ("sbr_coins", "water_drops", "heavy_water_drops", "boosters", "parts_owned")


@dataclass
class Grant:
    """Набор ресурсов, начисляемых пользователю за одну операцию."""
    sbr_coins: int = 0
    water_drops: int = 0
    heavy_water_drops: int = 0
    boosters: int = 0
    parts_owned: int = 0
    seeds: Dict[str, int] = field(default_factory=dict)

    def columns(self) -> Dict[str, int]:
        values = {
            "sbr_coins": self.sbr_coins,
            "water_drops": self.water_drops,
            "heavy_water_drops": self.heavy_water_drops,
            "boosters": self.boosters,
            "parts_owned": self.parts_owned,
        }
        for crop_type, qty in self.seeds.items():
            values[get_crop(crop_type).seed_column] = qty
        return {k: v for k, v in values.items() if v}

    def is_empty(self) -> bool:
        return not self.columns()


def describe(amounts: Dict[str, int]) -> str:
    return ", ".join(f"{RESOURCE_NAMES.get(k, k)}: +{v}" for k, v in amounts.items() if v) or "ничего"


async def fetch_resources(db: aiosqlite.Connection, telegram_id: int) -> Dict:
    cursor = await db.execute("SELECT * FROM user_resources WHERE telegram_id = ?", (telegram_id,))
    row = await cursor.fetchone()
    if not row:
        raise NotFoundError("Пользователь не найден. Начните игру командой /start")
    return dict(row)


async def get_resources(telegram_id: int) -> Dict:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        return await fetch_resources(db, telegram_id)


async def apply_grant(db: aiosqlite.Connection, telegram_id: int, grant: Grant) -> Dict[str, int]:
    """Начисляет ресурсы с учётом лимитов. Возвращает фактически начисленное."""
    columns = grant.columns()
    if any(v < 0 for v in columns.values()):
        raise ValidationError("Количество не может быть отрицательным")
    if not columns:
        return {}

    current = await fetch_resources(db, telegram_id)
    applied = {}
    for column, amount in columns.items():
        new_value = current[column] + amount
        if column in CAPS:
            new_value = min(new_value, CAPS[column])
        applied[column] = max(0, new_value - current[column])

    assignments = ", ".join(f"{column} = {column} + ?" for column in applied)
    await db.execute(
        f"UPDATE user_resources SET {assignments} WHERE telegram_id = ?",
        (*applied.values(), telegram_id)
    )
    return applied


async def spend(db: aiosqlite.Connection, telegram_id: int, costs: Dict[str, int]) -> Dict:
    """Списывает ресурсы целиком или не списывает ничего."""
    costs = {k: v for k, v in costs.items() if v}
    if any(v < 0 for v in costs.values()):
        raise ValidationError("Количество не может быть отрицательным")

    current = await fetch_resources(db, telegram_id)
    for column, amount in costs.items():
        if current[column] < amount:
            raise InsufficientResourceError(
                f"Недостаточно ресурса «{RESOURCE_NAMES.get(column, column)}»: "
                f"нужно {amount}, у вас {current[column]}"
            )
    if costs:
        assignments = ", ".join(f"{column} = {column} - ?" for column in costs)
        await db.execute(
            f"UPDATE user_resources SET {assignments} WHERE telegram_id = ?",
            (*costs.values(), telegram_id)
        )
    return current


async def claim_daily_water(telegram_id: int, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    async with transaction() as db:
        current = await fetch_resources(db, telegram_id)
        last_claim = from_db(current["last_daily_claim"])
        if last_claim and reward_day(last_claim) == reward_day(now):
            raise StateConflictError("Ежедневная вода уже получена сегодня")

        applied = await apply_grant(db, telegram_id, Grant(water_drops=DAILY_WATER))
        await db.execute(
            "UPDATE user_resources SET last_daily_claim = ? WHERE telegram_id = ?",
            (to_db(now), telegram_id)
        )
    return applied.get("water_drops", 0)


async def _watch_ad(db: aiosqlite.Connection, telegram_id: int, now: datetime) -> int:
    current = await fetch_resources(db, telegram_id)
    last_watch = from_db(current["last_ad_watch"])
    watched_today = current["ads_watched_today"]
    if last_watch:
        passed = (now - last_watch).total_seconds()
        if passed < AD_COOLDOWN_SECONDS:
            raise StateConflictError(
                f"Следующая реклама через {int(AD_COOLDOWN_SECONDS - passed)} сек."
            )
        if reward_day(last_watch) != reward_day(now):
            watched_today = 0
    if watched_today >= AD_DAILY_LIMIT:
        raise StateConflictError(f"Дневной лимит рекламы ({AD_DAILY_LIMIT}) исчерпан")

    applied = await apply_grant(db, telegram_id, Grant(water_drops=AD_WATER))
    await db.execute(
        """UPDATE user_resources
           SET last_ad_watch = ?, ads_watched_today = ?, ads_watched_total = ads_watched_total + 1
           WHERE telegram_id = ?""",
        (to_db(now), watched_today + 1, telegram_id)
    )
    return applied.get("water_drops", 0)


async def watch_ad(telegram_id: int, now: Optional[datetime] = None,
                   db: Optional[aiosqlite.Connection] = None) -> int:
    now = now or utcnow()
    if db is not None:
        return await _watch_ad(db, telegram_id, now)
    async with transaction() as tx:
        return await _watch_ad(tx, telegram_id, now)


async def convert_heavy_water(telegram_id: int, amount: int = 1) -> int:
    if amount <= 0:
        raise ValidationError("Количество должно быть больше нуля")
    async with transaction() as db:
        current = await fetch_resources(db, telegram_id)
        if current["heavy_water_drops"] + amount > MAX_HEAVY_WATER:
            raise StateConflictError(f"Хранилище тяжёлой воды заполнено (максимум {MAX_HEAVY_WATER})")
        await spend(db, telegram_id, {"water_drops": amount * WATER_PER_HEAVY})
        await apply_grant(db, telegram_id, Grant(heavy_water_drops=amount))
    return amount


async def buy_seeds(telegram_id: int, crop_type: str, quantity: int = 1) -> int:
    crop = get_crop(crop_type)
    if quantity <= 0:
        raise ValidationError("Количество должно быть больше нуля")
    if crop.seed_price is None:
        raise ValidationError(f"{crop.name}: семена не продаются за SBRcoins")
    total = crop.seed_price * quantity
    async with transaction() as db:
        await spend(db, telegram_id, {"sbr_coins": total})
        await apply_grant(db, telegram_id, Grant(seeds={crop.key: quantity}))
    return total


async def buy_parts(telegram_id: int, quantity: int = 1) -> int:
    if quantity <= 0:
        raise ValidationError("Количество должно быть больше нуля")
    total = PART_PRICE * quantity
    async with transaction() as db:
        await spend(db, telegram_id, {"sbr_coins": total})
        await apply_grant(db, telegram_id, Grant(parts_owned=quantity))
    return total


async def buy_boosters(telegram_id: int, quantity: int = 1) -> int:
    if quantity <= 0:
        raise ValidationError("Количество должно быть больше нуля")
    total = BOOSTER_PRICE * quantity
    async with transaction() as db:
        current = await fetch_resources(db, telegram_id)
        if current["boosters"] + quantity > MAX_BOOSTERS:
            raise StateConflictError(f"Можно хранить не более {MAX_BOOSTERS} бустеров")
        await spend(db, telegram_id, {"sbr_coins": total})
        await apply_grant(db, telegram_id, Grant(boosters=quantity))
    return total


async def gift(telegram_id: int, kind: str, amount: int,
               db: Optional[aiosqlite.Connection] = None) -> Dict[str, int]:
    if kind not in GIFT_TYPES:
        raise ValidationError(f"Неверный тип подарка: {kind}")
    if amount <= 0:
        raise ValidationError("Количество должно быть больше нуля")
    grant = Grant(**{kind: amount})
    if db is not None:
        return await apply_grant(db, telegram_id, grant)
    async with transaction() as tx:
        return await apply_grant(tx, telegram_id, grant)
