import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import aiosqlite

from config import BOOSTER_REDUCTION_HOURS, MAX_PATCHES, PARTS_PER_PATCH
from crops import get_crop
from database import connect, transaction
from errors import NotFoundError, StateConflictError, ValidationError
from ledger import Grant, apply_grant, fetch_resources, spend
from timeutils import from_db, seconds_left, to_db, utcnow

logger = logging.getLogger(__name__)

_SQL_CHUNK = 500


def is_patch_ready(patch: Dict, now: datetime) -> bool:
    if not patch.get("crop_type"):
        return False
    if patch.get("is_ready"):
        return True
    due = from_db(patch.get("harvest_time"))
    return due is not None and due <= now


def sweep_ready(patches: Iterable[Dict], now: datetime) -> List[Dict]:
    """Грядки, которые пора пометить созревшими.

    Чистая функция: уже помеченные грядки не попадают в результат,
    поэтому повторный проход после сохранения возвращает пустой список.
    """
    return [
        p for p in patches
        if p.get("crop_type")
        and not p.get("is_ready")
        and from_db(p.get("harvest_time")) <= now
    ]


def growth_progress(plant_time: Optional[datetime], harvest_time: Optional[datetime], now: datetime) -> float:
    if not plant_time or not harvest_time:
        return 0.0
    total = (harvest_time - plant_time).total_seconds()
    if total <= 0:
        return 100.0
    elapsed = (now - plant_time).total_seconds()
    return round(min(100.0, max(0.0, elapsed / total * 100)), 1)


async def fetch_patch(db: aiosqlite.Connection, telegram_id: int, patch_number: int) -> Dict:
    if not isinstance(patch_number, int) or not 1 <= patch_number <= MAX_PATCHES:
        raise ValidationError(f"Номер грядки должен быть от 1 до {MAX_PATCHES}")
    cursor = await db.execute(
        "SELECT * FROM patches WHERE telegram_id = ? AND patch_number = ?",
        (telegram_id, patch_number)
    )
    row = await cursor.fetchone()
    if not row:
        raise NotFoundError(f"Грядка №{patch_number} не найдена")
    return dict(row)


async def get_patches(telegram_id: int) -> List[Dict]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM patches WHERE telegram_id = ? ORDER BY patch_number",
            (telegram_id,)
        )
        return [dict(r) for r in await cursor.fetchall()]


async def plant(telegram_id: int, patch_number: int, crop_type: str,
                now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    crop = get_crop(crop_type)

    async with transaction() as db:
        patch = await fetch_patch(db, telegram_id, patch_number)
        if not patch["is_unlocked"]:
            raise StateConflictError(f"Грядка №{patch_number} ещё не открыта")
        if patch["crop_type"]:
            raise StateConflictError(f"На грядке №{patch_number} уже что-то растёт")

        costs = {crop.seed_column: 1}
        if crop.is_premium:
            costs["heavy_water_drops"] = crop.heavy_water_needed
        else:
            costs["water_drops"] = crop.water_needed
        await spend(db, telegram_id, costs)

        harvest_time = now + crop.growth_duration
        await db.execute(
            """UPDATE patches
               SET crop_type = ?, plant_time = ?, harvest_time = ?, is_ready = 0, boosters_used = 0
               WHERE id = ?""",
            (crop.key, to_db(now), to_db(harvest_time), patch["id"])
        )
        await db.execute(
            """UPDATE game_stats
               SET crops_planted = crops_planted + 1, total_water_used = total_water_used + ?
               WHERE telegram_id = ?""",
            (crop.water_needed, telegram_id)
        )

    logger.info(f"{telegram_id} посадил {crop.key} на грядку {patch_number}")
    return {"patch_number": patch_number, "crop_type": crop.key, "harvest_time": harvest_time}


async def apply_booster(telegram_id: int, patch_number: int, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    async with transaction() as db:
        patch = await fetch_patch(db, telegram_id, patch_number)
        if not patch["crop_type"]:
            raise StateConflictError(f"Грядка №{patch_number} пуста")
        if is_patch_ready(patch, now):
            raise StateConflictError("Урожай уже созрел, бустер не нужен")

        crop = get_crop(patch["crop_type"])
        if patch["boosters_used"] >= crop.booster_cap:
            raise StateConflictError(
                f"Для {crop.name} уже использовано максимум бустеров ({crop.booster_cap})"
            )

        await spend(db, telegram_id, {"boosters": 1})

        new_harvest_time = from_db(patch["harvest_time"]) - timedelta(hours=BOOSTER_REDUCTION_HOURS)
        ready = new_harvest_time <= now
        await db.execute(
            """UPDATE patches
               SET harvest_time = ?, boosters_used = boosters_used + 1, is_ready = ?
               WHERE id = ?""",
            (to_db(new_harvest_time), 1 if ready else 0, patch["id"])
        )
        await db.execute(
            "UPDATE game_stats SET total_boosters_used = total_boosters_used + 1 WHERE telegram_id = ?",
            (telegram_id,)
        )

    return {
        "patch_number": patch_number,
        "harvest_time": new_harvest_time,
        "is_ready": ready,
        "boosters_used": patch["boosters_used"] + 1,
    }


async def _harvest_patch(db: aiosqlite.Connection, telegram_id: int, patch: Dict) -> int:
    crop = get_crop(patch["crop_type"])
    await db.execute(
        """UPDATE patches
           SET crop_type = NULL, plant_time = NULL, harvest_time = NULL, is_ready = 0, boosters_used = 0
           WHERE id = ?""",
        (patch["id"],)
    )
    await apply_grant(db, telegram_id, Grant(sbr_coins=crop.selling_price))
    await db.execute(
        """UPDATE game_stats
           SET crops_harvested = crops_harvested + 1, total_earnings = total_earnings + ?
           WHERE telegram_id = ?""",
        (crop.selling_price, telegram_id)
    )
    return crop.selling_price


async def harvest(telegram_id: int, patch_number: int, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    async with transaction() as db:
        patch = await fetch_patch(db, telegram_id, patch_number)
        if not patch["crop_type"]:
            raise StateConflictError(f"Грядка №{patch_number} пуста")
        if not is_patch_ready(patch, now):
            left = seconds_left(from_db(patch["harvest_time"]), now)
            raise StateConflictError(f"Урожай ещё не созрел, осталось {left // 3600}ч {left % 3600 // 60}м")
        earnings = await _harvest_patch(db, telegram_id, patch)

    logger.info(f"{telegram_id} собрал урожай с грядки {patch_number}: +{earnings}")
    return earnings


async def harvest_all(telegram_id: int, now: Optional[datetime] = None) -> Tuple[int, int]:
    now = now or utcnow()
    async with transaction() as db:
        await fetch_resources(db, telegram_id)
        cursor = await db.execute(
            "SELECT * FROM patches WHERE telegram_id = ? AND crop_type IS NOT NULL ORDER BY patch_number",
            (telegram_id,)
        )
        ready = [dict(r) for r in await cursor.fetchall() if is_patch_ready(dict(r), now)]
        if not ready:
            raise StateConflictError("Нет созревшего урожая")
        total = 0
        for patch in ready:
            total += await _harvest_patch(db, telegram_id, patch)
    return len(ready), total


async def expand_farm(telegram_id: int) -> int:
    async with transaction() as db:
        cursor = await db.execute(
            "SELECT * FROM patches WHERE telegram_id = ? AND is_unlocked = 0 ORDER BY patch_number LIMIT 1",
            (telegram_id,)
        )
        row = await cursor.fetchone()
        if not row:
            await fetch_resources(db, telegram_id)
            raise StateConflictError(f"Открыто максимальное число грядок ({MAX_PATCHES})")

        await spend(db, telegram_id, {"parts_owned": PARTS_PER_PATCH})
        await db.execute("UPDATE patches SET is_unlocked = 1 WHERE id = ?", (row["id"],))

    logger.info(f"{telegram_id} открыл грядку {row['patch_number']}")
    return row["patch_number"]


async def monitor_crop_growth(now: Optional[datetime] = None) -> List[Dict]:
    now = now or utcnow()
    async with transaction() as db:
        cursor = await db.execute(
            "SELECT * FROM patches WHERE crop_type IS NOT NULL AND is_ready = 0"
        )
        growing = [dict(r) for r in await cursor.fetchall()]
        ready = sweep_ready(growing, now)

        ids = [p["id"] for p in ready]
        for i in range(0, len(ids), _SQL_CHUNK):
            chunk = ids[i:i + _SQL_CHUNK]
            placeholders = ",".join("?" for _ in chunk)
            await db.execute(
                f"UPDATE patches SET is_ready = 1 WHERE is_ready = 0 AND id IN ({placeholders})",
                chunk
            )

    if ready:
        logger.info(f"Созрело грядок: {len(ready)}")
    return ready


async def get_farm_status(telegram_id: int, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        resources = await fetch_resources(db, telegram_id)
        cursor = await db.execute(
            "SELECT * FROM patches WHERE telegram_id = ? ORDER BY patch_number",
            (telegram_id,)
        )
        rows = [dict(r) for r in await cursor.fetchall()]

    patches = []
    for patch in rows:
        if patch["crop_type"]:
            crop = get_crop(patch["crop_type"])
            plant_time = from_db(patch["plant_time"])
            harvest_time = from_db(patch["harvest_time"])
            patch.update({
                "crop_emoji": crop.emoji,
                "time_remaining": seconds_left(harvest_time, now),
                "is_ready": is_patch_ready(patch, now),
                "progress_percent": growth_progress(plant_time, harvest_time, now),
                "boosters_left": crop.booster_cap - patch["boosters_used"],
            })
        else:
            patch.update({"crop_emoji": "🌱", "is_empty": True})
        patches.append(patch)

    unlocked = sum(1 for p in patches if p["is_unlocked"])
    return {
        "resources": resources,
        "patches": patches,
        "unlocked": unlocked,
        "can_expand": unlocked < MAX_PATCHES and resources["parts_owned"] >= PARTS_PER_PATCH,
    }
