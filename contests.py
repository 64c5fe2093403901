import json
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from config import CONTEST_END_HOUR, CONTEST_END_MINUTE, CONTEST_PRESETS
from database import connect, require_user, transaction
from errors import NotFoundError, StateConflictError, ValidationError
from ledger import Grant, apply_grant, describe, spend, watch_ad
from notifications import enqueue
from timeutils import (
    from_db, last_day_of_month, start_of_day, start_of_month, start_of_week, to_db, utcnow
)
import vip

logger = logging.getLogger(__name__)

CONTEST_TYPES = ("daily", "weekly", "monthly", "special")

TYPE_NAMES = {
    "daily": "Ежедневный конкурс",
    "weekly": "Еженедельный конкурс",
    "monthly": "Ежемесячный конкурс",
    "special": "Специальный конкурс",
}

PLACES = ("first", "second", "third")
PLACE_EMOJI = {1: "🥇", 2: "🥈", 3: "🥉"}

_PRIZE_FIELDS = ("sbr_coins", "water_drops", "heavy_water_drops", "boosters", "vip_tier", "duration_days")


@dataclass(frozen=True)
class Prize:
    sbr_coins: int = 0
    water_drops: int = 0
    heavy_water_drops: int = 0
    boosters: int = 0
    vip_tier: Optional[int] = None
    duration_days: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> "Prize":
        # число - сокращённая запись приза в SBRcoins
        if isinstance(data, int) and not isinstance(data, bool):
            data = {"sbr_coins": data}
        if not isinstance(data, dict):
            raise ValidationError(f"Неверный формат приза: {data!r}")
        unknown = set(data) - set(_PRIZE_FIELDS)
        if unknown:
            raise ValidationError(f"Неизвестные поля приза: {', '.join(sorted(unknown))}")
        for key, value in data.items():
            if value is None and key == "vip_tier":
                continue
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(f"Поле приза {key} должно быть неотрицательным целым")

        vip_tier = data.get("vip_tier") or None
        duration_days = data.get("duration_days", 0)
        if vip_tier is not None:
            duration_days = duration_days or vip.get_tier(vip_tier).duration_days
        return cls(
            sbr_coins=data.get("sbr_coins", 0),
            water_drops=data.get("water_drops", 0),
            heavy_water_drops=data.get("heavy_water_drops", 0),
            boosters=data.get("boosters", 0),
            vip_tier=vip_tier,
            duration_days=duration_days,
        )

    def to_dict(self) -> Dict[str, int]:
        return {k: getattr(self, k) for k in _PRIZE_FIELDS if getattr(self, k)}

    def grant(self) -> Grant:
        return Grant(
            sbr_coins=self.sbr_coins,
            water_drops=self.water_drops,
            heavy_water_drops=self.heavy_water_drops,
            boosters=self.boosters,
        )

    def describe(self) -> str:
        parts = []
        resources = self.grant().columns()
        if resources:
            parts.append(describe(resources))
        if self.vip_tier:
            parts.append(f"{vip.get_tier(self.vip_tier).name} на {self.duration_days} дн.")
        return ", ".join(parts) or "без приза"


@dataclass(frozen=True)
class PrizePool:
    first: Optional[Prize] = None
    second: Optional[Prize] = None
    third: Optional[Prize] = None
    participation: Optional[Prize] = None

    @classmethod
    def from_dict(cls, data: Any) -> "PrizePool":
        if not isinstance(data, dict):
            raise ValidationError("Призовой фонд должен быть объектом")
        unknown = set(data) - set(PLACES) - {"participation"}
        if unknown:
            raise ValidationError(f"Неизвестные места в призовом фонде: {', '.join(sorted(unknown))}")
        return cls(**{k: Prize.from_dict(v) for k, v in data.items() if v is not None})

    def for_place(self, place: int) -> Optional[Prize]:
        return getattr(self, PLACES[place - 1])

    def to_dict(self) -> Dict[str, Dict]:
        result = {}
        for key in (*PLACES, "participation"):
            prize = getattr(self, key)
            if prize is not None:
                result[key] = prize.to_dict()
        return result


@dataclass(frozen=True)
class Winner:
    place: int
    telegram_id: int
    prize: Optional[Prize] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Winner":
        if not isinstance(data, dict) or "place" not in data or "telegram_id" not in data:
            raise ValidationError(f"Неверная запись победителя: {data!r}")
        if data["place"] not in (1, 2, 3):
            raise ValidationError(f"Неверное место победителя: {data['place']}")
        prize = data.get("prize")
        return cls(
            place=data["place"],
            telegram_id=int(data["telegram_id"]),
            prize=Prize.from_dict(prize) if prize is not None else None,
        )

    def to_dict(self) -> Dict:
        return {
            "place": self.place,
            "telegram_id": self.telegram_id,
            "prize": self.prize.to_dict() if self.prize else None,
        }


@dataclass
class Contest:
    id: int
    type: str
    start_date: datetime
    end_date: datetime
    entry_cost: int
    ads_required: int
    prize_pool: PrizePool
    max_participants: Optional[int]
    status: str
    winners: List[Winner] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Contest":
        winners = json.loads(row["winners"]) if row["winners"] else []
        if not isinstance(winners, list):
            raise ValidationError(f"Повреждён список победителей конкурса #{row['id']}")
        return cls(
            id=row["id"],
            type=row["type"],
            start_date=from_db(row["start_date"]),
            end_date=from_db(row["end_date"]),
            entry_cost=row["entry_cost"],
            ads_required=row["ads_required"],
            prize_pool=PrizePool.from_dict(json.loads(row["prize_pool"])),
            max_participants=row["max_participants"],
            status=row["status"],
            winners=[Winner.from_dict(w) for w in winners],
            created_at=from_db(row["created_at"]),
        )

    @property
    def title(self) -> str:
        return TYPE_NAMES.get(self.type, self.type)

    def is_open(self, now: datetime) -> bool:
        return self.status == "active" and self.start_date <= now < self.end_date

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "type": self.type,
            "start_date": to_db(self.start_date),
            "end_date": to_db(self.end_date),
            "entry_cost": self.entry_cost,
            "ads_required": self.ads_required,
            "prize_pool": self.prize_pool.to_dict(),
            "max_participants": self.max_participants,
            "status": self.status,
            "winners": [w.to_dict() for w in self.winners],
            "created_at": to_db(self.created_at) if self.created_at else None,
        }


async def fetch_contest(db: aiosqlite.Connection, contest_id: int) -> Contest:
    cursor = await db.execute("SELECT * FROM contests WHERE id = ?", (contest_id,))
    row = await cursor.fetchone()
    if not row:
        raise NotFoundError(f"Конкурс #{contest_id} не найден")
    return Contest.from_row(row)


async def get_contest(contest_id: int) -> Contest:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        return await fetch_contest(db, contest_id)


async def create(contest_type: str, start_date: datetime, end_date: datetime, entry_cost: int,
                 ads_required: int, prize_pool, max_participants: Optional[int] = None,
                 now: Optional[datetime] = None) -> Contest:
    now = now or utcnow()
    if contest_type not in CONTEST_TYPES:
        raise ValidationError(f"Неизвестный тип конкурса: {contest_type}")
    if end_date <= start_date:
        raise ValidationError("Конкурс должен заканчиваться позже, чем начинается")
    if entry_cost < 0 or ads_required < 0:
        raise ValidationError("Стоимость участия и число реклам не могут быть отрицательными")
    if max_participants is not None and max_participants <= 0:
        raise ValidationError("Лимит участников должен быть больше нуля")
    if not isinstance(prize_pool, PrizePool):
        prize_pool = PrizePool.from_dict(prize_pool)

    async with transaction() as db:
        cursor = await db.execute(
            """INSERT INTO contests (type, start_date, end_date, entry_cost, ads_required,
                                     prize_pool, max_participants, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?)""",
            (contest_type, to_db(start_date), to_db(end_date), entry_cost, ads_required,
             json.dumps(prize_pool.to_dict()), max_participants, to_db(now))
        )
        contest = await fetch_contest(db, cursor.lastrowid)

    logger.info(f"Создан конкурс #{contest.id} ({contest_type}) до {to_db(end_date)}")
    return contest


async def join(telegram_id: int, contest_id: int, now: Optional[datetime] = None) -> bool:
    """Записывает пользователя в конкурс.

    Возвращает False, если он уже участвует; взнос при этом не списывается повторно.
    """
    now = now or utcnow()
    async with transaction() as db:
        contest = await fetch_contest(db, contest_id)
        if contest.status != "active" or now >= contest.end_date:
            raise StateConflictError("Конкурс уже завершён")
        if now < contest.start_date:
            raise StateConflictError("Конкурс ещё не начался")
        await require_user(db, telegram_id)

        cursor = await db.execute(
            "SELECT 1 FROM contest_participants WHERE contest_id = ? AND telegram_id = ?",
            (contest_id, telegram_id)
        )
        if await cursor.fetchone():
            return False

        if contest.max_participants:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM contest_participants WHERE contest_id = ?",
                (contest_id,)
            )
            if (await cursor.fetchone())[0] >= contest.max_participants:
                raise StateConflictError("Все места в конкурсе заняты")

        await spend(db, telegram_id, {"sbr_coins": contest.entry_cost})
        await db.execute(
            "INSERT INTO contest_participants (contest_id, telegram_id, ads_watched, joined_at) VALUES (?, ?, 0, ?)",
            (contest_id, telegram_id, to_db(now))
        )

    logger.info(f"{telegram_id} вступил в конкурс #{contest_id}")
    return True


async def record_ad_watch(telegram_id: int, contest_id: int, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    async with transaction() as db:
        contest = await fetch_contest(db, contest_id)
        if not contest.is_open(now):
            raise StateConflictError("Конкурс уже завершён")
        cursor = await db.execute(
            "UPDATE contest_participants SET ads_watched = ads_watched + 1 WHERE contest_id = ? AND telegram_id = ?",
            (contest_id, telegram_id)
        )
        if cursor.rowcount == 0:
            raise NotFoundError("Вы не участвуете в этом конкурсе")
        cursor = await db.execute(
            "SELECT ads_watched FROM contest_participants WHERE contest_id = ? AND telegram_id = ?",
            (contest_id, telegram_id)
        )
        return (await cursor.fetchone())[0]


async def _record_ad_watch_all(db: aiosqlite.Connection, telegram_id: int, now: datetime) -> int:
    cursor = await db.execute("""
        UPDATE contest_participants SET ads_watched = ads_watched + 1
        WHERE telegram_id = ? AND contest_id IN (
            SELECT id FROM contests WHERE status = 'active' AND start_date <= ? AND end_date > ?
        )
    """, (telegram_id, to_db(now), to_db(now)))
    return cursor.rowcount


async def record_ad_watch_all(telegram_id: int, now: Optional[datetime] = None,
                              db: Optional[aiosqlite.Connection] = None) -> int:
    """Засчитывает просмотр рекламы во всех открытых конкурсах пользователя."""
    now = now or utcnow()
    if db is not None:
        return await _record_ad_watch_all(db, telegram_id, now)
    async with transaction() as tx:
        return await _record_ad_watch_all(tx, telegram_id, now)


async def process_ad_watch(telegram_id: int, now: Optional[datetime] = None) -> Tuple[int, int]:
    """Вода за рекламу и прогресс в конкурсах одной транзакцией.

    Возвращает (начислено воды, засчитано конкурсов).
    """
    now = now or utcnow()
    async with transaction() as db:
        amount = await watch_ad(telegram_id, now, db=db)
        counted = await record_ad_watch_all(telegram_id, now, db=db)
    return amount, counted


async def _award(db: aiosqlite.Connection, contest: Contest, telegram_id: int,
                 prize: Prize, now: datetime):
    await apply_grant(db, telegram_id, prize.grant())
    if prize.vip_tier:
        await vip.purchase(
            telegram_id, prize.vip_tier, prize.duration_days, now=now,
            payment_method="contest", transaction_id=f"contest:{contest.id}", db=db
        )


async def settle(contest_id: int, now: Optional[datetime] = None,
                 rng: Optional[random.Random] = None, force: bool = False) -> Contest:
    """Подводит итоги конкурса.

    Победители выбираются случайной перестановкой среди выполнивших условие
    по рекламе. Призы, уведомления и перевод в статус ended фиксируются одной
    транзакцией, так что повторный вызов для завершённого конкурса ничего не меняет.
    force=True позволяет завершить конкурс досрочно.
    """
    now = now or utcnow()
    rng = rng or random.SystemRandom()

    async with transaction() as db:
        contest = await fetch_contest(db, contest_id)
        if contest.status != "active":
            return contest
        if not force and now < contest.end_date:
            raise StateConflictError(f"Конкурс #{contest_id} ещё идёт")

        cursor = await db.execute(
            "SELECT telegram_id FROM contest_participants WHERE contest_id = ? AND ads_watched >= ? ORDER BY id",
            (contest_id, contest.ads_required)
        )
        qualified = [r[0] for r in await cursor.fetchall()]
        rng.shuffle(qualified)

        winners = []
        for place, telegram_id in enumerate(qualified[:len(PLACES)], start=1):
            prize = contest.prize_pool.for_place(place)
            winners.append(Winner(place=place, telegram_id=telegram_id, prize=prize))
            if prize:
                await _award(db, contest, telegram_id, prize, now)
            await db.execute(
                "UPDATE game_stats SET contests_won = contests_won + 1 WHERE telegram_id = ?",
                (telegram_id,)
            )
            await enqueue(
                telegram_id,
                f"{PLACE_EMOJI[place]} {contest.title}: вы заняли {place} место! "
                f"Приз: {prize.describe() if prize else 'без приза'}",
                "contest", "high", db=db, now=now
            )

        participation = contest.prize_pool.participation
        if participation:
            for telegram_id in qualified[len(PLACES):]:
                await _award(db, contest, telegram_id, participation, now)
                await enqueue(
                    telegram_id,
                    f"{contest.title} завершён. Спасибо за участие! Награда: {participation.describe()}",
                    "contest", db=db, now=now
                )

        await db.execute(
            "UPDATE contests SET status = 'ended', winners = ? WHERE id = ? AND status = 'active'",
            (json.dumps([w.to_dict() for w in winners]), contest_id)
        )
        contest = await fetch_contest(db, contest_id)

    logger.info(f"Конкурс #{contest_id} завершён: участников с допуском {len(qualified)}, "
                f"победителей {len(winners)}")
    return contest


async def settle_due_contests(now: Optional[datetime] = None,
                              rng: Optional[random.Random] = None) -> List[Contest]:
    now = now or utcnow()
    async with connect() as db:
        cursor = await db.execute(
            "SELECT id FROM contests WHERE status = 'active' AND end_date <= ? ORDER BY end_date",
            (to_db(now),)
        )
        due = [r[0] for r in await cursor.fetchall()]

    settled = []
    for contest_id in due:
        try:
            settled.append(await settle(contest_id, now, rng))
        except Exception:
            logger.exception(f"Не удалось подвести итоги конкурса #{contest_id}")
    return settled


async def _create_preset(contest_type: str, start_date: datetime, end_date: datetime,
                         now: datetime) -> Optional[Contest]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM contests WHERE type = ? AND start_date = ? ORDER BY id LIMIT 1",
            (contest_type, to_db(start_date))
        )
        row = await cursor.fetchone()
    if row:
        return Contest.from_row(row)
    if end_date <= now:
        logger.info(f"Конкурс {contest_type} за {to_db(start_date)} не создан: период уже закончился")
        return None

    preset = CONTEST_PRESETS[contest_type]
    return await create(
        contest_type, start_date, end_date,
        entry_cost=preset["entry_cost"],
        ads_required=preset["ads_required"],
        prize_pool=preset["prize_pool"],
        max_participants=preset["max_participants"],
        now=now,
    )


def _end_time(day: datetime) -> datetime:
    return day + timedelta(hours=CONTEST_END_HOUR, minutes=CONTEST_END_MINUTE)


async def create_daily_contest(now: Optional[datetime] = None) -> Optional[Contest]:
    now = now or utcnow()
    start = start_of_day(now)
    return await _create_preset("daily", start, _end_time(start), now)


async def create_weekly_contest(now: Optional[datetime] = None) -> Optional[Contest]:
    now = now or utcnow()
    start = start_of_week(now)
    return await _create_preset("weekly", start, _end_time(start + timedelta(days=6)), now)


async def create_monthly_contest(now: Optional[datetime] = None) -> Optional[Contest]:
    now = now or utcnow()
    start = start_of_month(now)
    last_day = start.replace(day=last_day_of_month(now).day)
    return await _create_preset("monthly", start, _end_time(last_day), now)


async def get_active_contests(now: Optional[datetime] = None) -> List[Contest]:
    now = now or utcnow()
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM contests WHERE status = 'active' AND end_date > ? ORDER BY end_date",
            (to_db(now),)
        )
        return [Contest.from_row(r) for r in await cursor.fetchall()]


async def get_user_participation(telegram_id: int) -> Dict[int, int]:
    """contest_id -> просмотрено реклам."""
    async with connect() as db:
        cursor = await db.execute(
            "SELECT contest_id, ads_watched FROM contest_participants WHERE telegram_id = ?",
            (telegram_id,)
        )
        return {r[0]: r[1] for r in await cursor.fetchall()}


async def get_participants(contest_id: int) -> List[Dict]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        await fetch_contest(db, contest_id)
        cursor = await db.execute("""
            SELECT p.telegram_id, p.ads_watched, p.joined_at, u.username, u.first_name
            FROM contest_participants p
            LEFT JOIN users u ON u.telegram_id = p.telegram_id
            WHERE p.contest_id = ?
            ORDER BY p.ads_watched DESC, p.joined_at
        """, (contest_id,))
        return [dict(r) for r in await cursor.fetchall()]


async def list_contests(status: Optional[str] = None, limit: int = 50) -> List[Contest]:
    query = "SELECT * FROM contests"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(query, params)
        return [Contest.from_row(r) for r in await cursor.fetchall()]
