import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import aiosqlite

from config import (
    BACKUP_DIR, BACKUP_KEEP, CLEANUP_DAYS, DB_PATH, MAX_PATCHES, MAX_WATER,
    REFERRAL_WATER, START_PATCHES, START_POTATO_SEEDS, START_WATER
)
from errors import NotFoundError
from timeutils import start_of_day, to_db, utcnow

logger = logging.getLogger(__name__)

DB_NAME = DB_PATH


def connect() -> aiosqlite.Connection:
    return aiosqlite.connect(DB_NAME)


@asynccontextmanager
async def transaction():
    """Одна атомарная операция чтение-изменение-запись.

    Всё, что выполнено внутри блока, либо фиксируется целиком,
    либо откатывается при любом исключении.
    """
    async with aiosqlite.connect(DB_NAME) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        else:
            await db.commit()


async def init_db():
    async with aiosqlite.connect(DB_NAME) as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS users (
                telegram_id INTEGER PRIMARY KEY,
                username TEXT,
                first_name TEXT,
                last_name TEXT,
                language_code TEXT DEFAULT 'ru',
                referral_code TEXT UNIQUE,
                referred_by INTEGER,
                total_referrals INTEGER DEFAULT 0,
                is_banned BOOLEAN DEFAULT 0,
                ban_reason TEXT,
                registration_date TEXT,
                last_activity TEXT
            )
        """)

        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS user_resources (
                telegram_id INTEGER PRIMARY KEY,
                sbr_coins INTEGER DEFAULT 0 CHECK (sbr_coins >= 0),
                water_drops INTEGER DEFAULT {START_WATER} CHECK (water_drops BETWEEN 0 AND 100),
                heavy_water_drops INTEGER DEFAULT 0 CHECK (heavy_water_drops BETWEEN 0 AND 5),
                boosters INTEGER DEFAULT 0 CHECK (boosters BETWEEN 0 AND 10),
                potato_seeds INTEGER DEFAULT {START_POTATO_SEEDS} CHECK (potato_seeds >= 0),
                tomato_seeds INTEGER DEFAULT 0 CHECK (tomato_seeds >= 0),
                onion_seeds INTEGER DEFAULT 0 CHECK (onion_seeds >= 0),
                carrot_seeds INTEGER DEFAULT 0 CHECK (carrot_seeds >= 0),
                parts_owned INTEGER DEFAULT 0 CHECK (parts_owned >= 0),
                ads_watched_today INTEGER DEFAULT 0,
                ads_watched_total INTEGER DEFAULT 0,
                last_ad_watch TEXT,
                last_daily_claim TEXT,
                FOREIGN KEY (telegram_id) REFERENCES users (telegram_id)
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS patches (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER NOT NULL,
                patch_number INTEGER NOT NULL CHECK (patch_number BETWEEN 1 AND 8),
                is_unlocked BOOLEAN DEFAULT 0,
                crop_type TEXT,
                plant_time TEXT,
                harvest_time TEXT,
                is_ready BOOLEAN DEFAULT 0,
                boosters_used INTEGER DEFAULT 0,
                UNIQUE (telegram_id, patch_number),
                CHECK ((crop_type IS NULL) = (plant_time IS NULL)),
                CHECK ((crop_type IS NULL) = (harvest_time IS NULL)),
                FOREIGN KEY (telegram_id) REFERENCES users (telegram_id)
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS game_stats (
                telegram_id INTEGER PRIMARY KEY,
                crops_planted INTEGER DEFAULT 0,
                crops_harvested INTEGER DEFAULT 0,
                total_earnings INTEGER DEFAULT 0,
                total_water_used INTEGER DEFAULT 0,
                total_boosters_used INTEGER DEFAULT 0,
                contests_won INTEGER DEFAULT 0,
                FOREIGN KEY (telegram_id) REFERENCES users (telegram_id)
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS referrals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                referrer_id INTEGER,
                referred_id INTEGER,
                created_at TEXT,
                FOREIGN KEY (referrer_id) REFERENCES users (telegram_id),
                FOREIGN KEY (referred_id) REFERENCES users (telegram_id),
                UNIQUE(referred_id)
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS vip_subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER NOT NULL,
                tier INTEGER NOT NULL CHECK (tier BETWEEN 1 AND 4),
                start_date TEXT NOT NULL,
                end_date TEXT NOT NULL,
                is_active BOOLEAN DEFAULT 1,
                payment_method TEXT,
                transaction_id TEXT,
                FOREIGN KEY (telegram_id) REFERENCES users (telegram_id)
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS vip_rewards (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER NOT NULL,
                tier INTEGER,
                reward_date TEXT NOT NULL,
                rewards_claimed TEXT,
                claimed_at TEXT,
                UNIQUE (telegram_id, reward_date),
                FOREIGN KEY (telegram_id) REFERENCES users (telegram_id)
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS contests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                start_date TEXT NOT NULL,
                end_date TEXT NOT NULL,
                entry_cost INTEGER DEFAULT 0,
                ads_required INTEGER DEFAULT 0,
                prize_pool TEXT NOT NULL,
                max_participants INTEGER,
                status TEXT DEFAULT 'active',
                winners TEXT,
                created_at TEXT
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS contest_participants (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                contest_id INTEGER NOT NULL,
                telegram_id INTEGER NOT NULL,
                ads_watched INTEGER DEFAULT 0,
                joined_at TEXT,
                UNIQUE (contest_id, telegram_id),
                FOREIGN KEY (contest_id) REFERENCES contests (id),
                FOREIGN KEY (telegram_id) REFERENCES users (telegram_id)
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER NOT NULL,
                message TEXT NOT NULL,
                type TEXT DEFAULT 'system',
                priority TEXT DEFAULT 'normal',
                created_at TEXT,
                sent_at TEXT
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS payments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER NOT NULL,
                kind TEXT NOT NULL,
                tier INTEGER,
                amount INTEGER DEFAULT 0,
                currency TEXT DEFAULT 'USDT',
                status TEXT DEFAULT 'pending',
                notes TEXT,
                created_at TEXT,
                processed_at TEXT,
                processed_by TEXT,
                FOREIGN KEY (telegram_id) REFERENCES users (telegram_id)
            )
        """)

        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_patches_growing ON patches(is_ready, harvest_time)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_notifications_pending ON notifications(sent_at)"
        )

        await db.commit()


def generate_referral_code() -> str:
    return secrets.token_hex(4).upper()


async def fetch_user(db: aiosqlite.Connection, telegram_id: int) -> Optional[Dict]:
    cursor = await db.execute("SELECT * FROM users WHERE telegram_id = ?", (telegram_id,))
    row = await cursor.fetchone()
    return dict(row) if row else None


async def _create_user(db: aiosqlite.Connection, telegram_id: int, profile: Dict, now: datetime):
    await db.execute(
        """INSERT INTO users (telegram_id, username, first_name, last_name, language_code,
                              referral_code, registration_date, last_activity)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            telegram_id,
            profile.get("username"),
            profile.get("first_name"),
            profile.get("last_name"),
            profile.get("language_code") or "ru",
            generate_referral_code(),
            to_db(now),
            to_db(now)
        )
    )
    await db.execute("INSERT INTO user_resources (telegram_id) VALUES (?)", (telegram_id,))
    await db.execute("INSERT INTO game_stats (telegram_id) VALUES (?)", (telegram_id,))
    for number in range(1, MAX_PATCHES + 1):
        await db.execute(
            "INSERT INTO patches (telegram_id, patch_number, is_unlocked) VALUES (?, ?, ?)",
            (telegram_id, number, 1 if number <= START_PATCHES else 0)
        )
    logger.info(f"Новый пользователь {telegram_id}")


async def get_or_create_user(telegram_id: int, referral_code: Optional[str] = None,
                             now: Optional[datetime] = None, **profile) -> Dict:
    now = now or utcnow()
    async with transaction() as db:
        user = await fetch_user(db, telegram_id)
        if user:
            await db.execute(
                "UPDATE users SET last_activity = ? WHERE telegram_id = ?",
                (to_db(now), telegram_id)
            )
            user["is_new"] = False
            return user

        await _create_user(db, telegram_id, profile, now)
        if referral_code:
            await process_referral(db, referral_code, telegram_id, now)

        user = await fetch_user(db, telegram_id)
        user["is_new"] = True
        return user


async def get_user(telegram_id: int) -> Optional[Dict]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        return await fetch_user(db, telegram_id)


async def touch_user(telegram_id: int, now: Optional[datetime] = None):
    async with connect() as db:
        await db.execute(
            "UPDATE users SET last_activity = ? WHERE telegram_id = ?",
            (to_db(now or utcnow()), telegram_id)
        )
        await db.commit()


async def require_user(db: aiosqlite.Connection, telegram_id: int) -> Dict:
    user = await fetch_user(db, telegram_id)
    if not user:
        raise NotFoundError("Пользователь не найден. Начните игру командой /start")
    return user


async def get_user_with_resources(telegram_id: int) -> Optional[Dict]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("""
            SELECT u.*, r.sbr_coins, r.water_drops, r.heavy_water_drops, r.boosters,
                   r.potato_seeds, r.tomato_seeds, r.onion_seeds, r.carrot_seeds,
                   r.parts_owned, r.ads_watched_today, r.ads_watched_total,
                   r.last_daily_claim, r.last_ad_watch,
                   s.crops_planted, s.crops_harvested, s.total_earnings, s.contests_won
            FROM users u
            LEFT JOIN user_resources r ON u.telegram_id = r.telegram_id
            LEFT JOIN game_stats s ON u.telegram_id = s.telegram_id
            WHERE u.telegram_id = ?
        """, (telegram_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None


async def process_referral(db: aiosqlite.Connection, referral_code: str, new_user_id: int,
                           now: datetime) -> Optional[int]:
    code = referral_code.strip().upper()
    if code.startswith("REF_"):
        code = code[4:]
    cursor = await db.execute("SELECT telegram_id FROM users WHERE referral_code = ?", (code,))
    row = await cursor.fetchone()
    if not row or row[0] == new_user_id:
        return None
    referrer_id = row[0]

    cursor = await db.execute(
        "INSERT OR IGNORE INTO referrals (referrer_id, referred_id, created_at) VALUES (?, ?, ?)",
        (referrer_id, new_user_id, to_db(now))
    )
    if cursor.rowcount == 0:
        return None

    await db.execute("UPDATE users SET referred_by = ? WHERE telegram_id = ?", (referrer_id, new_user_id))
    await db.execute(
        "UPDATE users SET total_referrals = total_referrals + 1 WHERE telegram_id = ?",
        (referrer_id,)
    )
    await db.execute(
        "UPDATE user_resources SET water_drops = MIN(water_drops + ?, ?) WHERE telegram_id = ?",
        (REFERRAL_WATER, MAX_WATER, referrer_id)
    )
    logger.info(f"Реферал: {referrer_id} пригласил {new_user_id}")
    return referrer_id


async def get_referral_count(telegram_id: int) -> int:
    async with connect() as db:
        cursor = await db.execute(
            "SELECT COUNT(*) FROM referrals WHERE referrer_id = ?",
            (telegram_id,)
        )
        result = await cursor.fetchone()
        return result[0] if result else 0


async def is_banned(telegram_id: int) -> bool:
    async with connect() as db:
        cursor = await db.execute(
            "SELECT is_banned FROM users WHERE telegram_id = ?",
            (telegram_id,)
        )
        row = await cursor.fetchone()
        return bool(row and row[0])


async def ban_user(telegram_id: int, reason: str):
    async with transaction() as db:
        await require_user(db, telegram_id)
        await db.execute(
            "UPDATE users SET is_banned = 1, ban_reason = ? WHERE telegram_id = ?",
            (reason, telegram_id)
        )
    logger.info(f"Пользователь {telegram_id} заблокирован: {reason}")


async def unban_user(telegram_id: int):
    async with transaction() as db:
        await require_user(db, telegram_id)
        await db.execute(
            "UPDATE users SET is_banned = 0, ban_reason = NULL WHERE telegram_id = ?",
            (telegram_id,)
        )
    logger.info(f"Пользователь {telegram_id} разблокирован")


async def list_users(limit: int = 50, offset: int = 0, search: Optional[str] = None) -> List[Dict]:
    query = """
        SELECT u.telegram_id, u.username, u.first_name, u.is_banned, u.registration_date,
               u.last_activity, r.sbr_coins, r.water_drops
        FROM users u
        LEFT JOIN user_resources r ON u.telegram_id = r.telegram_id
    """
    params: list = []
    if search:
        query += " WHERE u.username LIKE ? OR u.first_name LIKE ? OR CAST(u.telegram_id AS TEXT) = ?"
        params += [f"%{search}%", f"%{search}%", search]
    query += " ORDER BY u.registration_date DESC LIMIT ? OFFSET ?"
    params += [limit, offset]

    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(query, params)
        return [dict(r) for r in await cursor.fetchall()]


async def get_user_stats(now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    today = to_db(start_of_day(now))
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("""
            SELECT
                COUNT(*) AS total_users,
                COUNT(CASE WHEN registration_date >= ? THEN 1 END) AS new_today,
                COUNT(CASE WHEN last_activity >= ? THEN 1 END) AS active_today,
                COUNT(CASE WHEN is_banned = 1 THEN 1 END) AS banned_users
            FROM users
        """, (today, today))
        stats = dict(await cursor.fetchone())
        cursor = await db.execute(
            "SELECT COUNT(DISTINCT telegram_id) FROM vip_subscriptions WHERE is_active = 1 AND end_date > ?",
            (to_db(now),)
        )
        stats["vip_users"] = (await cursor.fetchone())[0]
        return stats


async def get_game_stats() -> Dict:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("""
            SELECT
                COALESCE(SUM(crops_planted), 0) AS total_crops_planted,
                COALESCE(SUM(crops_harvested), 0) AS total_crops_harvested,
                COALESCE(SUM(total_earnings), 0) AS total_earnings_sbr,
                COALESCE(SUM(total_boosters_used), 0) AS total_boosters_used,
                COUNT(CASE WHEN crops_planted > 0 THEN 1 END) AS active_farmers
            FROM game_stats
        """)
        stats = dict(await cursor.fetchone())
        cursor = await db.execute("SELECT COUNT(*) FROM patches WHERE crop_type IS NOT NULL")
        stats["growing_now"] = (await cursor.fetchone())[0]
        return stats


async def cleanup_old_data(now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or utcnow()
    cutoff = now - timedelta(days=CLEANUP_DAYS)
    async with transaction() as db:
        cursor = await db.execute(
            "DELETE FROM vip_rewards WHERE reward_date < ?",
            (cutoff.date().isoformat(),)
        )
        rewards = cursor.rowcount
        await db.execute("""
            DELETE FROM contest_participants WHERE contest_id IN (
                SELECT id FROM contests WHERE status = 'ended' AND end_date < ?
            )
        """, (to_db(cutoff),))
        cursor = await db.execute(
            "DELETE FROM contests WHERE status = 'ended' AND end_date < ?",
            (to_db(cutoff),)
        )
        contests = cursor.rowcount
        cursor = await db.execute(
            "DELETE FROM notifications WHERE sent_at IS NOT NULL AND sent_at < ?",
            (to_db(cutoff),)
        )
        notifications = cursor.rowcount

    logger.info(
        f"Очистка: {rewards} VIP-наград, {contests} конкурсов, {notifications} уведомлений"
    )
    return {"vip_rewards": rewards, "contests": contests, "notifications": notifications}


async def backup_database(now: Optional[datetime] = None, backup_dir: Optional[str] = None) -> str:
    now = now or utcnow()
    backup_dir = backup_dir or BACKUP_DIR
    os.makedirs(backup_dir, exist_ok=True)

    stamp = now.strftime("%Y%m%dT%H%M%S")
    path = os.path.join(backup_dir, f"sbrfarm_backup_{stamp}.db")
    async with aiosqlite.connect(DB_NAME) as src, aiosqlite.connect(path) as dst:
        await src.backup(dst)
    logger.info(f"Резервная копия базы: {path}")

    backups = sorted(
        f for f in os.listdir(backup_dir)
        if f.startswith("sbrfarm_backup_") and f.endswith(".db")
    )
    for name in backups[:-BACKUP_KEEP]:
        os.remove(os.path.join(backup_dir, name))
        logger.info(f"Удалена старая копия: {name}")
    return path
