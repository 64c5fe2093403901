import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

import aiosqlite

from config import NOTIFICATION_BATCH
from database import connect, transaction
from errors import TransportError, ValidationError
from timeutils import to_db, utcnow

logger = logging.getLogger(__name__)

CATEGORIES = ("admin", "system", "payment", "contest", "vip")

# меньше - важнее
PRIORITIES = {"urgent": 0, "high": 1, "normal": 2}

TARGET_GROUPS = ("all", "vip", "active")
ACTIVE_DAYS = 7

_EMOJI = {
    "admin": "📢",
    "system": "🔔",
    "payment": "💳",
    "contest": "🏆",
    "vip": "💎",
}

Sender = Callable[[int, str], Awaitable[None]]


def format_message(message: str, category: str = "system", priority: str = "normal") -> str:
    text = f"{_EMOJI.get(category, '🔔')} {message}"
    if priority == "urgent":
        text = f"🚨 СРОЧНО\n\n{text}"
    elif priority == "high":
        text = f"❗ {text}"
    return text


def _validate(category: str, priority: str):
    if category not in CATEGORIES:
        raise ValidationError(f"Неизвестный тип уведомления: {category}")
    if priority not in PRIORITIES:
        raise ValidationError(f"Неизвестный приоритет: {priority}")


async def _insert(db: aiosqlite.Connection, telegram_id: int, message: str,
                  category: str, priority: str, now: datetime) -> int:
    cursor = await db.execute(
        """INSERT INTO notifications (telegram_id, message, type, priority, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (telegram_id, message, category, priority, to_db(now))
    )
    return cursor.lastrowid


async def enqueue(telegram_id: int, message: str, category: str = "system",
                  priority: str = "normal", db: Optional[aiosqlite.Connection] = None,
                  now: Optional[datetime] = None) -> int:
    """Ставит уведомление в очередь.

    Если передан db, запись попадает в уже открытую транзакцию и будет
    зафиксирована вместе с вызвавшей её игровой операцией.
    """
    _validate(category, priority)
    if not message or not message.strip():
        raise ValidationError("Пустое сообщение")
    now = now or utcnow()
    if db is not None:
        return await _insert(db, telegram_id, message, category, priority, now)
    async with transaction() as tx:
        return await _insert(tx, telegram_id, message, category, priority, now)


async def get_pending(limit: int = NOTIFICATION_BATCH) -> List[Dict]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("""
            SELECT * FROM notifications
            WHERE sent_at IS NULL
            ORDER BY CASE priority WHEN 'urgent' THEN 0 WHEN 'high' THEN 1 ELSE 2 END,
                     created_at, id
            LIMIT ?
        """, (limit,))
        return [dict(r) for r in await cursor.fetchall()]


async def _mark_sent(notification_id: int, now: datetime):
    async with connect() as db:
        await db.execute(
            "UPDATE notifications SET sent_at = ? WHERE id = ? AND sent_at IS NULL",
            (to_db(now), notification_id)
        )
        await db.commit()


async def drain(send: Sender, limit: int = NOTIFICATION_BATCH,
                now: Optional[datetime] = None) -> Dict[str, int]:
    """Доставляет пачку ожидающих уведомлений.

    Успешно отправленные и окончательно недоставляемые (бот заблокирован)
    помечаются отправленными. Временные ошибки оставляют запись в очереди
    до следующего прохода.
    """
    result = {"sent": 0, "dropped": 0, "failed": 0}
    for item in await get_pending(limit):
        text = format_message(item["message"], item["type"], item["priority"])
        try:
            await send(item["telegram_id"], text)
        except TransportError as e:
            if e.permanent:
                logger.warning(f"Уведомление {item['id']} для {item['telegram_id']} не доставлено: {e}")
                await _mark_sent(item["id"], now or utcnow())
                result["dropped"] += 1
            else:
                logger.info(f"Уведомление {item['id']} отложено: {e}")
                result["failed"] += 1
            continue
        except Exception:
            logger.exception(f"Ошибка отправки уведомления {item['id']} пользователю {item['telegram_id']}")
            result["failed"] += 1
            continue
        await _mark_sent(item["id"], now or utcnow())
        result["sent"] += 1

    if any(result.values()):
        logger.info(f"Уведомления: отправлено {result['sent']}, отброшено {result['dropped']}, "
                    f"отложено {result['failed']}")
    return result


async def broadcast(message: str, target_group: str = "all", category: str = "admin",
                    priority: str = "normal", now: Optional[datetime] = None) -> int:
    if target_group not in TARGET_GROUPS:
        raise ValidationError(f"Неизвестная группа получателей: {target_group}")
    _validate(category, priority)
    now = now or utcnow()

    if target_group == "vip":
        query = """
            SELECT DISTINCT u.telegram_id FROM users u
            JOIN vip_subscriptions v ON v.telegram_id = u.telegram_id
            WHERE u.is_banned = 0 AND v.is_active = 1 AND v.end_date > ?
        """
        params = (to_db(now),)
    elif target_group == "active":
        query = "SELECT telegram_id FROM users WHERE is_banned = 0 AND last_activity >= ?"
        params = (to_db(now - timedelta(days=ACTIVE_DAYS)),)
    else:
        query = "SELECT telegram_id FROM users WHERE is_banned = 0"
        params = ()

    async with transaction() as db:
        cursor = await db.execute(query, params)
        recipients = [r[0] for r in await cursor.fetchall()]
        for telegram_id in recipients:
            await enqueue(telegram_id, message, category, priority, db=db, now=now)

    logger.info(f"Рассылка для группы {target_group}: {len(recipients)} получателей")
    return len(recipients)


async def get_notification_stats() -> Dict:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("""
            SELECT
                COUNT(*) AS total,
                COUNT(sent_at) AS sent,
                COUNT(*) - COUNT(sent_at) AS pending
            FROM notifications
        """)
        stats = dict(await cursor.fetchone())
        cursor = await db.execute("SELECT type, COUNT(*) FROM notifications GROUP BY type")
        stats["by_type"] = {row[0]: row[1] for row in await cursor.fetchall()}
        return stats


async def get_recent_notifications(limit: int = 50) -> List[Dict]:
    async with connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM notifications ORDER BY id DESC LIMIT ?",
            (limit,)
        )
        return [dict(r) for r in await cursor.fetchall()]
