"""Единая политика времени.

Все отметки времени хранятся в UTC строками ISO-8601 с точностью до секунды,
поэтому строковое сравнение в SQL совпадает с хронологическим.
"Сегодня" - это календарный день по UTC.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db(dt: datetime) -> str:
    return ensure_utc(dt).isoformat(timespec="seconds")


def from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def reward_day(now: datetime) -> str:
    """Ключ календарного дня (UTC) для ежедневных наград."""
    return ensure_utc(now).date().isoformat()


def days_between(start: datetime, now: datetime) -> int:
    """Разница в календарных днях UTC между датами start и now."""
    return (ensure_utc(now).date() - ensure_utc(start).date()).days


def start_of_day(now: datetime) -> datetime:
    now = ensure_utc(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(now: datetime) -> datetime:
    """Понедельник 00:00 UTC текущей недели ISO."""
    day = start_of_day(now)
    return day - timedelta(days=day.weekday())


def start_of_month(now: datetime) -> datetime:
    return start_of_day(now).replace(day=1)


def last_day_of_month(now: datetime) -> date:
    first = start_of_month(now)
    next_month = (first + timedelta(days=32)).replace(day=1)
    return (next_month - timedelta(days=1)).date()


def seconds_left(until: Optional[datetime], now: datetime) -> int:
    if until is None:
        return 0
    return max(0, int((until - ensure_utc(now)).total_seconds()))


def format_duration(seconds: int) -> str:
    hours, rest = divmod(int(seconds), 3600)
    minutes = rest // 60
    if hours >= 24:
        days, hours = divmod(hours, 24)
        return f"{days}д {hours}ч {minutes}м"
    return f"{hours}ч {minutes}м"
