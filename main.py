import asyncio
import logging
from datetime import datetime

from aiohttp import web
from aiogram import Bot, Dispatcher
from aiogram.exceptions import (
    TelegramBadRequest, TelegramForbiddenError, TelegramNetworkError, TelegramRetryAfter
)

from admin_server import create_app
from config import BOT_TOKEN, NOTIFICATION_INTERVAL_SECONDS, PORT
from database import init_db
from errors import TransportError
from handlers import ban_check_middleware, router
from notifications import drain
from scheduler import FarmScheduler, Job, JobState

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def check_token(token: str):
    if not token:
        logger.error("BOT_TOKEN не установлен! Установите переменную окружения BOT_TOKEN")
        raise ValueError("BOT_TOKEN не установлен")

    token_parts = token.split(":")
    if len(token_parts) != 2:
        logger.error("Неверный формат BOT_TOKEN! Должен быть в формате '123456789:ABCdefGHIjklMNOpqrsTUVwxyz'")
        raise ValueError("Неверный формат BOT_TOKEN")

    if not token_parts[0].isdigit():
        logger.error("Первая часть токена должна быть числом!")
        raise ValueError("Неверный формат BOT_TOKEN")

    logger.info(f"Токен бота загружен (ID бота: {token_parts[0]}, длина: {len(token)})")


def make_sender(bot: Bot):
    async def send_notification(telegram_id: int, text: str):
        try:
            await bot.send_message(telegram_id, text)
        except (TelegramForbiddenError, TelegramBadRequest) as e:
            raise TransportError(str(e), permanent=True) from e
        except (TelegramRetryAfter, TelegramNetworkError) as e:
            raise TransportError(str(e)) from e
    return send_notification


async def start_http_server(farm_scheduler: FarmScheduler):
    app = create_app(farm_scheduler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', PORT)
    await site.start()
    logger.info("HTTP сервер запущен на порту %s", PORT)
    return runner


async def main():
    check_token(BOT_TOKEN)
    bot = Bot(token=BOT_TOKEN)
    dp = Dispatcher()
    dp.message.middleware(ban_check_middleware)
    dp.callback_query.middleware(ban_check_middleware)
    dp.include_router(router)

    await init_db()
    logger.info("База данных инициализирована")

    send_notification = make_sender(bot)

    async def deliver_notifications(now: datetime):
        return await drain(send_notification, now=now)

    farm_scheduler = FarmScheduler(JobState())
    farm_scheduler.add(Job(
        "notifications", deliver_notifications,
        seconds=NOTIFICATION_INTERVAL_SECONDS, description="Отправка уведомлений"
    ))
    await farm_scheduler.run_startup_jobs()
    farm_scheduler.start()

    http_runner = await start_http_server(farm_scheduler)

    try:
        logger.info("Бот запущен")
        await dp.start_polling(bot, farm_scheduler=farm_scheduler)
    finally:
        farm_scheduler.stop()
        await http_runner.cleanup()
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
