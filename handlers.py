import logging
from datetime import datetime
from typing import Dict, List, Tuple

from aiogram import Bot, F, Router
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command, CommandObject, CommandStart, ExceptionTypeFilter
from aiogram.types import CallbackQuery, ErrorEvent, InlineKeyboardMarkup, Message

from callbacks import (
    ContestAction, ContestCallback, FarmAction, FarmCallback, MenuCallback, MenuSection,
    PatchAction, PatchCallback, PlantCallback, ShopCallback, ShopItem, VipAction,
    VipCallback, WaterAction, WaterCallback
)
from config import (
    ADMIN_IDS, AD_DAILY_LIMIT, GAME_NAME, MAX_BOOSTERS, MAX_HEAVY_WATER, MAX_PATCHES,
    MAX_WATER, PARTS_PER_PATCH, REFERRAL_WATER, WATER_PER_HEAVY
)
import contests
from crops import all_crops, get_crop
from database import (
    get_game_stats, get_or_create_user, get_referral_count, get_user, get_user_stats,
    get_user_with_resources, is_banned, touch_user
)
from errors import GameError, ValidationError
from keyboards import (
    BTN_CONTESTS, BTN_FARM, BTN_PROFILE, BTN_REFERRAL, BTN_SHOP, BTN_VIP, BTN_WATER,
    get_contests_keyboard, get_farm_keyboard, get_main_menu, get_plant_keyboard,
    get_shop_keyboard, get_vip_keyboard, get_water_keyboard
)
from ledger import (
    buy_boosters, buy_parts, buy_seeds, claim_daily_water, convert_heavy_water,
    describe, get_resources
)
from notifications import enqueue, get_notification_stats
from patches import apply_booster, expand_farm, get_farm_status, harvest, harvest_all, plant
from scheduler import FarmScheduler
from timeutils import format_duration, seconds_left, utcnow
import vip

logger = logging.getLogger(__name__)

router = Router()


async def ban_check_middleware(handler, event, data):
    if isinstance(event, (Message, CallbackQuery)):
        if hasattr(event, 'from_user') and event.from_user:
            user_id = event.from_user.id
            try:
                banned = await is_banned(user_id)
                if banned:
                    if isinstance(event, Message):
                        await event.answer("❌ Вы заблокированы в боте!")
                    elif isinstance(event, CallbackQuery):
                        await event.answer("❌ Вы заблокированы в боте!", show_alert=True)
                    return
                await touch_user(user_id)
            except Exception as db_error:
                logger.error(f"Ошибка проверки бана для user_id {user_id}: {db_error}")
    return await handler(event, data)


async def respond(message: Message, text: str, **kwargs):
    if message.chat.type == "private":
        await message.answer(text, **kwargs)
    else:
        await message.reply(text, **kwargs)


async def edit(callback: CallbackQuery, text: str, markup: InlineKeyboardMarkup = None):
    try:
        await callback.message.edit_text(text, reply_markup=markup)
    except TelegramBadRequest as e:
        if "message is not modified" not in str(e):
            raise


def parse_patch_number(raw: str) -> int:
    try:
        number = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Номер грядки должен быть числом от 1 до {MAX_PATCHES}")
    return number


# Тексты

def format_resources(res: Dict) -> str:
    return (
        f"💰 SBRcoins: {res['sbr_coins']}\n"
        f"💧 Вода: {res['water_drops']}/{MAX_WATER}\n"
        f"💧 Тяжёлая вода: {res['heavy_water_drops']}/{MAX_HEAVY_WATER}\n"
        f"⚡ Бустеры: {res['boosters']}/{MAX_BOOSTERS}\n"
        f"🧩 Детали грядок: {res['parts_owned']}/{PARTS_PER_PATCH}\n"
        "🌱 Семена: " + ", ".join(f"{c.emoji} {res[c.seed_column]}" for c in all_crops())
    )


def format_farm(status: Dict) -> str:
    lines = [f"🌾 Ваша ферма ({status['unlocked']}/{MAX_PATCHES} грядок)\n"]
    for patch in status["patches"]:
        number = patch["patch_number"]
        if not patch["is_unlocked"]:
            continue
        if not patch["crop_type"]:
            lines.append(f"{number}. 🟫 Пусто")
        elif patch["is_ready"]:
            lines.append(f"{number}. {patch['crop_emoji']} ✅ Готово к сбору!")
        else:
            lines.append(
                f"{number}. {patch['crop_emoji']} {patch['progress_percent']}%, "
                f"осталось {format_duration(patch['time_remaining'])}"
            )
    locked = MAX_PATCHES - status["unlocked"]
    if locked:
        lines.append(f"🔒 Закрыто грядок: {locked} (открыть: /expand, {PARTS_PER_PATCH} 🧩)")
    lines.append("")
    lines.append(format_resources(status["resources"]))
    return "\n".join(lines)


def format_vip(info: Dict) -> str:
    if info["is_vip"]:
        tier = info["tier"]
        text = (
            f"💎 У вас {tier.name}\n"
            f"⏳ Осталось дней: {info['days_left']}\n"
            f"🎁 Награда сегодня: {'доступна' if info['can_claim_daily'] else 'получена'}\n\n"
        )
    else:
        text = "💎 VIP-подписка даёт ежедневные награды:\n\n"
    for tier in info["tiers"].values():
        perks = [f"{get_crop(c).emoji} {q}/день" for c, q in tier.daily_seeds.items()]
        if tier.daily_water:
            perks.append(f"💧 {tier.daily_water}/день")
        if tier.daily_parts:
            perks.append(f"🧩 {tier.daily_parts}/день")
        perks += [f"{get_crop(c).emoji} 1 раз в {n} дн." for c, n in tier.cadence_seeds.items()]
        text += f"{tier.name} - ${tier.price_usdt}/{tier.duration_days} дн.: {', '.join(perks)}\n"
    return text


def format_contests(active: List, participation: Dict[int, int], now: datetime) -> str:
    if not active:
        return "🏆 Сейчас нет активных конкурсов"
    lines = ["🏆 Активные конкурсы\n"]
    for contest in active:
        lines.append(f"{contest.title} #{contest.id}")
        lines.append(f"💰 Взнос: {contest.entry_cost} | 📺 Нужно реклам: {contest.ads_required}")
        lines.append(f"⏳ До конца: {format_duration(seconds_left(contest.end_date, now))}")
        for place in (1, 2, 3):
            prize = contest.prize_pool.for_place(place)
            if prize:
                lines.append(f"{contests.PLACE_EMOJI[place]} {prize.describe()}")
        if contest.prize_pool.participation:
            lines.append(f"🎗 Участникам: {contest.prize_pool.participation.describe()}")
        if contest.id in participation:
            lines.append(f"✅ Вы участвуете: {participation[contest.id]}/{contest.ads_required} 📺")
        lines.append("")
    return "\n".join(lines)


def format_profile(user: Dict, referrals: int) -> str:
    return (
        f"👤 Ваш профиль\n\n"
        f"🆔 ID: {user['telegram_id']}\n"
        f"🌱 Посажено: {user['crops_planted']}\n"
        f"🌾 Собрано: {user['crops_harvested']}\n"
        f"💰 Заработано: {user['total_earnings']}\n"
        f"🏆 Побед в конкурсах: {user['contests_won']}\n"
        f"📺 Реклам сегодня: {user['ads_watched_today']}/{AD_DAILY_LIMIT}\n"
        f"🔗 Рефералов: {referrals}\n\n"
        + format_resources(user)
    )


# Экраны

async def farm_view(user_id: int) -> Tuple[str, InlineKeyboardMarkup]:
    status = await get_farm_status(user_id)
    return format_farm(status), get_farm_keyboard(status["patches"])


async def water_view(user_id: int) -> Tuple[str, InlineKeyboardMarkup]:
    res = await get_resources(user_id)
    text = (
        f"💧 Вода: {res['water_drops']}/{MAX_WATER}\n"
        f"💧 Тяжёлая вода: {res['heavy_water_drops']}/{MAX_HEAVY_WATER}\n\n"
        f"• /daily - 10 💧 раз в день\n"
        f"• /ad - 1 💧 за рекламу (до {AD_DAILY_LIMIT} в день)\n"
        f"• /heavy - {WATER_PER_HEAVY} 💧 в 1 тяжёлую (нужна для моркови)"
    )
    return text, get_water_keyboard(res)


async def shop_view(user_id: int) -> Tuple[str, InlineKeyboardMarkup]:
    res = await get_resources(user_id)
    text = f"🛒 Магазин\n\n💰 У вас {res['sbr_coins']} SBRcoins\n\n🥕 Семена моркови выдаются только VIP 4"
    return text, get_shop_keyboard()


async def vip_view(user_id: int) -> Tuple[str, InlineKeyboardMarkup]:
    info = await vip.get_vip_info(user_id)
    return format_vip(info), get_vip_keyboard(info)


async def contests_view(user_id: int) -> Tuple[str, InlineKeyboardMarkup]:
    now = utcnow()
    active = await contests.get_active_contests(now)
    participation = await contests.get_user_participation(user_id)
    return format_contests(active, participation, now), get_contests_keyboard(active, participation)


async def profile_view(user_id: int) -> Tuple[str, None]:
    user = await get_user_with_resources(user_id)
    if not user:
        return "Начните игру командой /start", None
    return format_profile(user, await get_referral_count(user_id)), None


VIEWS = {
    MenuSection.FARM: farm_view,
    MenuSection.WATER: water_view,
    MenuSection.SHOP: shop_view,
    MenuSection.VIP: vip_view,
    MenuSection.CONTESTS: contests_view,
    MenuSection.PROFILE: profile_view,
}


async def show(message: Message, section: MenuSection):
    text, markup = await VIEWS[section](message.from_user.id)
    await respond(message, text, reply_markup=markup)


# Команды

@router.message(CommandStart())
async def cmd_start(message: Message, command: CommandObject):
    user_id = message.from_user.id
    user = await get_or_create_user(
        user_id,
        referral_code=command.args,
        username=message.from_user.username,
        first_name=message.from_user.first_name,
        last_name=message.from_user.last_name,
        language_code=message.from_user.language_code
    )

    welcome_text = (
        f"🌟 Добро пожаловать в {GAME_NAME}!\n\n"
        "🌱 Сажайте культуры, поливайте их и собирайте урожай\n"
        "💰 Продавайте урожай за SBRcoins\n"
        "🏆 Участвуйте в конкурсах и получайте VIP-награды\n\n"
    )
    if user["is_new"]:
        welcome_text += "🎁 Для старта у вас 10 💧 и 1 🥔 семя. Посадите его: /plant 1 potato\n\n"
        if user["referred_by"]:
            await enqueue(
                user["referred_by"],
                f"🎉 По вашей ссылке зарегистрировался новый фермер! +{REFERRAL_WATER} 💧",
                "system"
            )

    welcome_text += "Используйте меню для навигации или команду /help для списка команд!"
    if message.chat.type == "private":
        await message.answer(welcome_text, reply_markup=get_main_menu())
    else:
        await message.reply(welcome_text)


@router.message(Command("help"))
async def cmd_help(message: Message):
    help_text = (
        f"📖 Справка по командам {GAME_NAME}\n\n"
        "🔹 /farm - Ваша ферма\n"
        "🔹 /plant <грядка> <культура> - Посадить (potato, tomato, onion, carrot)\n"
        "🔹 /harvest <грядка|all> - Собрать урожай\n"
        "🔹 /boost <грядка> - Ускорить рост на 2 часа\n"
        "🔹 /water - Запасы воды\n"
        "🔹 /daily - Ежедневная вода\n"
        "🔹 /ad - Посмотреть рекламу\n"
        "🔹 /heavy - Сделать тяжёлую воду\n"
        "🔹 /expand - Открыть новую грядку\n"
        "🔹 /shop - Магазин\n"
        "🔹 /vip - VIP-подписка\n"
        "🔹 /contests - Конкурсы\n"
        "🔹 /referral - Реферальная ссылка\n"
        "🔹 /profile - Профиль\n\n"
        "💡 Культуры:\n"
    )
    for crop in all_crops():
        cost = f"{crop.heavy_water_needed} тяж. 💧" if crop.is_premium else f"{crop.water_needed} 💧"
        help_text += f"• {crop.name}: {crop.growth_hours}ч, {cost}, продажа {crop.selling_price}\n"
    await respond(message, help_text)


@router.message(Command("farm"))
@router.message(F.text == BTN_FARM)
async def cmd_farm(message: Message):
    await show(message, MenuSection.FARM)


@router.message(Command("plant"))
async def cmd_plant(message: Message, command: CommandObject):
    args = (command.args or "").split()
    if len(args) != 2:
        await respond(message, "Использование: /plant <грядка> <культура>\nПример: /plant 1 potato")
        return
    result = await plant(message.from_user.id, parse_patch_number(args[0]), args[1])
    crop = get_crop(result["crop_type"])
    await respond(
        message,
        f"🌱 {crop.name} посажен на грядку №{result['patch_number']}!\n"
        f"⏳ Созреет через {format_duration(crop.growth_hours * 3600)}"
    )


@router.message(Command("harvest"))
async def cmd_harvest(message: Message, command: CommandObject):
    target = (command.args or "all").strip().lower()
    user_id = message.from_user.id
    if target == "all":
        count, total = await harvest_all(user_id)
        await respond(message, f"🌾 Собрано грядок: {count}\n💰 +{total} SBRcoins")
    else:
        earnings = await harvest(user_id, parse_patch_number(target))
        await respond(message, f"🌾 Урожай собран!\n💰 +{earnings} SBRcoins")


@router.message(Command("boost"))
async def cmd_boost(message: Message, command: CommandObject):
    if not command.args:
        await respond(message, "Использование: /boost <грядка>")
        return
    result = await apply_booster(message.from_user.id, parse_patch_number(command.args.strip()))
    text = f"⚡ Бустер применён к грядке №{result['patch_number']}!"
    if result["is_ready"]:
        text += "\n✅ Урожай готов к сбору!"
    await respond(message, text)


@router.message(Command("water"))
@router.message(F.text == BTN_WATER)
async def cmd_water(message: Message):
    await show(message, MenuSection.WATER)


@router.message(Command("daily"))
async def cmd_daily(message: Message):
    amount = await claim_daily_water(message.from_user.id)
    await respond(message, f"💧 Ежедневная вода получена: +{amount}")


@router.message(Command("ad"))
async def cmd_ad(message: Message):
    amount, counted = await contests.process_ad_watch(message.from_user.id)
    text = f"📺 Спасибо за просмотр! +{amount} 💧"
    if counted:
        text += f"\n🏆 Засчитано в конкурсах: {counted}"
    await respond(message, text)


@router.message(Command("heavy"))
async def cmd_heavy(message: Message):
    await convert_heavy_water(message.from_user.id)
    await respond(message, f"⚗️ {WATER_PER_HEAVY} 💧 превращены в 1 тяжёлую воду")


@router.message(Command("expand"))
async def cmd_expand(message: Message):
    number = await expand_farm(message.from_user.id)
    await respond(message, f"🏗 Открыта грядка №{number}!")


@router.message(Command("shop"))
@router.message(F.text == BTN_SHOP)
async def cmd_shop(message: Message):
    await show(message, MenuSection.SHOP)


@router.message(Command("vip"))
@router.message(F.text == BTN_VIP)
async def cmd_vip(message: Message):
    await show(message, MenuSection.VIP)


@router.message(Command("contests"))
@router.message(F.text == BTN_CONTESTS)
async def cmd_contests(message: Message):
    await show(message, MenuSection.CONTESTS)


@router.message(Command("profile"))
@router.message(F.text == BTN_PROFILE)
async def cmd_profile(message: Message):
    await show(message, MenuSection.PROFILE)


@router.message(Command("referral"))
@router.message(F.text == BTN_REFERRAL)
async def cmd_referral(message: Message, bot: Bot):
    user = await get_user(message.from_user.id)
    if not user:
        await respond(message, "Начните игру командой /start")
        return
    referrals = await get_referral_count(message.from_user.id)
    me = await bot.get_me()
    link = f"https://t.me/{me.username}?start=ref_{user['referral_code']}"
    await respond(
        message,
        "🔗 Ваша реферальная ссылка:\n"
        f"{link}\n\n"
        f"👥 Приглашено: {referrals}\n"
        f"🎁 Награда за приглашение: {REFERRAL_WATER} 💧"
    )


@router.message(Command("admin"))
async def cmd_admin(message: Message):
    if message.from_user.id not in ADMIN_IDS:
        return
    users = await get_user_stats()
    game = await get_game_stats()
    queue = await get_notification_stats()
    payments = await vip.list_pending_payments()
    await respond(
        message,
        "🛠 Админ-панель\n\n"
        f"👥 Пользователей: {users['total_users']} (новых сегодня: {users['new_today']})\n"
        f"🟢 Активных сегодня: {users['active_today']}\n"
        f"💎 VIP: {users['vip_users']}\n"
        f"🚫 Заблокировано: {users['banned_users']}\n\n"
        f"🌱 Посажено всего: {game['total_crops_planted']}\n"
        f"🌾 Собрано всего: {game['total_crops_harvested']}\n"
        f"🌿 Растёт сейчас: {game['growing_now']}\n\n"
        f"📨 Уведомлений в очереди: {queue['pending']}\n"
        f"💳 Заявок на оплату: {len(payments)}"
    )


@router.message(Command("jobs"))
async def cmd_jobs(message: Message, farm_scheduler: FarmScheduler):
    if message.from_user.id not in ADMIN_IDS:
        return
    lines = ["⏱ Задачи планировщика\n"]
    for job in farm_scheduler.status():
        state = "🔄" if job["running"] else ("❌" if job["last_error"] else "✅")
        lines.append(f"{state} {job['name']} ({job['schedule']}): запусков {job['runs']}, ошибок {job['failures']}")
        if job["last_error"]:
            lines.append(f"   {job['last_error']}")
    await respond(message, "\n".join(lines))


# Кнопки

@router.callback_query(MenuCallback.filter())
async def menu_callback(callback: CallbackQuery, callback_data: MenuCallback):
    text, markup = await VIEWS[callback_data.section](callback.from_user.id)
    await edit(callback, text, markup)
    await callback.answer()


@router.callback_query(PatchCallback.filter())
async def patch_callback(callback: CallbackQuery, callback_data: PatchCallback):
    user_id = callback.from_user.id
    number = callback_data.number
    if callback_data.action is PatchAction.PLANT_MENU:
        res = await get_resources(user_id)
        await edit(callback, f"🌱 Что посадить на грядку №{number}?", get_plant_keyboard(number, res))
        await callback.answer()
        return
    if callback_data.action is PatchAction.HARVEST:
        earnings = await harvest(user_id, number)
        notice = f"🌾 +{earnings} SBRcoins"
    else:
        result = await apply_booster(user_id, number)
        notice = "⚡ Готово к сбору!" if result["is_ready"] else "⚡ Рост ускорен на 2 часа"
    text, markup = await farm_view(user_id)
    await edit(callback, text, markup)
    await callback.answer(notice)


@router.callback_query(PlantCallback.filter())
async def plant_callback(callback: CallbackQuery, callback_data: PlantCallback):
    result = await plant(callback.from_user.id, callback_data.number, callback_data.crop)
    text, markup = await farm_view(callback.from_user.id)
    await edit(callback, text, markup)
    await callback.answer(f"🌱 Посажено на грядку №{result['patch_number']}")


@router.callback_query(FarmCallback.filter())
async def farm_callback(callback: CallbackQuery, callback_data: FarmCallback):
    user_id = callback.from_user.id
    notice = None
    if callback_data.action is FarmAction.HARVEST_ALL:
        count, total = await harvest_all(user_id)
        notice = f"🌾 Собрано {count}, +{total} SBRcoins"
    elif callback_data.action is FarmAction.EXPAND:
        number = await expand_farm(user_id)
        notice = f"🏗 Открыта грядка №{number}"
    text, markup = await farm_view(user_id)
    await edit(callback, text, markup)
    await callback.answer(notice)


@router.callback_query(WaterCallback.filter())
async def water_callback(callback: CallbackQuery, callback_data: WaterCallback):
    user_id = callback.from_user.id
    if callback_data.action is WaterAction.DAILY:
        notice = f"💧 +{await claim_daily_water(user_id)}"
    elif callback_data.action is WaterAction.AD:
        amount, _ = await contests.process_ad_watch(user_id)
        notice = f"📺 +{amount} 💧"
    else:
        await convert_heavy_water(user_id)
        notice = "⚗️ +1 тяжёлая вода"
    text, markup = await water_view(user_id)
    await edit(callback, text, markup)
    await callback.answer(notice)


@router.callback_query(ShopCallback.filter())
async def shop_callback(callback: CallbackQuery, callback_data: ShopCallback):
    user_id = callback.from_user.id
    qty = callback_data.qty
    if callback_data.item is ShopItem.SEEDS:
        spent = await buy_seeds(user_id, callback_data.crop, qty)
        notice = f"{get_crop(callback_data.crop).emoji} +{qty} семян за {spent}"
    elif callback_data.item is ShopItem.PARTS:
        spent = await buy_parts(user_id, qty)
        notice = f"🧩 +{qty} за {spent}"
    else:
        spent = await buy_boosters(user_id, qty)
        notice = f"⚡ +{qty} за {spent}"
    await callback.answer(f"✅ {notice}", show_alert=True)


@router.callback_query(VipCallback.filter())
async def vip_callback(callback: CallbackQuery, callback_data: VipCallback):
    user_id = callback.from_user.id
    if callback_data.action is VipAction.CLAIM:
        applied = await vip.claim_daily_reward(user_id)
        await callback.answer(f"🎁 {describe(applied)}", show_alert=True)
        text, markup = await vip_view(user_id)
        await edit(callback, text, markup)
    else:
        tier = vip.get_tier(callback_data.tier)
        payment_id = await vip.request_purchase(user_id, tier.level)
        await callback.answer(
            f"💳 Заявка #{payment_id} на {tier.name} (${tier.price_usdt}) создана. "
            "Подписка включится после подтверждения оплаты администратором.",
            show_alert=True
        )


@router.callback_query(ContestCallback.filter())
async def contest_callback(callback: CallbackQuery, callback_data: ContestCallback):
    user_id = callback.from_user.id
    if callback_data.action is ContestAction.JOIN:
        joined = await contests.join(user_id, callback_data.contest_id)
        notice = "✅ Вы участвуете!" if joined else "Вы уже участвуете"
        text, markup = await contests_view(user_id)
        await edit(callback, text, markup)
        await callback.answer(notice)
    else:
        contest = await contests.get_contest(callback_data.contest_id)
        progress = (await contests.get_user_participation(user_id)).get(contest.id, 0)
        await callback.answer(
            f"{contest.title}: {progress}/{contest.ads_required} 📺. Смотрите рекламу: /ad",
            show_alert=True
        )


# Ошибки

@router.error(ExceptionTypeFilter(GameError), F.update.callback_query.as_("callback"))
async def game_error_in_callback(event: ErrorEvent, callback: CallbackQuery):
    await callback.answer(f"❌ {event.exception}", show_alert=True)


@router.error(ExceptionTypeFilter(GameError), F.update.message.as_("message"))
async def game_error_in_message(event: ErrorEvent, message: Message):
    await respond(message, f"❌ {event.exception}")


@router.error()
async def unexpected_error(event: ErrorEvent):
    update = event.update
    if update.message:
        user_id, payload = update.message.from_user.id, update.message.text
        await update.message.answer("⚠️ Что-то пошло не так, попробуйте позже")
    elif update.callback_query:
        user_id, payload = update.callback_query.from_user.id, update.callback_query.data
        await update.callback_query.answer("⚠️ Что-то пошло не так, попробуйте позже", show_alert=True)
    else:
        user_id, payload = None, None
    logger.error(f"Ошибка обработки от {user_id} ({payload!r}): {event.exception!r}", exc_info=event.exception)
