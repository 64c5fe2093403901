from aiogram.types import ReplyKeyboardMarkup, KeyboardButton, InlineKeyboardMarkup, InlineKeyboardButton

from callbacks import (
    ContestAction, ContestCallback, FarmAction, FarmCallback, MenuCallback, MenuSection,
    PatchAction, PatchCallback, PlantCallback, ShopCallback, ShopItem, VipAction,
    VipCallback, WaterAction, WaterCallback
)
from config import BOOSTER_PRICE, MAX_HEAVY_WATER, PART_PRICE, WATER_PER_HEAVY
from crops import all_crops

BTN_FARM = "🌾 Моя ферма"
BTN_WATER = "💧 Вода"
BTN_SHOP = "🛒 Магазин"
BTN_VIP = "💎 VIP"
BTN_CONTESTS = "🏆 Конкурсы"
BTN_PROFILE = "👤 Профиль"
BTN_REFERRAL = "🔗 Реферальная ссылка"


def get_main_menu():
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text=BTN_FARM), KeyboardButton(text=BTN_WATER)],
            [KeyboardButton(text=BTN_SHOP), KeyboardButton(text=BTN_VIP)],
            [KeyboardButton(text=BTN_CONTESTS), KeyboardButton(text=BTN_PROFILE)],
            [KeyboardButton(text=BTN_REFERRAL)]
        ],
        resize_keyboard=True
    )


def back_button(section: MenuSection = MenuSection.FARM):
    return InlineKeyboardButton(text="🔙 Назад", callback_data=MenuCallback(section=section).pack())


def get_farm_keyboard(patches):
    keyboard = InlineKeyboardMarkup(inline_keyboard=[])
    row = []
    for patch in patches:
        if not patch["is_unlocked"]:
            continue
        number = patch["patch_number"]
        if not patch["crop_type"]:
            button = InlineKeyboardButton(
                text=f"🌱 {number}: посадить",
                callback_data=PatchCallback(action=PatchAction.PLANT_MENU, number=number).pack()
            )
        elif patch["is_ready"]:
            button = InlineKeyboardButton(
                text=f"✅ {number}: собрать {patch['crop_emoji']}",
                callback_data=PatchCallback(action=PatchAction.HARVEST, number=number).pack()
            )
        else:
            button = InlineKeyboardButton(
                text=f"⚡ {number}: ускорить {patch['crop_emoji']}",
                callback_data=PatchCallback(action=PatchAction.BOOST, number=number).pack()
            )
        row.append(button)
        if len(row) == 2:
            keyboard.inline_keyboard.append(row)
            row = []
    if row:
        keyboard.inline_keyboard.append(row)

    keyboard.inline_keyboard.append([
        InlineKeyboardButton(text="🌾 Собрать всё", callback_data=FarmCallback(action=FarmAction.HARVEST_ALL).pack()),
        InlineKeyboardButton(text="🏗 Расширить", callback_data=FarmCallback(action=FarmAction.EXPAND).pack())
    ])
    keyboard.inline_keyboard.append([
        InlineKeyboardButton(text="🔄 Обновить", callback_data=FarmCallback(action=FarmAction.REFRESH).pack())
    ])
    return keyboard


def get_plant_keyboard(patch_number: int, resources):
    keyboard = InlineKeyboardMarkup(inline_keyboard=[])
    for crop in all_crops():
        seeds = resources.get(crop.seed_column, 0)
        cost = f"{crop.heavy_water_needed} тяж. 💧" if crop.is_premium else f"{crop.water_needed} 💧"
        keyboard.inline_keyboard.append([
            InlineKeyboardButton(
                text=f"{crop.name} ({seeds} шт.) - {cost}, {crop.growth_hours}ч",
                callback_data=PlantCallback(number=patch_number, crop=crop.key).pack()
            )
        ])
    keyboard.inline_keyboard.append([back_button(MenuSection.FARM)])
    return keyboard


def get_water_keyboard(resources):
    keyboard = InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="💧 Ежедневная вода (10)", callback_data=WaterCallback(action=WaterAction.DAILY).pack())],
        [InlineKeyboardButton(text="📺 Смотреть рекламу (1)", callback_data=WaterCallback(action=WaterAction.AD).pack())]
    ])
    if resources["water_drops"] >= WATER_PER_HEAVY and resources["heavy_water_drops"] < MAX_HEAVY_WATER:
        keyboard.inline_keyboard.append([
            InlineKeyboardButton(
                text=f"⚗️ {WATER_PER_HEAVY} 💧 ➡️ 1 тяжёлая",
                callback_data=WaterCallback(action=WaterAction.HEAVY).pack()
            )
        ])
    return keyboard


def get_shop_keyboard():
    keyboard = InlineKeyboardMarkup(inline_keyboard=[])
    for crop in all_crops():
        if crop.seed_price is None:
            continue
        keyboard.inline_keyboard.append([
            InlineKeyboardButton(
                text=f"{crop.name} x1 - {crop.seed_price}",
                callback_data=ShopCallback(item=ShopItem.SEEDS, crop=crop.key, qty=1).pack()
            ),
            InlineKeyboardButton(
                text=f"x10 - {crop.seed_price * 10}",
                callback_data=ShopCallback(item=ShopItem.SEEDS, crop=crop.key, qty=10).pack()
            )
        ])
    keyboard.inline_keyboard.append([
        InlineKeyboardButton(text=f"🧩 Деталь - {PART_PRICE}", callback_data=ShopCallback(item=ShopItem.PARTS).pack()),
        InlineKeyboardButton(text=f"⚡ Бустер - {BOOSTER_PRICE}", callback_data=ShopCallback(item=ShopItem.BOOSTERS).pack())
    ])
    return keyboard


def get_vip_keyboard(info):
    keyboard = InlineKeyboardMarkup(inline_keyboard=[])
    if info["is_vip"] and info["can_claim_daily"]:
        keyboard.inline_keyboard.append([
            InlineKeyboardButton(text="🎁 Забрать VIP-награду", callback_data=VipCallback(action=VipAction.CLAIM).pack())
        ])
    row = []
    for level, tier in info["tiers"].items():
        row.append(InlineKeyboardButton(
            text=f"{tier.name} (${tier.price_usdt})",
            callback_data=VipCallback(action=VipAction.BUY, tier=level).pack()
        ))
        if len(row) == 2:
            keyboard.inline_keyboard.append(row)
            row = []
    if row:
        keyboard.inline_keyboard.append(row)
    return keyboard


def get_contests_keyboard(contests, participation):
    keyboard = InlineKeyboardMarkup(inline_keyboard=[])
    for contest in contests:
        if contest.id in participation:
            text = f"✅ {contest.title}: {participation[contest.id]}/{contest.ads_required} 📺"
            action = ContestAction.INFO
        else:
            text = f"➕ {contest.title} - {contest.entry_cost}"
            action = ContestAction.JOIN
        keyboard.inline_keyboard.append([
            InlineKeyboardButton(text=text, callback_data=ContestCallback(action=action, contest_id=contest.id).pack())
        ])
    return keyboard
