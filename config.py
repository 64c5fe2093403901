import os

BOT_TOKEN = os.environ.get("BOT_TOKEN", "")

GAME_NAME = "SBRFARM"

DB_PATH = os.environ.get("DB_PATH", "sbrfarm.db")
BACKUP_DIR = os.environ.get("DB_BACKUP_PATH", "backups")
BACKUP_KEEP = int(os.environ.get("DB_BACKUP_KEEP", 10))

PORT = int(os.environ.get("PORT", 8000))

ADMIN_IDS = [int(x) for x in os.environ.get("ADMIN_IDS", "").split(",") if x.strip().isdigit()]
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "")
ADMIN_JWT_SECRET = os.environ.get("ADMIN_JWT_SECRET", "change-me")
ADMIN_TOKEN_TTL_HOURS = int(os.environ.get("ADMIN_SESSION_TIMEOUT_HOURS", 24))

NOTIFICATION_INTERVAL_SECONDS = int(os.environ.get("NOTIFICATION_INTERVAL_SECONDS", 10))
NOTIFICATION_BATCH = 50

# ресурсы
MAX_WATER = 100
MAX_HEAVY_WATER = 5
MAX_BOOSTERS = 10
WATER_PER_HEAVY = 100

START_WATER = 10
START_POTATO_SEEDS = 1

DAILY_WATER = 10
AD_WATER = 1
AD_COOLDOWN_SECONDS = 60
AD_DAILY_LIMIT = 50
REFERRAL_WATER = 5

# грядки
MAX_PATCHES = 8
START_PATCHES = 3
PARTS_PER_PATCH = 10

PART_PRICE = 100
BOOSTER_PRICE = 50
BOOSTER_REDUCTION_HOURS = 2

CROP_TYPES = {
    "potato": {
        "name": "🥔 Картофель",
        "emoji": "🥔",
        "growth_hours": 24,
        "water_needed": 10,
        "heavy_water_needed": 0,
        "selling_price": 100,
        "max_boost_hours": 12,
        "seed_price": 10
    },
    "tomato": {
        "name": "🍅 Томат",
        "emoji": "🍅",
        "growth_hours": 48,
        "water_needed": 20,
        "heavy_water_needed": 0,
        "selling_price": 150,
        "max_boost_hours": 24,
        "seed_price": 25
    },
    "onion": {
        "name": "🧅 Лук",
        "emoji": "🧅",
        "growth_hours": 96,
        "water_needed": 50,
        "heavy_water_needed": 0,
        "selling_price": 250,
        "max_boost_hours": 48,
        "seed_price": 50
    },
    "carrot": {
        "name": "🥕 Морковь",
        "emoji": "🥕",
        "growth_hours": 144,
        "water_needed": 0,
        "heavy_water_needed": 1,
        "selling_price": 1300,
        "max_boost_hours": 72,
        # только за USDT
        "seed_price": None
    }
}

VIP_TIERS = {
    1: {
        "name": "💎 VIP 1",
        "price_usdt": 7,
        "duration_days": 30,
        "extra_patches": 1,
        "daily_seeds": {"potato": 2},
        "daily_water": 0,
        "daily_parts": 0,
        "cadence_seeds": {}
    },
    2: {
        "name": "💎 VIP 2",
        "price_usdt": 15,
        "duration_days": 30,
        "extra_patches": 1,
        "daily_seeds": {"potato": 2},
        "daily_water": 10,
        "daily_parts": 5,
        "cadence_seeds": {"tomato": 2}
    },
    3: {
        "name": "💎 VIP 3",
        "price_usdt": 30,
        "duration_days": 30,
        "extra_patches": 2,
        "daily_seeds": {"potato": 2},
        "daily_water": 20,
        "daily_parts": 0,
        "cadence_seeds": {"onion": 2}
    },
    4: {
        "name": "💎 VIP 4",
        "price_usdt": 99,
        "duration_days": 30,
        "extra_patches": 3,
        "daily_seeds": {"potato": 2, "onion": 2},
        "daily_water": 0,
        "daily_parts": 0,
        "cadence_seeds": {"carrot": 3}
    }
}

CONTEST_PRESETS = {
    "daily": {
        "entry_cost": 20,
        "ads_required": 5,
        "max_participants": 1000,
        "prize_pool": {
            "first": {"sbr_coins": 1000, "water_drops": 50},
            "second": {"sbr_coins": 500, "water_drops": 25},
            "third": {"sbr_coins": 250, "water_drops": 10}
        }
    },
    "weekly": {
        "entry_cost": 100,
        "ads_required": 30,
        "max_participants": 5000,
        "prize_pool": {
            "first": {"sbr_coins": 5000, "water_drops": 100, "boosters": 5},
            "second": {"sbr_coins": 3000, "water_drops": 75, "boosters": 3},
            "third": {"sbr_coins": 2000, "water_drops": 50, "boosters": 2},
            "participation": {"sbr_coins": 100, "water_drops": 10}
        }
    },
    "monthly": {
        "entry_cost": 200,
        "ads_required": 100,
        "max_participants": 10000,
        "prize_pool": {
            "first": {"vip_tier": 1, "duration_days": 30},
            "second": {"vip_tier": 1, "duration_days": 30},
            "third": {"vip_tier": 1, "duration_days": 30},
            "participation": {"sbr_coins": 500, "water_drops": 50}
        }
    }
}

# время окончания конкурсов (UTC)
CONTEST_END_HOUR = 23
CONTEST_END_MINUTE = 30

CLEANUP_DAYS = 30
