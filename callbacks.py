from enum import Enum

from aiogram.filters.callback_data import CallbackData

from errors import ValidationError


class MenuSection(str, Enum):
    FARM = "farm"
    WATER = "water"
    SHOP = "shop"
    VIP = "vip"
    CONTESTS = "contests"
    PROFILE = "profile"


class PatchAction(str, Enum):
    HARVEST = "harvest"
    BOOST = "boost"
    PLANT_MENU = "plant_menu"


class FarmAction(str, Enum):
    HARVEST_ALL = "harvest_all"
    EXPAND = "expand"
    REFRESH = "refresh"


class WaterAction(str, Enum):
    DAILY = "daily"
    AD = "ad"
    HEAVY = "heavy"


class ShopItem(str, Enum):
    SEEDS = "seeds"
    PARTS = "parts"
    BOOSTERS = "boosters"


class VipAction(str, Enum):
    BUY = "buy"
    CLAIM = "claim"


class ContestAction(str, Enum):
    JOIN = "join"
    INFO = "info"


class MenuCallback(CallbackData, prefix="menu"):
    section: MenuSection


class PatchCallback(CallbackData, prefix="patch"):
    action: PatchAction
    number: int


class PlantCallback(CallbackData, prefix="plant"):
    number: int
    crop: str


class FarmCallback(CallbackData, prefix="farm"):
    action: FarmAction


class WaterCallback(CallbackData, prefix="water"):
    action: WaterAction


class ShopCallback(CallbackData, prefix="shop"):
    item: ShopItem
    crop: str = ""
    qty: int = 1


class VipCallback(CallbackData, prefix="vip"):
    action: VipAction
    tier: int = 0


class ContestCallback(CallbackData, prefix="contest"):
    action: ContestAction
    contest_id: int


CALLBACKS = (
    MenuCallback, PatchCallback, PlantCallback, FarmCallback,
    WaterCallback, ShopCallback, VipCallback, ContestCallback,
)

_BY_PREFIX = {cls.__prefix__: cls for cls in CALLBACKS}


def parse_callback(data: str) -> CallbackData:
    """Разбирает строку callback_data в одну из известных команд.

    Неизвестное действие отклоняется здесь же, до обработчика.
    """
    prefix = (data or "").split(":", 1)[0]
    cls = _BY_PREFIX.get(prefix)
    if cls is None:
        raise ValidationError(f"Неизвестная команда: {data}")
    try:
        return cls.unpack(data)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Неверные данные команды: {data}") from e
