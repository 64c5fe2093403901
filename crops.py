from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from config import BOOSTER_REDUCTION_HOURS, CROP_TYPES
from errors import ValidationError


@dataclass(frozen=True)
class CropType:
    key: str
    name: str
    emoji: str
    growth_hours: int
    water_needed: int
    heavy_water_needed: int
    selling_price: int
    max_boost_hours: int
    seed_price: Optional[int]

    @property
    def growth_duration(self) -> timedelta:
        return timedelta(hours=self.growth_hours)

    @property
    def is_premium(self) -> bool:
        return self.heavy_water_needed > 0

    @property
    def booster_cap(self) -> int:
        return self.max_boost_hours // BOOSTER_REDUCTION_HOURS

    @property
    def seed_column(self) -> str:
        return f"{self.key}_seeds"


CATALOG: Dict[str, CropType] = {
    key: CropType(key=key, **data) for key, data in CROP_TYPES.items()
}


def get_crop(crop_type: str) -> CropType:
    crop = CATALOG.get((crop_type or "").lower())
    if crop is None:
        raise ValidationError(f"Неизвестная культура: {crop_type}")
    return crop


def all_crops() -> List[CropType]:
    return sorted(CATALOG.values(), key=lambda c: c.growth_hours)
