from __future__ import annotations

from enum import Enum


class ContainerType(str, Enum):
    DRY_20 = "20DC"
    DRY_40 = "40DC"
    HIGH_CUBE_40 = "40HC"

    @classmethod
    def parse(cls, value: "str | ContainerType") -> "ContainerType":
        if isinstance(value, ContainerType):
            return value
        try:
            return cls((value or "").strip().upper())
        except ValueError:
            raise ValueError(f"Unknown container type: {value!r}") from None


# Fuel burn relative to a 40' dry box.
FUEL_FACTORS = {
    ContainerType.DRY_20: 0.6,
    ContainerType.DRY_40: 1.0,
    ContainerType.HIGH_CUBE_40: 1.2,
}
