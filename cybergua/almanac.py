"""Calendrical collaborator: four sexagenary pillars for a timestamp."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Protocol

from lunar_python import Solar

from cybergua.bits import U32, rotl32


@dataclass(frozen=True)
class Pillars:
    year: str
    month: str
    day: str
    time: str

    def joined(self) -> str:
        return self.year + self.month + self.day + self.time


class PillarProvider(Protocol):
    def pillars_for(self, when: datetime) -> Pillars:
        ...


class LunarCalendar:
    """Pillars from lunar_python, using the solar-term exact year/month boundaries."""

    def pillars_for(self, when: datetime) -> Pillars:
        lunar = Solar.fromYmdHms(when.year, when.month, when.day,
                                 when.hour, when.minute, when.second).getLunar()
        day = getattr(lunar, "getDayInGanZhiExact2", None) or lunar.getDayInGanZhiExact
        return Pillars(
            year=str(lunar.getYearInGanZhiExact()),
            month=str(lunar.getMonthInGanZhiExact()),
            day=str(day()),
            time=str(lunar.getTimeInGanZhi()),
        )


def time_signature(when: datetime) -> int:
    y, m, d = when.year, when.month, when.day
    h, mi, s = when.hour, when.minute, when.second
    a = y * 3721 + m * 521 + d * 97 + h * 23 + mi * 7 + s
    return ((a & U32) ^ rotl32(m * 131 + d * 17 + h, 9)) & U32


# Zero-argument lunar_python getters shown in the almanac panel, per object.
LUNAR_GETTERS = {
    "Lunar": (
        "getDayInChinese", "getDayInGanZhi", "getDayJi", "getDayShengXiao", "getDayYi",
        "getJieQi", "getMonthInChinese", "getMonthInGanZhi", "getMonthShengXiao",
        "getPengZuGan", "getPengZuZhi", "getTimeInGanZhi", "getTimeShengXiao", "getXiu",
        "getYearInChinese", "getYearInGanZhi", "getYearShengXiao",
    ),
    "Solar": ("getWeekInChinese", "getXingZuo", "toYmdHms"),
}


def almanac_fields(when: datetime) -> Dict[str, Dict[str, Any]]:
    """Raw almanac values for a timestamp, grouped by lunar_python object."""
    solar = Solar.fromYmdHms(when.year, when.month, when.day, when.hour, when.minute, when.second)
    targets = {"Lunar": solar.getLunar(), "Solar": solar}
    out: Dict[str, Dict[str, Any]] = {}
    for title, names in LUNAR_GETTERS.items():
        target = targets[title]
        fields: Dict[str, Any] = {}
        for name in names:
            fn = getattr(target, name, None)
            if not callable(fn):
                continue
            value = fn()
            if value is None or value == "" or value == []:
                continue
            fields[name] = value
        out[title] = fields
    return out
