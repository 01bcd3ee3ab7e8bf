from datetime import datetime

import pytest

from cybergua.almanac import Pillars
from cybergua.engine import DivinationInput, DivinationRun, divine_with_trace


class FixedCalendar:
    """Pillar provider that ignores the timestamp."""

    def __init__(self, pillars: Pillars) -> None:
        self.pillars = pillars
        self.calls = 0

    def pillars_for(self, when: datetime) -> Pillars:
        self.calls += 1
        return self.pillars


@pytest.fixture
def pillars() -> Pillars:
    return Pillars(year="甲辰", month="丙寅", day="戊午", time="庚申")


@pytest.fixture
def calendar(pillars: Pillars) -> FixedCalendar:
    return FixedCalendar(pillars)


@pytest.fixture
def when() -> datetime:
    return datetime(2024, 3, 15, 10, 30, 0)


@pytest.fixture
def engine_run(when: datetime, calendar: FixedCalendar) -> DivinationRun:
    return divine_with_trace(DivinationInput(question="项目上线顺利吗", when=when), 12345, calendar=calendar)
