"""Shared fixtures for meal monitor tests."""
import pytest
from datetime import datetime, timedelta

from mealwatch.shared.models import (
    AttendanceSource,
    MealAttendance,
    MealData,
    MealType,
)
from mealwatch.services.meal_monitor.store import InMemoryMealMonitorStore

NOW = datetime(2024, 3, 15, 12, 0, 0)
STUDENT_ID = "0123456789abcdef"

MEAL_HOURS = {
    MealType.BREAKFAST: 8,
    MealType.LUNCH: 12,
    MealType.DINNER: 18,
}


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Settable monotonic time source for the delivery worker."""

    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def store(clock):
    return InMemoryMealMonitorStore(clock=clock)


@pytest.fixture
def make_record(clock):
    """Build a MealAttendance ``days_ago`` days before today."""
    counter = {"n": 0}

    def _make(
        days_ago: int,
        meal_type: MealType = MealType.LUNCH,
        attended: bool = True,
        anonymized_id: str = STUDENT_ID,
        hour: int = None,
    ) -> MealAttendance:
        counter["n"] += 1
        day = clock.now.replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=days_ago)
        return MealAttendance(
            record_id=f"meal_test_{counter['n']:04d}",
            student_anonymized_id=anonymized_id,
            meal_data=MealData(
                date=day,
                meal_type=meal_type,
                attended=attended,
                timestamp=day.replace(hour=MEAL_HOURS[meal_type] if hour is None else hour),
            ),
            source=AttendanceSource(college_system="dining-pos", sync_timestamp=clock.now),
            created_at=clock.now,
        )

    return _make


def observation(days_ago: int, meal_type: str = "lunch", attended: bool = True, now: datetime = NOW):
    """Observation dict as accepted by PatternDetectionEngine.record_attendance."""
    day = now.replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=days_ago)
    return {
        "date": day,
        "meal_type": meal_type,
        "attended": attended,
        "timestamp": day.replace(hour=MEAL_HOURS[MealType(meal_type)]),
    }


@pytest.fixture
def make_observation(clock):
    def _make(days_ago: int, meal_type: str = "lunch", attended: bool = True):
        return observation(days_ago, meal_type, attended, now=clock.now)
    return _make
