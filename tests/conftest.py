from datetime import datetime

import pytest

from database import MemoryKeyValueStore
from schemas import Intake, Medication
from tracker import MedicationTracker


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def daily_medication(med_id="med-1", name="Aspirin", times=("08:00",), **kwargs) -> Medication:
    return Medication(
        id=med_id,
        name=name,
        frequency_type="daily",
        daily_intakes=[Intake(time=t, dosage=1, unit="pill") for t in times],
        created_at="2024-01-01T00:00:00",
        updated_at="2024-01-01T00:00:00",
        **kwargs,
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 1, 7, 0))


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def tracker(store, clock):
    ids = iter(f"med-{n}" for n in range(1, 100))
    t = MedicationTracker(store, clock=clock, id_factory=lambda: next(ids))
    t.load()
    return t
