"""
Occurrence resolution: which doses are due on a calendar date.

Everything here is pure. `resolve` is the single entry point used by the
HTTP schedule endpoint and by the notification engine.
"""
import logging
from datetime import date
from typing import Iterable, List, Optional, Tuple

from schemas import (
    Intake,
    Medication,
    ResolvedOccurrence,
    TakenLog,
    TemporaryReschedule,
    WEEKDAYS,
)

logger = logging.getLogger(__name__)


def parse_date(value: Optional[str]) -> Optional[date]:
    """Date part of an ISO date or timestamp string, or None if unparsable."""
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def cycle_day(start: date, cycle_length: int, target: date) -> Optional[int]:
    """1-indexed day of the cycle on `target`, None before the cycle starts."""
    offset = (target - start).days
    if offset < 0 or cycle_length < 1:
        return None
    return offset % cycle_length + 1


def nominal_intakes(medication: Medication, target: date) -> List[Intake]:
    """Intakes the medication's rule yields on `target`, before reschedules and taken state."""
    if medication.frequency_type == "daily":
        return list(medication.daily_intakes or [])

    if medication.frequency_type == "custom_weekly":
        if medication.custom_weekly_dosages is None:
            return []
        return list(medication.custom_weekly_dosages.for_weekday(WEEKDAYS[target.weekday()]))

    if medication.frequency_type == "cyclical":
        start = parse_date(medication.cycle_start_date)
        if start is None or not medication.cyclical_pattern or not medication.cycle_length:
            return []
        day = cycle_day(start, medication.cycle_length, target)
        if day is None:
            return []
        # Match on the `day` field, the pattern may be sparse or out of order
        for entry in medication.cyclical_pattern:
            if entry.day == day:
                return list(entry.intakes)
        return []

    return []


def apply_reschedule(
    medication_id: str,
    original_time: str,
    date_str: str,
    reschedules: Iterable[TemporaryReschedule],
) -> Tuple[str, bool]:
    """Effective time of an occurrence and whether a reschedule moved it.

    A reschedule only counts on the day it was both made for and made on.
    """
    for r in reschedules:
        if (
            r.medication_id == medication_id
            and r.original_date == date_str
            and r.original_time == original_time
            and r.applied_date == date_str
        ):
            return r.new_time, True
    return original_time, False


def is_taken(taken_log: TakenLog, medication_id: str, date_str: str, scheduled_time: str) -> bool:
    entry = taken_log.get(medication_id, {}).get(date_str, {}).get(scheduled_time)
    return bool(entry and entry.taken)


def resolve(
    medications: Iterable[Medication],
    taken_log: TakenLog,
    reschedules: Iterable[TemporaryReschedule],
    target: date,
) -> List[ResolvedOccurrence]:
    """All occurrences on `target`, sorted by effective time.

    Ties keep medication order, then intake order (sorted() is stable).
    """
    date_str = target.isoformat()
    reschedules = list(reschedules)
    items: List[ResolvedOccurrence] = []

    for med in medications:
        try:
            intakes = nominal_intakes(med, target)
        except Exception:
            logger.exception("Could not evaluate schedule of medication %s", med.id)
            continue

        for intake in intakes:
            effective_time, rescheduled = apply_reschedule(med.id, intake.time, date_str, reschedules)
            items.append(ResolvedOccurrence(
                medication=med,
                intake=intake.model_copy(update={"time": effective_time}),
                scheduled_time=intake.time,
                is_taken=is_taken(taken_log, med.id, date_str, intake.time),
                is_rescheduled=rescheduled,
                date=date_str,
            ))

    return sorted(items, key=lambda item: item.intake.time)
