"""
Updates to the three-level taken log (medication -> date -> scheduled time).

Every helper returns a new mapping and leaves its input untouched. Only the
levels on the updated path are copied; untouched branches are shared, which
is safe because TakenEntry is frozen and nothing here mutates in place.
"""
from typing import Optional

from schemas import TakenEntry, TakenLog


def lookup(log: TakenLog, medication_id: str, date: str, scheduled_time: str) -> Optional[TakenEntry]:
    return log.get(medication_id, {}).get(date, {}).get(scheduled_time)


def _with_entry(log: TakenLog, medication_id: str, date: str, scheduled_time: str, entry: TakenEntry) -> TakenLog:
    by_date = dict(log.get(medication_id, {}))
    by_time = dict(by_date.get(date, {}))
    by_time[scheduled_time] = entry
    by_date[date] = by_time
    new_log = dict(log)
    new_log[medication_id] = by_date
    return new_log


def mark_taken(
    log: TakenLog,
    medication_id: str,
    date: str,
    scheduled_time: str,
    actual_taken_time: str,
) -> TakenLog:
    entry = TakenEntry(taken=True, actual_taken_time=actual_taken_time)
    return _with_entry(log, medication_id, date, scheduled_time, entry)


def unmark_taken(log: TakenLog, medication_id: str, date: str, scheduled_time: str) -> TakenLog:
    if lookup(log, medication_id, date, scheduled_time) is None:
        return log
    return _with_entry(log, medication_id, date, scheduled_time, TakenEntry(taken=False))


def drop_medication(log: TakenLog, medication_id: str) -> TakenLog:
    return {med_id: by_date for med_id, by_date in log.items() if med_id != medication_id}


def to_jsonable(log: TakenLog) -> dict:
    return {
        med_id: {
            day: {t: entry.model_dump(exclude_none=True) for t, entry in by_time.items()}
            for day, by_time in by_date.items()
        }
        for med_id, by_date in log.items()
    }
