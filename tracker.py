"""
Medication tracker: owns medications, the taken log, temporary reschedules and
the daily reset marker, and persists each of them through a KeyValueStore.

Mutations are all-or-nothing: new values are written to the store first and only
swapped into memory once every write succeeded.
"""
import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import TypeAdapter, ValidationError

import taken_log as tl
from database import KeyValueStore, StoreError
from schemas import (
    Medication,
    MedicationCreate,
    MedicationUpdate,
    ResolvedOccurrence,
    TakenLog,
    TemporaryReschedule,
)
from occurrences import resolve

logger = logging.getLogger(__name__)

MEDICATIONS_KEY = "medications"
TAKEN_LOG_KEY = "taken_log"
RESCHEDULES_KEY = "temp_reschedules"
LAST_RESET_KEY = "last_reset_date"

_medications_adapter = TypeAdapter(List[Medication])
_taken_log_adapter = TypeAdapter(TakenLog)
_reschedules_adapter = TypeAdapter(List[TemporaryReschedule])


class TrackerError(Exception):
    def __init__(self, message: str = "operation failed, retry"):
        super().__init__(message)


class MedicationNotFound(TrackerError):
    def __init__(self, medication_id: str):
        super().__init__(f"Medication {medication_id} not found")
        self.medication_id = medication_id


class RescheduleNotAllowed(TrackerError):
    pass


def _serialize(key: str, value: Any) -> Any:
    if key == MEDICATIONS_KEY:
        return [m.model_dump() for m in value]
    if key == TAKEN_LOG_KEY:
        return tl.to_jsonable(value)
    if key == RESCHEDULES_KEY:
        return [r.model_dump() for r in value]
    return value


class MedicationTracker:
    _attrs = {
        MEDICATIONS_KEY: "_medications",
        TAKEN_LOG_KEY: "_taken_log",
        RESCHEDULES_KEY: "_reschedules",
        LAST_RESET_KEY: "_last_reset_date",
    }

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], datetime] = datetime.now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.store = store
        self.clock = clock
        self.id_factory = id_factory
        self._medications: List[Medication] = []
        self._taken_log: TakenLog = {}
        self._reschedules: List[TemporaryReschedule] = []
        self._last_reset_date: Optional[str] = None
        self._listeners: List[Callable[[], None]] = []

    # -----------------------------
    # Loading
    # -----------------------------
    def load(self) -> None:
        """Read all records; anything missing or malformed starts out empty.

        Raises TrackerError when the store cannot be read, leaving the tracker
        state untouched.
        """
        medications = self._read(MEDICATIONS_KEY, _medications_adapter, [])
        taken_log = self._read(TAKEN_LOG_KEY, _taken_log_adapter, {})
        reschedules = self._read(RESCHEDULES_KEY, _reschedules_adapter, [])
        last_reset = self._read(LAST_RESET_KEY, TypeAdapter(Optional[str]), None)
        self._medications = medications
        self._taken_log = taken_log
        self._reschedules = reschedules
        self._last_reset_date = last_reset
        logger.info(
            "Loaded %d medications, %d reschedules (last reset %s)",
            len(self._medications), len(self._reschedules), last_reset,
        )
        self.ensure_daily_reset()

    def _read(self, key: str, adapter: TypeAdapter, default):
        try:
            raw = self.store.get(key)
        except StoreError as e:
            # an unreadable record must not be replaced by an empty default on the next write
            logger.error("Failed to load %s: %s", key, e)
            raise TrackerError(f"could not load {key}, store unavailable") from e
        if raw is None:
            return default
        try:
            return adapter.validate_python(raw)
        except ValidationError as e:
            logger.error("Discarding malformed %s record: %s", key, e)
            return default

    # -----------------------------
    # Listeners
    # -----------------------------
    def subscribe(self, callback: Callable[[], None]) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def unsubscribe(self, callback: Callable[[], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                logger.exception("Tracker listener %r failed", callback)

    # -----------------------------
    # Persistence
    # -----------------------------
    def _commit(self, updates: Dict[str, Any]) -> None:
        written = []
        for key, value in updates.items():
            try:
                self.store.set(key, _serialize(key, value))
            except StoreError as e:
                logger.error("Write of %s failed, rolling back: %s", key, e)
                self._restore(written)
                raise TrackerError() from e
            written.append(key)
        for key, value in updates.items():
            setattr(self, self._attrs[key], value)
        self._notify()

    def _restore(self, keys: List[str]) -> None:
        for key in keys:
            try:
                self.store.set(key, _serialize(key, getattr(self, self._attrs[key])))
            except StoreError:
                logger.exception("Could not restore %s after a failed write", key)

    # -----------------------------
    # Clock helpers
    # -----------------------------
    def today(self) -> date:
        return self.clock().date()

    def today_str(self) -> str:
        return self.today().isoformat()

    # -----------------------------
    # Medications
    # -----------------------------
    @property
    def medications(self) -> List[Medication]:
        return list(self._medications)

    def get_medication(self, medication_id: str) -> Medication:
        for med in self._medications:
            if med.id == medication_id:
                return med
        raise MedicationNotFound(medication_id)

    def add_medication(self, data: MedicationCreate) -> Medication:
        now = self.clock().isoformat()
        medication = Medication(**data.model_dump(), id=self.id_factory(), created_at=now, updated_at=now)
        self._commit({MEDICATIONS_KEY: self._medications + [medication]})
        logger.info("Added medication %s (%s)", medication.id, medication.name)
        return medication

    def update_medication(self, medication_id: str, changes: MedicationUpdate) -> Medication:
        """Merge `changes` into the stored medication; the result is validated like a new one."""
        existing = self.get_medication(medication_id)
        merged = existing.model_dump(exclude={"id", "created_at", "updated_at"})
        merged.update(changes.model_dump(exclude_unset=True))
        validated = MedicationCreate.model_validate(merged)
        updated = Medication(
            **validated.model_dump(),
            id=existing.id,
            created_at=existing.created_at,
            updated_at=self.clock().isoformat(),
        )
        medications = [updated if m.id == medication_id else m for m in self._medications]
        self._commit({MEDICATIONS_KEY: medications})
        return updated

    def delete_medication(self, medication_id: str) -> None:
        """Remove a medication together with its taken-log entries and reschedules."""
        self.get_medication(medication_id)
        self._commit({
            MEDICATIONS_KEY: [m for m in self._medications if m.id != medication_id],
            TAKEN_LOG_KEY: tl.drop_medication(self._taken_log, medication_id),
            RESCHEDULES_KEY: [r for r in self._reschedules if r.medication_id != medication_id],
        })
        logger.info("Deleted medication %s", medication_id)

    # -----------------------------
    # Taken log
    # -----------------------------
    @property
    def taken_log(self) -> TakenLog:
        return self._taken_log

    def mark_taken(
        self,
        medication_id: str,
        date_str: str,
        scheduled_time: str,
        actual_taken_time: Optional[str] = None,
    ) -> None:
        self.get_medication(medication_id)
        actual = actual_taken_time or self.clock().strftime("%H:%M")
        self._commit({
            TAKEN_LOG_KEY: tl.mark_taken(self._taken_log, medication_id, date_str, scheduled_time, actual),
        })

    def unmark_taken(self, medication_id: str, date_str: str, scheduled_time: str) -> None:
        self.get_medication(medication_id)
        self._commit({
            TAKEN_LOG_KEY: tl.unmark_taken(self._taken_log, medication_id, date_str, scheduled_time),
        })

    def is_taken(self, medication_id: str, date_str: str, scheduled_time: str) -> bool:
        entry = tl.lookup(self._taken_log, medication_id, date_str, scheduled_time)
        return bool(entry and entry.taken)

    def persisted_taken_log(self) -> TakenLog:
        """Taken log as currently stored, for callbacks that must not trust a cached copy."""
        try:
            raw = self.store.get(TAKEN_LOG_KEY)
        except StoreError as e:
            logger.warning("Could not re-read taken log, using in-memory copy: %s", e)
            return self._taken_log
        if raw is None:
            return {}
        try:
            return _taken_log_adapter.validate_python(raw)
        except ValidationError as e:
            logger.warning("Stored taken log is malformed, using in-memory copy: %s", e)
            return self._taken_log

    # -----------------------------
    # Reschedules
    # -----------------------------
    @property
    def reschedules(self) -> List[TemporaryReschedule]:
        return list(self._reschedules)

    def add_reschedule(
        self,
        medication_id: str,
        original_date: str,
        original_time: str,
        new_time: str,
    ) -> TemporaryReschedule:
        """Move one of today's doses to `new_time`, replacing any earlier move of the same dose."""
        self.get_medication(medication_id)
        today = self.today_str()
        if original_date != today:
            raise RescheduleNotAllowed("Rescheduling is only available for the current day.")
        reschedule = TemporaryReschedule(
            medication_id=medication_id,
            original_date=original_date,
            original_time=original_time,
            new_time=new_time,
            applied_date=today,
        )
        kept = [
            r for r in self._reschedules
            if not (
                r.medication_id == medication_id
                and r.original_date == original_date
                and r.original_time == original_time
            )
        ]
        self._commit({RESCHEDULES_KEY: kept + [reschedule]})
        return reschedule

    # -----------------------------
    # Daily reset and resolution
    # -----------------------------
    def ensure_daily_reset(self) -> bool:
        """Drop reschedules made on earlier days, once per calendar day. Returns True if a reset ran."""
        today = self.today_str()
        if self._last_reset_date == today:
            return False
        logger.info("Performing daily reset for %s", today)
        kept = [r for r in self._reschedules if r.applied_date == today]
        try:
            self._commit({RESCHEDULES_KEY: kept, LAST_RESET_KEY: today})
        except TrackerError:
            logger.warning("Daily reset could not be persisted, will retry")
            return False
        return True

    def occurrences_for(self, target: date) -> List[ResolvedOccurrence]:
        self.ensure_daily_reset()
        return resolve(self._medications, self._taken_log, self._reschedules, target)
