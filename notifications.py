"""
Dose reminders for today's schedule.

For every dose due today that has not been taken, two alerts are considered:
a reminder 10 minutes before the (possibly rescheduled) time and a missed-dose
alert 1 minute after it. Each alert is delivered at most once per dose and day,
keyed by medication, date, original time and alert type.

Whenever the schedule or the taken log changes, all pending timers are dropped
and rebuilt from the current state. Timer callbacks re-read the stored taken
log before delivering, since the dose may have been taken in the meantime.
"""
import logging
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger

from database import StoreError
from occurrences import is_taken
from schemas import ResolvedOccurrence
from tracker import MedicationTracker

logger = logging.getLogger(__name__)

PRE_DOSE = "PRE_DOSE"
MISSED_DOSE = "MISSED_DOSE"

PRE_DOSE_LEAD = timedelta(minutes=10)
MISSED_DOSE_DELAY = timedelta(minutes=1)

NOTIFICATIONS_RESET_KEY = "notifications_last_reset_date"

PERMISSIONS = ("granted", "denied", "default")


def notification_key(medication_id: str, date: str, scheduled_time: str, alert_type: str) -> str:
    return f"{medication_id}-{date}-{scheduled_time}-{alert_type}"


def occurrence_key(item: ResolvedOccurrence, alert_type: str) -> str:
    return notification_key(item.medication.id, item.date, item.scheduled_time, alert_type)


def render(item: ResolvedOccurrence, alert_type: str) -> Tuple[str, str]:
    name = item.medication.name
    dose = f"{item.intake.dosage:g} {item.intake.unit_label}"
    if alert_type == PRE_DOSE:
        return (
            f"Reminder: {name}",
            f"Time to take your {name} ({dose}) in 10 minutes at {item.intake.time}.",
        )
    return (
        f"Missed Dose: {name}",
        f"You may have missed your dose of {name} ({dose}) scheduled for {item.intake.time}.",
    )


class Notifier(ABC):
    """Delivery side of reminders: a permission state and a way to show an alert."""

    def __init__(self, permission: str = "default"):
        self.set_permission(permission)

    def set_permission(self, permission: str) -> None:
        if permission not in PERMISSIONS:
            raise ValueError(f"Unknown notification permission: {permission}")
        self.permission = permission

    def request_permission(self) -> str:
        # The user answers the permission prompt out of band, via set_permission
        return self.permission

    @abstractmethod
    def show(self, title: str, body: str, tag: str) -> None:
        raise NotImplementedError


class InboxNotifier(Notifier):
    """Logs alerts and keeps the most recent ones for clients to poll."""

    def __init__(self, permission: str = "default", maxlen: int = 50, clock: Callable[[], datetime] = datetime.now):
        super().__init__(permission)
        self.clock = clock
        self.inbox: Deque[Dict[str, str]] = deque(maxlen=maxlen)

    def show(self, title: str, body: str, tag: str) -> None:
        if self.permission != "granted":
            return
        logger.info("Notification %s: %s", title, body)
        self.inbox.appendleft({
            "title": title,
            "body": body,
            "tag": tag,
            "shown_at": self.clock().isoformat(timespec="seconds"),
        })


class NotificationEngine:
    def __init__(
        self,
        tracker: MedicationTracker,
        scheduler: BaseScheduler,
        notifier: Notifier,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.tracker = tracker
        self.scheduler = scheduler
        self.notifier = notifier
        self.clock = clock or tracker.clock
        self._jobs: List[str] = []
        self._shown: Set[str] = set()
        self._running = False
        self._reconciling = False
        self._dirty = False

    @property
    def shown_keys(self) -> frozenset:
        return frozenset(self._shown)

    @property
    def pending_job_ids(self) -> List[str]:
        return list(self._jobs)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self.notifier.request_permission() != "granted":
            logger.info("Notification permission not granted. Reminders will not be shown.")
        self.tracker.subscribe(self.reconcile)
        self.reconcile()

    def stop(self) -> None:
        self.tracker.unsubscribe(self.reconcile)
        self._running = False
        self.cancel_all()

    def shutdown(self) -> None:
        self.stop()
        self._shown.clear()

    def cancel_all(self) -> None:
        for job_id in self._jobs:
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                pass  # already ran
        self._jobs = []

    # -----------------------------
    # Scheduling
    # -----------------------------
    def reset_if_new_day(self) -> bool:
        """Forget delivered alerts once per calendar day."""
        today = self.clock().date().isoformat()
        store = self.tracker.store
        try:
            last_reset = store.get(NOTIFICATIONS_RESET_KEY)
        except StoreError as e:
            logger.warning("Could not read notification reset marker: %s", e)
            last_reset = None
        if last_reset == today:
            return False
        self._shown.clear()
        try:
            store.set(NOTIFICATIONS_RESET_KEY, today)
        except StoreError as e:
            logger.warning("Could not persist notification reset marker: %s", e)
        logger.info("Notification tracker reset for %s", today)
        return True

    def reconcile(self) -> None:
        """Drop all pending timers and schedule today's alerts from the current state."""
        if not self._running:
            return
        if self._reconciling:
            # resolving today can itself trigger a daily reset and a nested call
            self._dirty = True
            return
        self._reconciling = True
        try:
            self._dirty = True
            while self._dirty:
                self._dirty = False
                self._reconcile_once()
        finally:
            self._reconciling = False

    def _reconcile_once(self) -> None:
        self.reset_if_new_day()
        self.cancel_all()

        now = self.clock()
        today = now.date().isoformat()
        granted = self.notifier.permission == "granted"

        for item in self.tracker.occurrences_for(now.date()):
            if item.date != today:
                continue
            pre_key = occurrence_key(item, PRE_DOSE)
            missed_key = occurrence_key(item, MISSED_DOSE)

            if item.is_taken:
                self._shown.discard(pre_key)
                self._shown.discard(missed_key)
                continue
            if not granted:
                continue

            hour, minute = (int(part) for part in item.intake.time.split(":"))
            due = now.replace(hour=hour, minute=minute, second=0, microsecond=0)

            if pre_key not in self._shown:
                pre_at = due - PRE_DOSE_LEAD
                if pre_at > now:
                    self._schedule(pre_at, item, PRE_DOSE)

            if missed_key not in self._shown:
                missed_at = due + MISSED_DOSE_DELAY
                if missed_at <= now:
                    self.deliver(item, MISSED_DOSE)
                else:
                    self._schedule(missed_at, item, MISSED_DOSE)

        if self._jobs:
            logger.debug("Scheduled %d reminder timers", len(self._jobs))

    def _schedule(self, run_at: datetime, item: ResolvedOccurrence, alert_type: str) -> None:
        job_id = "notify:" + occurrence_key(item, alert_type)
        self.scheduler.add_job(
            self._on_timer,
            DateTrigger(run_date=run_at),
            args=[item, alert_type],
            id=job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._jobs.append(job_id)

    async def _on_timer(self, item: ResolvedOccurrence, alert_type: str) -> None:
        self.deliver(item, alert_type)

    def deliver(self, item: ResolvedOccurrence, alert_type: str) -> bool:
        """Show the alert unless it is stale. Returns True if it was shown."""
        key = occurrence_key(item, alert_type)
        if not self._running:
            logger.debug("Skipping %s, engine stopped", key)
            return False
        if key in self._shown:
            return False
        live_log = self.tracker.persisted_taken_log()
        if is_taken(live_log, item.medication.id, item.date, item.scheduled_time):
            logger.debug("Skipping %s, dose already taken", key)
            return False
        if self.notifier.permission != "granted":
            return False
        title, body = render(item, alert_type)
        self.notifier.show(title, body, tag=key)
        self._shown.add(key)
        return True
