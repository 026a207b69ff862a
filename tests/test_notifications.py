"""Tests for the reminder engine, driven by an APScheduler that is never started."""

import asyncio
from datetime import datetime

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from notifications import (
    MISSED_DOSE,
    NOTIFICATIONS_RESET_KEY,
    PRE_DOSE,
    InboxNotifier,
    NotificationEngine,
    Notifier,
    notification_key,
)
from schemas import MedicationCreate


@pytest.fixture
def scheduler():
    return AsyncIOScheduler()


@pytest.fixture
def notifier(clock):
    return InboxNotifier(permission="granted", clock=clock)


@pytest.fixture
def med(tracker):
    return tracker.add_medication(MedicationCreate(
        name="Aspirin",
        frequency_type="daily",
        daily_intakes=[{"time": "08:00", "dosage": 1, "unit": "pill"}],
    ))


@pytest.fixture
def engine(tracker, scheduler, notifier, med):
    engine = NotificationEngine(tracker, scheduler, notifier)
    yield engine
    engine.shutdown()


def run_times(scheduler):
    return sorted(job.trigger.run_date.replace(tzinfo=None) for job in scheduler.get_jobs())


def fire(job):
    asyncio.run(job.func(*job.args))


def test_schedules_pre_dose_and_missed_dose(engine, scheduler):
    engine.start()
    assert run_times(scheduler) == [datetime(2024, 3, 1, 7, 50), datetime(2024, 3, 1, 8, 1)]


def test_firing_pre_dose_timer_delivers_once(engine, scheduler, notifier, med):
    engine.start()
    pre_job = next(j for j in scheduler.get_jobs() if j.id.endswith(PRE_DOSE))

    fire(pre_job)
    fire(pre_job)

    assert len(notifier.inbox) == 1
    alert = notifier.inbox[0]
    assert alert["title"] == "Reminder: Aspirin"
    assert alert["body"] == "Time to take your Aspirin (1 pill) in 10 minutes at 08:00."
    assert alert["tag"] == notification_key(med.id, "2024-03-01", "08:00", PRE_DOSE)


def test_timer_skips_dose_taken_after_scheduling(engine, scheduler, notifier, tracker, med):
    engine.start()
    jobs = scheduler.get_jobs()

    tracker.mark_taken(med.id, "2024-03-01", "08:00")
    assert scheduler.get_jobs() == []

    for job in jobs:
        fire(job)
    assert list(notifier.inbox) == []


def test_missed_dose_fires_immediately_when_overdue(engine, scheduler, notifier, clock, med):
    clock.now = datetime(2024, 3, 1, 9, 0)
    engine.start()

    assert [a["title"] for a in notifier.inbox] == ["Missed Dose: Aspirin"]
    assert notifier.inbox[0]["body"] == "You may have missed your dose of Aspirin (1 pill) scheduled for 08:00."
    assert scheduler.get_jobs() == []

    engine.reconcile()
    assert len(notifier.inbox) == 1


def test_reconcile_never_accumulates_timers(engine, scheduler):
    engine.start()
    for _ in range(3):
        engine.reconcile()
    assert len(scheduler.get_jobs()) == 2
    assert len(engine.pending_job_ids) == 2


def test_permission_not_granted_is_silent(engine, scheduler, notifier, clock, tracker, med):
    notifier.set_permission("denied")
    clock.now = datetime(2024, 3, 1, 9, 0)
    engine.start()

    assert scheduler.get_jobs() == []
    assert list(notifier.inbox) == []
    assert engine.shown_keys == frozenset()

    notifier.set_permission("granted")
    engine.reconcile()
    assert [a["title"] for a in notifier.inbox] == ["Missed Dose: Aspirin"]


def test_taking_a_dose_clears_its_dedup_keys(engine, notifier, clock, tracker, med):
    clock.now = datetime(2024, 3, 1, 9, 0)
    engine.start()
    missed = notification_key(med.id, "2024-03-01", "08:00", MISSED_DOSE)
    assert missed in engine.shown_keys

    tracker.mark_taken(med.id, "2024-03-01", "08:00")
    assert missed not in engine.shown_keys

    tracker.unmark_taken(med.id, "2024-03-01", "08:00")
    assert [a["title"] for a in notifier.inbox] == ["Missed Dose: Aspirin", "Missed Dose: Aspirin"]


def test_reschedule_moves_timers_but_keeps_original_key(engine, scheduler, tracker, med):
    engine.start()
    tracker.add_reschedule(med.id, "2024-03-01", "08:00", "09:30")

    assert run_times(scheduler) == [datetime(2024, 3, 1, 9, 20), datetime(2024, 3, 1, 9, 31)]
    assert sorted(job.id for job in scheduler.get_jobs()) == [
        "notify:" + notification_key(med.id, "2024-03-01", "08:00", MISSED_DOSE),
        "notify:" + notification_key(med.id, "2024-03-01", "08:00", PRE_DOSE),
    ]


def test_new_day_resets_dedup_set(engine, notifier, clock, tracker, med):
    clock.now = datetime(2024, 3, 1, 9, 0)
    engine.start()
    assert tracker.store.get(NOTIFICATIONS_RESET_KEY) == "2024-03-01"

    clock.now = datetime(2024, 3, 2, 9, 0)
    engine.reconcile()

    assert tracker.store.get(NOTIFICATIONS_RESET_KEY) == "2024-03-02"
    assert engine.shown_keys == frozenset({notification_key(med.id, "2024-03-02", "08:00", MISSED_DOSE)})
    assert len(notifier.inbox) == 2


def test_stop_cancels_timers_and_ignores_later_changes(engine, scheduler, notifier, tracker, med):
    engine.start()
    jobs = scheduler.get_jobs()
    engine.stop()

    assert scheduler.get_jobs() == []
    tracker.add_reschedule(med.id, "2024-03-01", "08:00", "09:30")
    assert scheduler.get_jobs() == []

    for job in jobs:
        fire(job)
    assert list(notifier.inbox) == []


def test_unit_label_and_fractional_dosage(tracker, scheduler, notifier, clock):
    tracker.add_medication(MedicationCreate(
        name="Vitamin D",
        frequency_type="daily",
        daily_intakes=[{"time": "08:00", "dosage": 0.5, "unit": "custom", "custom_unit": "scoop"}],
    ))
    clock.now = datetime(2024, 3, 1, 9, 0)
    engine = NotificationEngine(tracker, scheduler, notifier)
    engine.start()
    try:
        assert notifier.inbox[0]["body"].startswith("You may have missed your dose of Vitamin D (0.5 scoop)")
    finally:
        engine.shutdown()


def test_denied_permission_still_clears_keys_of_taken_doses(engine, scheduler, notifier, clock, tracker, med):
    engine.start()
    fire(next(j for j in scheduler.get_jobs() if j.id.endswith(PRE_DOSE)))
    clock.now = datetime(2024, 3, 1, 9, 0)
    engine.reconcile()
    pre = notification_key(med.id, "2024-03-01", "08:00", PRE_DOSE)
    missed = notification_key(med.id, "2024-03-01", "08:00", MISSED_DOSE)
    assert engine.shown_keys == frozenset({pre, missed})
    assert len(notifier.inbox) == 2

    notifier.set_permission("denied")
    tracker.mark_taken(med.id, "2024-03-01", "08:00")

    assert engine.shown_keys == frozenset()
    assert scheduler.get_jobs() == []
    assert len(notifier.inbox) == 2


def test_late_timers_are_not_dropped(engine, scheduler):
    engine.start()
    assert [job.misfire_grace_time for job in scheduler.get_jobs()] == [None, None]


def test_notifier_must_implement_show():
    class Silent(Notifier):
        pass

    with pytest.raises(TypeError):
        Silent()
