"""
Unit tests for monitor state ownership, reminder dispatch and the job scheduler.
"""
from datetime import datetime, timedelta

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from geo import GeofenceState, Position
from medication_schedule import REMINDER_KIND_ADVANCE, REMINDER_KIND_DUE
from monitor import (
    GeofenceMonitor,
    ReminderMonitor,
    build_scheduler,
    dispatch_pending,
    run_side_effect,
)

ZONE = {"center_latitude": 12.9716, "center_longitude": 77.5946, "radius_meters": 500}
HOME = Position(latitude=12.9716, longitude=77.5946)
AWAY = Position(latitude=12.9716, longitude=77.6006)
ASPIRIN = [{"id": "med_1", "name": "Aspirin", "dosage": "75mg", "times": ["08:00"]}]


class TestGeofenceMonitor:
    def test_state_is_per_link(self):
        monitor = GeofenceMonitor()
        assert monitor.evaluate("link_a", AWAY, ZONE).breached is True
        assert monitor.evaluate("link_b", AWAY, ZONE).breached is True
        assert monitor.evaluate("link_a", AWAY, ZONE).breached is False
        assert monitor.state_for("link_b").is_outside is True
        print("✓ Each care link has its own edge state")

    def test_injected_map_is_used(self):
        states = {"link_a": GeofenceState(relation_id="link_a", is_outside=True)}
        monitor = GeofenceMonitor(states=states)
        assert monitor.evaluate("link_a", AWAY, ZONE).breached is False
        monitor.evaluate("link_a", HOME, ZONE)
        assert states["link_a"].is_outside is False

    def test_forget_resets_state(self):
        monitor = GeofenceMonitor()
        monitor.evaluate("link_a", AWAY, ZONE)
        monitor.forget("link_a")
        assert monitor.state_for("link_a").is_outside is False
        assert monitor.evaluate("link_a", AWAY, ZONE).breached is True


class TestReminderMonitor:
    def test_ledger_per_subject(self):
        monitor = ReminderMonitor(lead_minutes=10)
        now = datetime(2024, 5, 1, 8, 0)

        _, first = monitor.check("user_1", ASPIRIN, {}, now)
        assert [r.kind for r in first] == [REMINDER_KIND_DUE]
        _, again = monitor.check("user_1", ASPIRIN, {}, now)
        assert again == []
        _, other = monitor.check("user_2", ASPIRIN, {}, now)
        assert len(other) == 1

    def test_acknowledged_dose_not_reminded(self):
        monitor = ReminderMonitor()
        now = datetime(2024, 5, 1, 8, 0)
        classification, pending = monitor.check("user_1", ASPIRIN, {"med_1": {"08:00"}}, now)
        assert pending == []
        assert classification.slots[0].status == "taken"

    def test_skipped_minute_still_sends_due(self):
        monitor = ReminderMonitor(lead_minutes=10, grace_minutes=5)
        _, before = monitor.check("user_1", ASPIRIN, {}, datetime(2024, 5, 1, 7, 59))
        _, after = monitor.check("user_1", ASPIRIN, {}, datetime(2024, 5, 1, 8, 1))
        assert [r.kind for r in before] == [REMINDER_KIND_ADVANCE]
        assert [r.kind for r in after] == [REMINDER_KIND_DUE]
        print("✓ At-time reminder survives a missed poll minute")

    def test_too_late_for_due(self):
        monitor = ReminderMonitor(lead_minutes=10, grace_minutes=5)
        _, pending = monitor.check("user_1", ASPIRIN, {}, datetime(2024, 5, 1, 8, 6))
        assert pending == []


class TestDispatchPending:
    @pytest.mark.asyncio
    async def test_claims_survive_a_fresh_monitor(self):
        claimed = set()
        notified = []

        async def claim(reminder):
            key = (reminder.schedule_id, reminder.on_date, reminder.time, reminder.kind)
            if key in claimed:
                return False
            claimed.add(key)
            return True

        async def notify(reminder):
            notified.append(reminder.time)

        now = datetime(2024, 5, 1, 8, 0)
        for _ in range(2):
            # A new monitor has an empty ledger, like a restarted or second worker.
            _, pending = ReminderMonitor().check("user_1", ASPIRIN, {}, now)
            assert len(pending) == 1
            await dispatch_pending(pending, claim, notify)

        assert notified == ["08:00"]

    @pytest.mark.asyncio
    async def test_failed_claim_is_not_notified(self):
        notified = []

        async def claim(reminder):
            raise RuntimeError("db unavailable")

        async def notify(reminder):
            notified.append(reminder.time)

        _, pending = ReminderMonitor().check("user_1", ASPIRIN, {}, datetime(2024, 5, 1, 8, 0))
        assert await dispatch_pending(pending, claim, notify) == []
        assert notified == []

    @pytest.mark.asyncio
    async def test_failed_notify_does_not_stop_the_rest(self):
        schedules = [{"id": "med_1", "name": "A", "dosage": "1", "times": ["08:00", "08:05"]}]
        attempted = []

        async def claim(reminder):
            return True

        async def notify(reminder):
            attempted.append(reminder.time)
            raise RuntimeError("webhook down")

        _, pending = ReminderMonitor().check("user_1", schedules, {}, datetime(2024, 5, 1, 8, 0))
        await dispatch_pending(pending, claim, notify)
        assert attempted == ["08:00", "08:05"]


class TestScheduler:
    def _build(self, snapshot_times):
        async def reminder_tick():
            return None

        async def snapshot_tick(slot):
            return None

        return build_scheduler("UTC", reminder_tick, 60, snapshot_tick, snapshot_times)

    def test_jobs(self):
        scheduler = self._build(["12:00", "00:00"])
        jobs = {job.id: job for job in scheduler.get_jobs()}
        assert set(jobs) == {"medicine-reminders", "location-snapshot-00:00", "location-snapshot-12:00"}

        reminder_job = jobs["medicine-reminders"]
        assert isinstance(reminder_job.trigger, IntervalTrigger)
        assert reminder_job.trigger.interval == timedelta(seconds=60)
        assert reminder_job.coalesce is True
        assert reminder_job.max_instances == 1

        noon = jobs["location-snapshot-12:00"]
        assert isinstance(noon.trigger, CronTrigger)
        fields = {f.name: str(f) for f in noon.trigger.fields}
        assert fields["hour"] == "12"
        assert fields["minute"] == "0"
        assert tuple(noon.args) == ("12:00",)
        print("✓ Reminder interval and daily snapshot jobs registered")

    def test_malformed_snapshot_time_skipped(self):
        scheduler = self._build(["12:00", "noon"])
        assert sorted(job.id for job in scheduler.get_jobs()) == ["location-snapshot-12:00", "medicine-reminders"]


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_run_side_effect_swallows_failure(self):
        async def boom():
            raise RuntimeError("webhook down")

        assert await run_side_effect(boom(), "Webhook dispatch") is None

    @pytest.mark.asyncio
    async def test_run_side_effect_returns_result(self):
        async def ok():
            return {"sent": True}

        assert await run_side_effect(ok(), "Webhook dispatch") == {"sent": True}
