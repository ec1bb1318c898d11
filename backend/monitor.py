"""
Owners for evaluator state and the jobs that drive them.

Each monitor keeps an explicit per-subject map (injected or created empty) and
calls the pure evaluators; the APScheduler jobs built by ``build_scheduler``
only decide when to call them. Side effects run through ``run_side_effect`` so
a failed write or webhook is logged and never reaches evaluator state.
"""
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from geo import GeofenceEvaluation, GeofenceState, Position, evaluate_geofence
from medication_schedule import (
    DEFAULT_DUE_GRACE_MINUTES,
    DEFAULT_LEAD_MINUTES,
    Classification,
    PendingReminder,
    ReminderLedger,
    classify_schedules,
    normalize_times,
)

logger = logging.getLogger(__name__)


async def run_side_effect(awaitable: Awaitable, description: str):
    """Await a downstream effect; log and swallow its failure."""
    try:
        return await awaitable
    except Exception as exc:
        logger.warning(f"{description} failed: {exc}")
        return None


class GeofenceMonitor:
    """Edge-triggered geofence state, one entry per care-link id."""

    def __init__(self, states: Optional[Dict[str, GeofenceState]] = None, hysteresis_meters: float = 0.0):
        self.states = states if states is not None else {}
        self.hysteresis_meters = hysteresis_meters

    def state_for(self, relation_id: str) -> GeofenceState:
        return self.states.get(relation_id) or GeofenceState(relation_id=relation_id)

    def evaluate(
        self,
        relation_id: str,
        position: Position,
        zone,
        now: Optional[datetime] = None
    ) -> GeofenceEvaluation:
        result = evaluate_geofence(
            position,
            zone,
            self.state_for(relation_id),
            hysteresis_meters=self.hysteresis_meters,
            now=now
        )
        self.states[relation_id] = result.state
        return result

    def forget(self, relation_id: str) -> None:
        self.states.pop(relation_id, None)


class ReminderMonitor:
    """Medicine reminder checks with a separate once-per-day ledger per patient."""

    def __init__(
        self,
        ledgers: Optional[Dict[str, ReminderLedger]] = None,
        lead_minutes: int = DEFAULT_LEAD_MINUTES,
        grace_minutes: int = DEFAULT_DUE_GRACE_MINUTES
    ):
        self.ledgers = ledgers if ledgers is not None else {}
        self.lead_minutes = lead_minutes
        self.grace_minutes = grace_minutes

    def check(
        self,
        subject_id: str,
        schedules: List[dict],
        acknowledgements: Optional[Dict[str, Set[str]]],
        now: datetime
    ) -> Tuple[Classification, List[PendingReminder]]:
        classification = classify_schedules(
            schedules,
            now,
            acknowledgements,
            lead_minutes=self.lead_minutes
        )
        ledger = self.ledgers.setdefault(subject_id, ReminderLedger(grace_minutes=self.grace_minutes))
        return classification, ledger.collect(classification)


async def dispatch_pending(
    pending: List[PendingReminder],
    claim: Callable[[PendingReminder], Awaitable[bool]],
    notify: Callable[[PendingReminder], Awaitable]
) -> List[PendingReminder]:
    """
    Notify each reminder that ``claim`` reports as newly claimed.

    ``claim`` is the shared once-only record (a storage upsert in the server),
    so a restarted process or a second worker does not notify twice.
    """
    sent = []
    for reminder in pending:
        claimed = await run_side_effect(claim(reminder), f"Reminder claim {reminder.schedule_id} {reminder.time}")
        if not claimed:
            continue
        await run_side_effect(notify(reminder), f"Reminder notification {reminder.schedule_id} {reminder.time}")
        sent.append(reminder)
    return sent


def build_scheduler(
    timezone: str,
    reminder_tick: Callable[[], Awaitable],
    reminder_interval_seconds: float,
    snapshot_tick: Callable[[str], Awaitable],
    snapshot_times: List[str]
) -> AsyncIOScheduler:
    """Scheduler with the reminder poll and one daily job per snapshot time."""
    scheduler = AsyncIOScheduler(timezone=timezone)
    scheduler.add_job(
        reminder_tick,
        "interval",
        seconds=max(1.0, float(reminder_interval_seconds)),
        id="medicine-reminders",
        coalesce=True,
        max_instances=1,
        misfire_grace_time=30
    )
    times, rejected = normalize_times(snapshot_times)
    for value in rejected:
        logger.warning(f"Ignoring malformed snapshot time {value!r}")
    for slot in times:
        hour, minute = slot.split(":")
        scheduler.add_job(
            snapshot_tick,
            "cron",
            hour=int(hour),
            minute=int(minute),
            args=[slot],
            id=f"location-snapshot-{slot}",
            coalesce=True,
            max_instances=1,
            misfire_grace_time=600
        )
    return scheduler
