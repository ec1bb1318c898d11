"""
Time-of-day medicine reminder classification.

Statuses are computed for a single calendar day at minute resolution:

- taken: acknowledged for (medicine, date, time)
- missed: earlier than now
- due: exactly now
- due_soon: later than now but inside the lead window
- upcoming: everything else
"""
import logging
import re
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_LEAD_MINUTES = 10
DEFAULT_DUE_GRACE_MINUTES = 5

STATUS_TAKEN = "taken"
STATUS_MISSED = "missed"
STATUS_DUE = "due"
STATUS_DUE_SOON = "due_soon"
STATUS_UPCOMING = "upcoming"

REMINDER_KIND_ADVANCE = "advance"
REMINDER_KIND_DUE = "due"

HHMM_PATTERN = re.compile(r"^([0-9]{1,2}):([0-9]{2})$")


class MalformedScheduleEntry(BaseModel):
    schedule_id: Optional[str] = None
    value: str
    reason: str = "not a 24-hour HH:MM time"


class ReminderSlot(BaseModel):
    schedule_id: Optional[str] = None
    name: Optional[str] = None
    dosage: Optional[str] = None
    instructions: Optional[str] = None
    patient_id: Optional[str] = None
    time: str
    status: str


class Classification(BaseModel):
    on_date: date
    slots: List[ReminderSlot] = []
    warnings: List[MalformedScheduleEntry] = []
    as_of_minutes: Optional[int] = None


class PendingReminder(BaseModel):
    schedule_id: Optional[str] = None
    name: Optional[str] = None
    dosage: Optional[str] = None
    instructions: Optional[str] = None
    patient_id: Optional[str] = None
    time: str
    on_date: date
    kind: str


def parse_hhmm(value) -> Optional[int]:
    """Minutes since midnight for a 24-hour H:MM/HH:MM string, else None."""
    if not isinstance(value, str):
        return None
    match = HHMM_PATTERN.match(value.strip())
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return hour * 60 + minute


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def normalize_times(values: Iterable) -> Tuple[List[str], List[str]]:
    """Split raw time values into sorted unique HH:MM strings and rejects."""
    valid = set()
    rejected = []
    for raw in values or []:
        if isinstance(raw, str) and not raw.strip():
            continue
        minutes = parse_hhmm(raw)
        if minutes is None:
            rejected.append(str(raw))
            continue
        valid.add(minutes)
    return [format_minutes(m) for m in sorted(valid)], rejected


def dose_key(on_date: date, time_str: str) -> str:
    return f"{on_date.isoformat()}_{time_str}"


def _status_for(minutes: int, now_minutes: int, taken: bool, lead_minutes: int) -> str:
    if taken:
        return STATUS_TAKEN
    if minutes < now_minutes:
        return STATUS_MISSED
    if minutes == now_minutes:
        return STATUS_DUE
    if minutes < now_minutes + lead_minutes:
        return STATUS_DUE_SOON
    return STATUS_UPCOMING


def classify_times(
    times: Iterable,
    now: datetime,
    taken_times: Optional[Set[str]] = None,
    lead_minutes: int = DEFAULT_LEAD_MINUTES,
    schedule_id: Optional[str] = None
) -> Classification:
    """Classify one schedule's times against ``now``; bad entries become warnings."""
    now_minutes = now.hour * 60 + now.minute
    taken_minutes = {parse_hhmm(t) for t in (taken_times or set())}
    taken_minutes.discard(None)
    lead = max(0, int(lead_minutes))

    seen = set()
    slots = []
    warnings = []
    for raw in times or []:
        minutes = parse_hhmm(raw)
        if minutes is None:
            warnings.append(MalformedScheduleEntry(schedule_id=schedule_id, value=str(raw)))
            logger.warning(f"Skipping malformed schedule time {raw!r} for schedule {schedule_id}")
            continue
        if minutes in seen:
            continue
        seen.add(minutes)
        slots.append(ReminderSlot(
            schedule_id=schedule_id,
            time=format_minutes(minutes),
            status=_status_for(minutes, now_minutes, minutes in taken_minutes, lead)
        ))

    slots.sort(key=lambda slot: slot.time)
    return Classification(on_date=now.date(), slots=slots, warnings=warnings, as_of_minutes=now_minutes)


def classify_schedules(
    schedules: List[dict],
    now: datetime,
    acknowledgements: Optional[Dict[str, Set[str]]] = None,
    lead_minutes: int = DEFAULT_LEAD_MINUTES
) -> Classification:
    """
    Classify every active schedule for today.

    ``acknowledgements`` maps schedule id to the HH:MM slots already taken on
    ``now``'s date. Output is ordered by time, then schedule name, then id.
    """
    acknowledgements = acknowledgements or {}
    slots = []
    warnings = []
    for schedule in schedules:
        if schedule.get("active") is False:
            continue
        schedule_id = schedule.get("id")
        result = classify_times(
            schedule.get("times") or [],
            now,
            acknowledgements.get(schedule_id, set()),
            lead_minutes=lead_minutes,
            schedule_id=schedule_id
        )
        warnings.extend(result.warnings)
        for slot in result.slots:
            slot.name = schedule.get("name")
            slot.dosage = schedule.get("dosage")
            slot.instructions = schedule.get("instructions")
            slot.patient_id = schedule.get("patient_id")
            slots.append(slot)

    slots.sort(key=lambda s: (s.time, (s.name or "").lower(), s.schedule_id or ""))
    return Classification(on_date=now.date(), slots=slots, warnings=warnings, as_of_minutes=now.hour * 60 + now.minute)


class ReminderLedger:
    """
    Remembers which reminders were surfaced so each fires once per day.

    Keys are (schedule id, date, time, kind); entries for earlier dates are
    dropped as soon as a later date is seen. A ``due`` reminder whose exact
    minute was not polled is still surfaced while the slot is at most
    ``grace_minutes`` late.
    """

    def __init__(self, grace_minutes: int = DEFAULT_DUE_GRACE_MINUTES):
        self.grace_minutes = max(0, int(grace_minutes))
        self._fired: Dict[date, Set[Tuple[Optional[str], str, str]]] = {}

    def has_fired(self, schedule_id: Optional[str], on_date: date, time_str: str, kind: str) -> bool:
        return (schedule_id, time_str, kind) in self._fired.get(on_date, set())

    def mark_fired(self, schedule_id: Optional[str], on_date: date, time_str: str, kind: str) -> None:
        self._prune(on_date)
        self._fired.setdefault(on_date, set()).add((schedule_id, time_str, kind))

    def _kind_for(self, slot: ReminderSlot, as_of_minutes: Optional[int]) -> Optional[str]:
        if slot.status == STATUS_DUE_SOON:
            return REMINDER_KIND_ADVANCE
        if slot.status == STATUS_DUE:
            return REMINDER_KIND_DUE
        if slot.status == STATUS_MISSED and as_of_minutes is not None:
            late_by = as_of_minutes - parse_hhmm(slot.time)
            if late_by <= self.grace_minutes:
                return REMINDER_KIND_DUE
        return None

    def collect(self, classification: Classification) -> List[PendingReminder]:
        """Return reminders not yet surfaced for this classification and mark them."""
        self._prune(classification.on_date)
        pending = []
        for slot in classification.slots:
            kind = self._kind_for(slot, classification.as_of_minutes)
            if kind is None:
                continue
            if self.has_fired(slot.schedule_id, classification.on_date, slot.time, kind):
                continue
            self.mark_fired(slot.schedule_id, classification.on_date, slot.time, kind)
            pending.append(PendingReminder(
                schedule_id=slot.schedule_id,
                name=slot.name,
                dosage=slot.dosage,
                instructions=slot.instructions,
                patient_id=slot.patient_id,
                time=slot.time,
                on_date=classification.on_date,
                kind=kind
            ))
        return pending

    def _prune(self, current: date) -> None:
        for stale in [d for d in self._fired if d < current]:
            del self._fired[stale]
