"""
Unit tests for medicine reminder classification and the once-per-day ledger.
"""
from datetime import date, datetime, timedelta

import pytest

from medication_schedule import (
    REMINDER_KIND_ADVANCE,
    REMINDER_KIND_DUE,
    ReminderLedger,
    classify_schedules,
    classify_times,
    dose_key,
    normalize_times,
    parse_hhmm,
)

NOW = datetime(2024, 5, 1, 8, 0)


def statuses(classification):
    return {slot.time: slot.status for slot in classification.slots}


class TestParsing:
    @pytest.mark.parametrize("value,expected", [
        ("08:00", 480),
        ("8:05", 485),
        ("23:59", 1439),
        ("00:00", 0),
    ])
    def test_valid(self, value, expected):
        assert parse_hhmm(value) == expected

    @pytest.mark.parametrize("value", ["24:00", "25:99", "12:60", "noon", "", None, 800, "08:00:00"])
    def test_invalid(self, value):
        assert parse_hhmm(value) is None

    def test_normalize_times(self):
        valid, rejected = normalize_times(["9:00", "08:00", "09:00", "bad", " "])
        assert valid == ["08:00", "09:00"]
        assert rejected == ["bad"]

    def test_dose_key(self):
        assert dose_key(date(2024, 5, 1), "08:00") == "2024-05-01_08:00"


class TestClassifyTimes:
    def test_statuses(self):
        result = classify_times(["08:00", "08:05", "07:30", "09:00"], NOW)
        assert statuses(result) == {
            "07:30": "missed",
            "08:00": "due",
            "08:05": "due_soon",
            "09:00": "upcoming",
        }
        assert [s.time for s in result.slots] == ["07:30", "08:00", "08:05", "09:00"]
        print("✓ Slots classified and ordered by time")

    def test_taken_overrides(self):
        result = classify_times(["07:30", "08:00", "08:05"], NOW, taken_times={"07:30", "08:05"})
        assert statuses(result) == {"07:30": "taken", "08:00": "due", "08:05": "taken"}

    def test_lead_window_is_exclusive(self):
        result = classify_times(["08:09", "08:10"], NOW, lead_minutes=10)
        assert statuses(result) == {"08:09": "due_soon", "08:10": "upcoming"}

    def test_malformed_entry_becomes_single_warning(self):
        result = classify_times(["08:00", "25:99", "09:00"], NOW, schedule_id="med_1")
        assert len(result.warnings) == 1
        assert result.warnings[0].value == "25:99"
        assert result.warnings[0].schedule_id == "med_1"
        assert statuses(result) == {"08:00": "due", "09:00": "upcoming"}

    def test_duplicates_collapse(self):
        result = classify_times(["8:00", "08:00"], NOW)
        assert len(result.slots) == 1

    def test_empty(self):
        result = classify_times([], NOW)
        assert result.slots == []
        assert result.on_date == NOW.date()


class TestClassifySchedules:
    def test_inactive_skipped_and_sorted(self):
        schedules = [
            {"id": "med_b", "name": "Zinc", "dosage": "1", "times": ["08:30"], "patient_id": "user_1"},
            {"id": "med_a", "name": "aspirin", "dosage": "75mg", "times": ["08:30", "07:00"], "patient_id": "user_1"},
            {"id": "med_c", "name": "Old", "dosage": "1", "times": ["08:30"], "active": False},
        ]
        result = classify_schedules(schedules, NOW, {"med_a": {"07:00"}})
        assert [(s.time, s.schedule_id) for s in result.slots] == [
            ("07:00", "med_a"),
            ("08:30", "med_a"),
            ("08:30", "med_b"),
        ]
        assert result.slots[0].status == "taken"
        assert result.slots[1].name == "aspirin"
        assert result.slots[1].patient_id == "user_1"

    def test_missing_times(self):
        result = classify_schedules([{"id": "med_a", "name": "A"}], NOW)
        assert result.slots == []
        assert result.warnings == []


class TestReminderLedger:
    def test_fires_once(self):
        ledger = ReminderLedger()
        classification = classify_times(["08:00", "08:05", "09:00"], NOW, schedule_id="med_1")
        first = ledger.collect(classification)
        assert {(r.time, r.kind) for r in first} == {
            ("08:00", REMINDER_KIND_DUE),
            ("08:05", REMINDER_KIND_ADVANCE),
        }
        assert ledger.collect(classification) == []
        print("✓ Reminders surface once per slot")

    def test_advance_then_due(self):
        ledger = ReminderLedger()
        early = classify_times(["08:05"], NOW, schedule_id="med_1")
        assert [r.kind for r in ledger.collect(early)] == [REMINDER_KIND_ADVANCE]
        at_time = classify_times(["08:05"], NOW + timedelta(minutes=5), schedule_id="med_1")
        assert [r.kind for r in ledger.collect(at_time)] == [REMINDER_KIND_DUE]

    def test_taken_slot_not_reminded(self):
        ledger = ReminderLedger()
        classification = classify_times(["08:00"], NOW, taken_times={"08:00"}, schedule_id="med_1")
        assert ledger.collect(classification) == []

    def test_next_day_fires_again(self):
        ledger = ReminderLedger()
        ledger.collect(classify_times(["08:00"], NOW, schedule_id="med_1"))
        tomorrow = classify_times(["08:00"], NOW + timedelta(days=1), schedule_id="med_1")
        pending = ledger.collect(tomorrow)
        assert len(pending) == 1
        assert pending[0].on_date == NOW.date() + timedelta(days=1)
        assert not ledger.has_fired("med_1", NOW.date(), "08:00", REMINDER_KIND_DUE)


class TestReferenceExamples:
    """Worked examples for a twice-daily schedule with a 10 minute lead."""

    @pytest.mark.parametrize("now,taken,expected", [
        (datetime(2024, 5, 1, 7, 55), set(), [("08:00", "due_soon"), ("20:00", "upcoming")]),
        (datetime(2024, 5, 1, 9, 0), set(), [("08:00", "missed"), ("20:00", "upcoming")]),
        (datetime(2024, 5, 1, 9, 0), {"08:00"}, [("08:00", "taken"), ("20:00", "upcoming")]),
    ])
    def test_twice_daily(self, now, taken, expected):
        result = classify_times(["08:00", "20:00"], now, taken_times=taken, lead_minutes=10)
        assert [(s.time, s.status) for s in result.slots] == expected
        assert result.warnings == []

    def test_malformed_alongside_valid_before_dose(self):
        result = classify_times(["25:99", "08:00"], datetime(2024, 5, 1, 7, 0), lead_minutes=10)
        assert [(s.time, s.status) for s in result.slots] == [("08:00", "upcoming")]
        assert len(result.warnings) == 1
        assert result.warnings[0].value == "25:99"


class TestNonAsciiDigits:
    @pytest.mark.parametrize("value", ["٠٨:٠٠", "０８:００", "०८:००"])
    def test_rejected(self, value):
        assert parse_hhmm(value) is None

    def test_reported_as_warning(self):
        result = classify_times(["٠٨:٠٠", "09:00"], NOW)
        assert [s.time for s in result.slots] == ["09:00"]
        assert [w.value for w in result.warnings] == ["٠٨:٠٠"]


class TestDueGrace:
    def test_due_after_skipped_minute(self):
        ledger = ReminderLedger(grace_minutes=5)
        early = ledger.collect(classify_times(["08:00"], datetime(2024, 5, 1, 7, 59), schedule_id="med_1"))
        late = ledger.collect(classify_times(["08:00"], datetime(2024, 5, 1, 8, 1), schedule_id="med_1"))
        assert [r.kind for r in early] == [REMINDER_KIND_ADVANCE]
        assert [r.kind for r in late] == [REMINDER_KIND_DUE]
        assert ledger.collect(classify_times(["08:00"], datetime(2024, 5, 1, 8, 2), schedule_id="med_1")) == []

    def test_grace_boundary(self):
        on_edge = ReminderLedger(grace_minutes=5).collect(
            classify_times(["08:00"], datetime(2024, 5, 1, 8, 5), schedule_id="med_1")
        )
        past_edge = ReminderLedger(grace_minutes=5).collect(
            classify_times(["08:00"], datetime(2024, 5, 1, 8, 6), schedule_id="med_1")
        )
        assert [r.kind for r in on_edge] == [REMINDER_KIND_DUE]
        assert past_edge == []

    def test_zero_grace_needs_exact_minute(self):
        ledger = ReminderLedger(grace_minutes=0)
        assert ledger.collect(classify_times(["08:00"], datetime(2024, 5, 1, 8, 1), schedule_id="med_1")) == []

    def test_taken_dose_not_backfilled(self):
        ledger = ReminderLedger(grace_minutes=5)
        classification = classify_times(["08:00"], datetime(2024, 5, 1, 8, 2), taken_times={"08:00"}, schedule_id="med_1")
        assert ledger.collect(classification) == []
