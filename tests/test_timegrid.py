import datetime as dt
from types import SimpleNamespace

import pytest

from clinica.timegrid import (
    BreakInterval,
    DaySchedule,
    TimeRange,
    calendar_time_range,
    day_of_week,
    fragment_working_hours_around_breaks,
    free_slots,
    generate_time_slots,
    is_schedulable,
    layout_block,
    minutes_to_time,
    normalize_time,
    position_for_time,
    schedulable_segments,
    time_from_position,
    time_to_minutes,
    work_schedule_display,
)

LUNCH = BreakInterval("13:00", "14:00", "Pranzo")
MONDAY_SCHEDULE = DaySchedule(1, "09:00", "17:00", breaks=(LUNCH,))


def test_time_round_trip_for_every_quarter_hour():
    for minutes in range(0, 24 * 60, 15):
        t = minutes_to_time(minutes)
        assert minutes_to_time(time_to_minutes(t)) == t


def test_normalize_time_drops_seconds():
    assert normalize_time("9:05:30") == "09:05"
    assert normalize_time(dt.time(14, 30)) == "14:30"


@pytest.mark.parametrize("bad", ["", "25:00", "10:75", "abc", "10"])
def test_invalid_times_raise(bad):
    with pytest.raises(ValueError):
        time_to_minutes(bad)


def test_position_is_monotonic_and_clamped():
    positions = [position_for_time(m, "08:00", "18:00") for m in range(0, 24 * 60, 10)]
    assert all(0 <= p <= 100 for p in positions)
    assert positions == sorted(positions)
    assert position_for_time("13:00", "08:00", "18:00") == 50.0


def test_time_from_position_rounds_half_up():
    # metà della finestra 08:00-18:00
    assert time_from_position(250, 500, "08:00", "18:00", interval=15) == "13:00"
    assert time_from_position(0, 500, "08:00", "18:00") == "08:00"
    assert time_from_position(9999, 500, "08:00", "18:00") == "18:00"


def test_layout_block_never_overflows_the_window():
    window = TimeRange(time_to_minutes("08:00"), time_to_minutes("18:00"))
    top, height = layout_block("17:30", 120, window)
    assert top + height == pytest.approx(100.0)


def test_fragments_skip_breaks_and_short_remainders():
    working = [TimeRange(time_to_minutes("09:00"), time_to_minutes("17:00"))]
    breaks = [BreakInterval("13:00", "14:00"), BreakInterval("16:50", "17:00")]

    segments = fragment_working_hours_around_breaks(working, breaks, interval=15)

    assert [s.as_times() for s in segments] == [("09:00", "13:00"), ("14:00", "16:50")]
    for seg in segments:
        for b in breaks:
            assert not seg.overlaps(TimeRange(time_to_minutes(b.start_time), time_to_minutes(b.end_time)))


def test_segments_and_breaks_cover_the_working_day():
    working = [TimeRange(time_to_minutes("09:00"), time_to_minutes("17:00"))]
    breaks = [BreakInterval("13:00", "14:00"), BreakInterval("16:50", "17:00")]

    covered = set()
    for r in fragment_working_hours_around_breaks(working, breaks, interval=15):
        covered.update(range(r.start, r.end))
    for b in breaks:
        covered.update(range(time_to_minutes(b.start_time), time_to_minutes(b.end_time)))

    assert covered == set(range(540, 1020))


def test_short_remainders_are_the_only_uncovered_minutes():
    working = [TimeRange(time_to_minutes("09:00"), time_to_minutes("10:00"))]
    lunch = BreakInterval("09:50", "09:55")

    segments = fragment_working_hours_around_breaks(working, [lunch], interval=15)

    covered = set(range(time_to_minutes("09:50"), time_to_minutes("09:55")))
    for r in segments:
        covered.update(range(r.start, r.end))
    # 09:55-10:00 è più corto di un intervallo
    assert set(range(540, 600)) - covered == set(range(595, 600))


def test_inactive_breaks_are_ignored():
    working = [TimeRange(540, 600)]
    segments = fragment_working_hours_around_breaks(working, [BreakInterval("09:15", "09:30", is_active=False)])
    assert segments == working


def test_zero_schedules_use_default_window():
    assert is_schedulable([], 1, "08:00")
    assert is_schedulable([], 1, "17:59")
    assert not is_schedulable([], 1, "07:59")
    assert not is_schedulable([], 1, "18:00")
    assert [s.as_times() for s in schedulable_segments([], 3)] == [("08:00", "18:00")]


def test_is_schedulable_with_breaks_other_days_and_leave():
    schedules = [MONDAY_SCHEDULE]
    assert is_schedulable(schedules, 1, "09:00")
    assert not is_schedulable(schedules, 1, "13:30")
    assert not is_schedulable(schedules, 1, "17:00")
    # esiste un orario ma non per martedì
    assert not is_schedulable(schedules, 2, "10:00")
    assert not is_schedulable(schedules, 1, "10:00", on_leave=True)


def test_calendar_range_is_envelope_rounded_to_hours():
    users = [
        SimpleNamespace(is_active=True, work_schedules=[DaySchedule(1, "09:30", "13:00")]),
        SimpleNamespace(is_active=True, work_schedules=[DaySchedule(1, "12:00", "18:15")]),
        SimpleNamespace(is_active=False, work_schedules=[DaySchedule(1, "06:00", "22:00")]),
    ]
    window = calendar_time_range(users, 1)
    assert window.as_times() == ("09:00", "19:00")
    assert generate_time_slots(users, 1, 60)[:2] == ["09:00", "10:00"]
    assert calendar_time_range(users, 0).as_times() == ("08:00", "18:00")

    users.append(SimpleNamespace(is_active=True, work_schedules=[]))
    assert calendar_time_range(users, 1).as_times() == ("08:00", "19:00")


def test_free_slots_exclude_appointments():
    segments = schedulable_segments([MONDAY_SCHEDULE], 1, interval=60)
    window = TimeRange(time_to_minutes("09:00"), time_to_minutes("17:00"))
    appointments = [{"start_time": "10:00", "duration": 30}]

    slots = free_slots(segments, appointments, window, interval=60)

    starts = [s.start for s in slots]
    assert "10:00" not in starts
    assert "13:00" not in starts
    assert starts[0] == "09:00"
    assert starts[-1] == "16:00"


def test_day_of_week_starts_on_sunday():
    assert day_of_week(dt.date(2026, 3, 1)) == 0  # domenica
    assert day_of_week(dt.date(2026, 3, 2)) == 1


def test_work_schedule_display():
    assert work_schedule_display([]) == "Nessun orario configurato"
    assert work_schedule_display([MONDAY_SCHEDULE]) == "Lun: 09:00-17:00 (pausa: 13:00-14:00)"


def test_overlapping_windows_are_all_checked():
    schedules = [
        DaySchedule(1, "09:00", "13:00", breaks=(BreakInterval("10:00", "11:00"),)),
        DaySchedule(1, "10:00", "12:00"),
    ]
    assert is_schedulable(schedules, 1, "10:30")
    assert is_schedulable(list(reversed(schedules)), 1, "10:30")
    assert not is_schedulable(schedules[:1], 1, "10:30")
