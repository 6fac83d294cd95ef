import datetime as dt

import pytest

from clinica.appointments import create_appointment, update_appointment
from clinica.auth_service import create_user
from clinica.availability import (
    available_slots,
    calendar_day,
    can_schedule,
    check_specific_availability,
    professional_on_leave,
)
from clinica.db import db_session
from clinica.errors import NotFoundError
from clinica.models import VacationRequest, VacationStatus

from conftest import MONDAY


def _leave(user_id, start, end, status=VacationStatus.APPROVED):
    with db_session() as s:
        s.add(VacationRequest(user_id=user_id, start_date=start, end_date=end, status=status))


def test_slots_follow_service_duration_and_skip_lunch(rossi, service):
    slots = available_slots(rossi.id, service.id, MONDAY)
    starts = [s["start_time"] for s in slots]

    assert starts[0] == "09:00"
    assert starts[-1] == "17:30"
    assert "14:00" not in starts and "14:30" not in starts
    assert len(slots) == 16
    assert all(s["available"] for s in slots)


def test_slots_keep_buffer_around_appointments(rossi, service, client_id, org_id):
    create_appointment(org_id, client_id, rossi.id, MONDAY, "10:00", 30)

    starts = [s["start_time"] for s in available_slots(rossi.id, service.id, MONDAY)]

    # 5 minuti di margine: spariscono anche gli slot adiacenti
    assert "09:30" not in starts
    assert "10:00" not in starts
    assert "10:30" not in starts
    assert "09:00" in starts and "11:00" in starts


def test_cancelled_appointments_do_not_block(rossi, service, client_id, org_id):
    appointment_id = create_appointment(org_id, client_id, rossi.id, MONDAY, "10:00", 30)
    update_appointment(appointment_id, status="cancelled")

    starts = [s["start_time"] for s in available_slots(rossi.id, service.id, MONDAY)]
    assert "10:00" in starts


def test_no_slots_on_days_off_or_leave(rossi, service):
    sunday = MONDAY - dt.timedelta(days=1)
    assert available_slots(rossi.id, service.id, sunday) == []

    _leave(rossi.id, MONDAY, MONDAY + dt.timedelta(days=4))
    assert professional_on_leave(rossi.id, MONDAY)
    assert available_slots(rossi.id, service.id, MONDAY) == []


def test_pending_leave_does_not_block(rossi):
    _leave(rossi.id, MONDAY, MONDAY, status=VacationStatus.PENDING)
    assert not professional_on_leave(rossi.id, MONDAY)
    assert can_schedule(rossi.id, MONDAY, "10:00")


def test_professional_without_schedules_uses_default_window(org_id, service):
    user_id = create_user(org_id, "Nuovo Professionista", "nuovo", "segreta")

    slots = available_slots(user_id, service.id, MONDAY)
    assert slots[0]["start_time"] == "08:00"
    assert slots[-1]["end_time"] == "18:00"
    assert can_schedule(user_id, MONDAY, "08:00")
    assert not can_schedule(user_id, MONDAY, "18:00")


def test_unknown_service_or_user(rossi):
    with pytest.raises(NotFoundError):
        available_slots(rossi.id, 9999, MONDAY)
    with pytest.raises(NotFoundError):
        can_schedule("non-esiste", MONDAY, "10:00")


def test_specific_availability_checks_breaks_and_overlaps(rossi, client_id, org_id):
    assert check_specific_availability(rossi.id, MONDAY, "13:30", 30)
    assert not check_specific_availability(rossi.id, MONDAY, "13:30", 60)
    assert not check_specific_availability(rossi.id, MONDAY, "17:45", 30)

    appointment_id = create_appointment(org_id, client_id, rossi.id, MONDAY, "11:00", 45)
    assert not check_specific_availability(rossi.id, MONDAY, "11:30", 30)
    assert check_specific_availability(rossi.id, MONDAY, "11:45", 30)
    # in modifica l'appuntamento stesso non conta
    assert check_specific_availability(rossi.id, MONDAY, "11:30", 30, exclude_appointment_id=appointment_id)


def test_calendar_day_layout(org_id, rossi, client_id):
    create_appointment(org_id, client_id, rossi.id, MONDAY, "10:00", 60)

    cal = calendar_day(org_id, MONDAY)

    assert (cal["start"], cal["end"]) == ("09:00", "19:00")
    assert cal["day_of_week"] == 1
    assert [p["name"] for p in cal["professionals"]] == ["Laura Bianchi", "Mario Rossi"]

    column = cal["professionals"][1]
    block = column["appointments"][0]
    assert block["top"] == pytest.approx(10.0)
    assert block["height"] == pytest.approx(10.0)
    assert column["breaks"][0]["start_time"] == "14:00"
    free = [f["start_time"] for f in column["free_slots"]]
    assert "10:00" not in free and "10:30" not in free
    assert "14:00" not in free


def test_calendar_window_includes_unconfigured_professionals(org_id, rossi):
    create_user(org_id, "Nuovo Professionista", "nuovo", "segreta")

    cal = calendar_day(org_id, MONDAY)

    assert (cal["start"], cal["end"]) == ("08:00", "19:00")
    assert cal["time_slots"][0] == "08:00"
    for column in cal["professionals"]:
        free = column["free_slots"]
        assert all(cal["start"] <= f["start_time"] and f["end_time"] <= cal["end"] for f in free)
        tops = [f["top"] for f in free]
        assert tops == sorted(set(tops))

    nuovo = next(c for c in cal["professionals"] if c["name"] == "Nuovo Professionista")
    assert nuovo["free_slots"][0]["start_time"] == "08:00"
    assert nuovo["free_slots"][0]["top"] == 0.0
