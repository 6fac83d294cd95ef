import datetime as dt

import pytest

from clinica.appointments import get_appointment
from clinica.db import db_session
from clinica.errors import NotFoundError, ValidationError
from clinica.models import WaitingListEntry
from clinica.waiting_list import (
    add_to_waiting_list,
    days_waiting,
    list_waiting_list,
    promote_to_appointment,
    remove_from_waiting_list,
    time_preference_label,
)

from conftest import MONDAY


def _backdate(entry_id, created_at):
    with db_session() as s:
        s.get(WaitingListEntry, entry_id).created_at = created_at


def test_days_waiting_rounds_up():
    now = dt.datetime(2026, 3, 10, 12, 0)
    assert days_waiting(now - dt.timedelta(hours=1), now) == 1
    assert days_waiting(now - dt.timedelta(days=2, minutes=1), now) == 3
    assert days_waiting(now, now) == 0


def test_time_preference_labels():
    assert time_preference_label("morning") == "Mattina"
    assert time_preference_label("afternoon") == "Pomeriggio"
    assert time_preference_label(None) == "Qualsiasi orario"


def test_list_is_oldest_first_with_filters(org_id, client_id, rossi, service, new_client):
    newer = add_to_waiting_list(org_id, new_client("Luca Sala"), MONDAY, time_preference="afternoon")
    older = add_to_waiting_list(
        org_id, client_id, MONDAY, MONDAY + dt.timedelta(days=7),
        professional_id=rossi.id, service_id=service.id, time_preference="morning",
    )
    now = dt.datetime(2026, 3, 10, 9, 0)
    _backdate(older, now - dt.timedelta(days=4))
    _backdate(newer, now - dt.timedelta(days=1))

    entries = list_waiting_list(org_id, now=now)

    assert [e["id"] for e in entries] == [older, newer]
    first = entries[0]
    assert first["days_waiting"] == 4
    assert first["service_name"] == "Controllo"
    assert first["professional_name"] == "Mario Rossi"
    assert first["time_preference_label"] == "Mattina"
    assert entries[1]["service_name"] == "Servizio sconosciuto"
    assert entries[1]["service_duration"] == 30

    assert [e["id"] for e in list_waiting_list(org_id, professional_id=rossi.id)] == [older]
    assert [e["id"] for e in list_waiting_list(org_id, time_preference="afternoon")] == [newer]
    assert [e["id"] for e in list_waiting_list(org_id, text="sala")] == [newer]


def test_add_validations(org_id, client_id):
    with pytest.raises(ValidationError) as exc:
        add_to_waiting_list(org_id, client_id, MONDAY, MONDAY - dt.timedelta(days=1))
    assert exc.value.field == "preferred_date_end"
    with pytest.raises(ValidationError):
        add_to_waiting_list(org_id, client_id, MONDAY, time_preference="sera")
    with pytest.raises(NotFoundError):
        add_to_waiting_list(org_id, 9999, MONDAY)


def test_promote_creates_appointment_and_removes_entry(org_id, client_id, rossi, service):
    entry_id = add_to_waiting_list(org_id, client_id, MONDAY, professional_id=rossi.id, service_id=service.id)

    appointment_id = promote_to_appointment(entry_id, MONDAY, "11:00")

    a = get_appointment(appointment_id)
    assert a["end_time"] == "11:30"
    assert a["professional_id"] == rossi.id
    assert list_waiting_list(org_id) == []


def test_failed_promotion_keeps_entry(org_id, client_id, rossi):
    entry_id = add_to_waiting_list(org_id, client_id, MONDAY)

    with pytest.raises(ValidationError) as exc:
        promote_to_appointment(entry_id, MONDAY, "11:00")
    assert exc.value.field == "professional_id"

    # 14:00 è la pausa pranzo
    with pytest.raises(ValidationError):
        promote_to_appointment(entry_id, MONDAY, "14:00", professional_id=rossi.id)
    assert [e["id"] for e in list_waiting_list(org_id)] == [entry_id]

    remove_from_waiting_list(entry_id, organization_id=org_id)
    with pytest.raises(NotFoundError):
        remove_from_waiting_list(entry_id)
