import datetime as dt

import pytest

from clinica.billing import invoice_group_activity
from clinica.errors import NotFoundError, ValidationError
from clinica.group_activities import (
    RecurrenceRule,
    activity_stats,
    add_participant,
    create_group_activity,
    delete_series,
    detect_series,
    expand_recurrence,
    get_group_activity,
    list_group_activities,
    remove_participant,
    update_group_activity,
    update_participant_status,
    update_series,
    validate_recurrence,
)

from conftest import MONDAY

YESTERDAY = MONDAY - dt.timedelta(days=1)


def _activity(org_id, professional_id, **overrides):
    data = dict(
        organization_id=org_id,
        name="Pilates",
        date=MONDAY,
        start_time="18:00",
        end_time="19:00",
        professional_id=professional_id,
        max_participants=2,
    )
    data.update(overrides)
    return create_group_activity(**data)


def test_weekly_and_daily_expansion():
    weekly = RecurrenceRule("WEEKLY", 1, MONDAY + dt.timedelta(weeks=3))
    assert expand_recurrence(MONDAY, weekly) == [MONDAY + dt.timedelta(weeks=n) for n in range(4)]

    daily = RecurrenceRule("DAILY", 2, MONDAY + dt.timedelta(days=5))
    assert expand_recurrence(MONDAY, daily) == [MONDAY + dt.timedelta(days=n) for n in (0, 2, 4)]
    assert len(expand_recurrence(MONDAY, daily, max_instances=2)) == 2


def test_monthly_expansion_clamps_to_month_end():
    rule = RecurrenceRule("MONTHLY", 1, dt.date(2026, 4, 30))
    assert expand_recurrence(dt.date(2026, 1, 31), rule) == [
        dt.date(2026, 1, 31),
        dt.date(2026, 2, 28),
        dt.date(2026, 3, 31),
        dt.date(2026, 4, 30),
    ]


def test_validate_recurrence():
    today = dt.date(2026, 3, 1)
    assert validate_recurrence(RecurrenceRule("WEEKLY", 2, dt.date(2026, 6, 1)), today) == []
    assert validate_recurrence(RecurrenceRule("WEEKLY", 13, dt.date(2026, 6, 1)), today) == [
        "L'intervallo massimo è 12 settimane"
    ]
    assert validate_recurrence(RecurrenceRule("DAILY", 1, dt.date(2026, 2, 1)), today) == [
        "La data di fine deve essere futura"
    ]
    assert validate_recurrence(RecurrenceRule("DAILY", 1, dt.date(2026, 12, 1)), today) == [
        "La serie non può superare 6 mesi"
    ]
    assert validate_recurrence(RecurrenceRule("YEARLY", 1, dt.date(2026, 6, 1)), today)


def test_rule_string_round_trip_and_description():
    rule = RecurrenceRule.parse("FREQ=WEEKLY;INTERVAL=2;UNTIL=20260601")
    assert rule == RecurrenceRule("WEEKLY", 2, dt.date(2026, 6, 1))
    assert RecurrenceRule.parse(rule.to_string()) == rule
    assert rule.describe() == "Ogni 2 settimane fino al 01/06/2026"
    assert RecurrenceRule("DAILY", 1, dt.date(2026, 6, 1)).describe() == "Ogni giorno fino al 01/06/2026"
    with pytest.raises(ValueError):
        RecurrenceRule.parse("FREQ=WEEKLY")


def test_count_ends_the_series_after_n_occurrences():
    rule = RecurrenceRule("WEEKLY", 2, count=3)
    assert expand_recurrence(MONDAY, rule) == [MONDAY + dt.timedelta(weeks=n) for n in (0, 2, 4)]
    assert len(expand_recurrence(MONDAY, rule, max_instances=2)) == 2

    parsed = RecurrenceRule.parse("FREQ=MONTHLY;COUNT=3")
    assert parsed == RecurrenceRule("MONTHLY", 1, count=3)
    assert RecurrenceRule.parse(parsed.to_string()) == parsed
    assert parsed.describe() == "Ogni mese per 3 volte"
    assert RecurrenceRule.parse("FREQ=DAILY;INTERVAL=2;COUNT=5").to_string() == "FREQ=DAILY;INTERVAL=2;COUNT=5"


def test_validate_count_rules():
    today = dt.date(2026, 3, 1)
    assert validate_recurrence(RecurrenceRule("WEEKLY", 1, count=10), today, start=MONDAY) == []
    assert validate_recurrence(RecurrenceRule("WEEKLY", 1, count=0), today) == [
        "Il numero di occorrenze deve essere maggiore di 0"
    ]
    assert validate_recurrence(RecurrenceRule("WEEKLY", 1, count=53), today) == [
        "Il numero massimo di occorrenze è 52"
    ]
    # 30 occorrenze ogni 7 giorni finiscono oltre i 6 mesi
    assert validate_recurrence(RecurrenceRule("DAILY", 7, count=30), today, start=MONDAY) == [
        "La serie non può superare 6 mesi"
    ]
    assert validate_recurrence(RecurrenceRule("WEEKLY", 1), today) == [
        "Indicare una data di fine o un numero di occorrenze"
    ]


def test_detect_series_for_rows_without_rule():
    base = {"name": "Yoga", "professional_id": "p1", "start_time": "10:00", "end_time": "11:00", "max_participants": 8}
    rows = [
        {**base, "id": "a", "date": "2026-03-02"},
        {**base, "id": "b", "date": "2026-03-16"},
        {**base, "id": "c", "date": "2026-03-09"},
        {**base, "id": "x", "date": "2026-03-03", "name": "Pilates"},
        {**base, "id": "y", "date": "2026-03-10", "name": "Pilates", "series_id": "s"},
        {**base, "id": "i", "date": "2026-03-02", "start_time": "12:00", "end_time": "13:00"},
        {**base, "id": "j", "date": "2026-03-05", "start_time": "12:00", "end_time": "13:00"},
    ]

    found = detect_series(rows)

    assert len(found) == 1
    assert found[0].activity_ids == ("a", "c", "b")
    assert found[0].interval_days == 7


def test_create_series_shares_series_id(org_id, rossi):
    rule = RecurrenceRule("WEEKLY", 1, MONDAY + dt.timedelta(weeks=2))
    ids = _activity(org_id, rossi.id, recurrence=rule, today=YESTERDAY)

    assert len(ids) == 3
    activities = list_group_activities(org_id)
    assert len({a["series_id"] for a in activities}) == 1
    assert [a["date"] for a in activities] == ["2026-03-02", "2026-03-09", "2026-03-16"]
    assert activities[0]["recurrence_description"] == "Ogni settimana fino al 16/03/2026"

    with pytest.raises(ValidationError) as exc:
        _activity(org_id, rossi.id, recurrence=RecurrenceRule("WEEKLY", 20, MONDAY), today=YESTERDAY)
    assert exc.value.field == "recurrence"


def test_create_series_with_occurrence_count(org_id, rossi):
    ids = _activity(org_id, rossi.id, recurrence=RecurrenceRule("WEEKLY", 1, count=4), today=YESTERDAY)

    assert len(ids) == 4
    activities = list_group_activities(org_id)
    assert activities[-1]["date"] == "2026-03-23"
    assert activities[0]["recurrence_rule"] == "FREQ=WEEKLY;INTERVAL=1;COUNT=4"
    assert activities[0]["recurrence_description"] == "Ogni settimana per 4 volte"


def test_invalid_activity_fields(org_id, rossi):
    with pytest.raises(ValidationError) as exc:
        _activity(org_id, rossi.id, end_time="17:00")
    assert exc.value.field == "end_time"
    with pytest.raises(ValidationError) as exc:
        _activity(org_id, rossi.id, max_participants=0)
    assert exc.value.field == "max_participants"
    with pytest.raises(NotFoundError):
        _activity(org_id, "nessuno")


def test_series_update_keeps_dates_and_delete(org_id, rossi):
    rule = RecurrenceRule("WEEKLY", 1, MONDAY + dt.timedelta(weeks=1))
    ids = _activity(org_id, rossi.id, recurrence=rule, today=YESTERDAY)
    series_id = get_group_activity(ids[0])["series_id"]

    assert update_series(series_id, start_time="17:30", name="Pilates avanzato") == 2
    activities = list_group_activities(org_id)
    assert {a["start_time"] for a in activities} == {"17:30"}
    assert [a["date"] for a in activities] == ["2026-03-02", "2026-03-09"]
    with pytest.raises(ValidationError):
        update_series(series_id, date=MONDAY)

    update_group_activity(ids[1], status="cancelled")
    assert [a["id"] for a in list_group_activities(org_id, status="cancelled")] == [ids[1]]

    assert delete_series(series_id) == 2
    assert list_group_activities(org_id) == []


def test_participants_respect_capacity(org_id, rossi, client_id, new_client):
    (activity_id,) = _activity(org_id, rossi.id)
    second, third = new_client("Luca Sala"), new_client("Anna Riva")

    first_participant = add_participant(activity_id, client_id)
    with pytest.raises(ValidationError) as exc:
        add_participant(activity_id, client_id)
    assert exc.value.field == "client_id"

    add_participant(activity_id, second)
    with pytest.raises(ValidationError) as exc:
        add_participant(activity_id, third)
    assert exc.value.field == "group_activity_id"

    # una cancellazione libera il posto
    update_participant_status(first_participant, "cancelled")
    assert get_group_activity(activity_id)["current_participants"] == 1
    add_participant(activity_id, third)

    activity = get_group_activity(activity_id)
    assert activity["current_participants"] == 2
    assert {p["client"] for p in activity["participants"]} == {"Giulia Verdi", "Luca Sala", "Anna Riva"}

    remove_participant(first_participant)
    assert get_group_activity(activity_id)["current_participants"] == 2


def test_reactivating_a_cancelled_participant_respects_capacity(org_id, rossi, client_id, new_client):
    (activity_id,) = _activity(org_id, rossi.id, max_participants=1)
    first = add_participant(activity_id, client_id)
    update_participant_status(first, "cancelled")
    add_participant(activity_id, new_client("Luca Sala"))

    with pytest.raises(ValidationError) as exc:
        update_participant_status(first, "registered")
    assert exc.value.field == "group_activity_id"
    with pytest.raises(ValidationError):
        update_participant_status(first, "attended")

    activity = get_group_activity(activity_id)
    assert activity["current_participants"] == 1
    assert {p["client"]: p["status"] for p in activity["participants"]}["Giulia Verdi"] == "cancelled"


def test_stats(org_id, rossi, client_id, new_client):
    (activity_id,) = _activity(org_id, rossi.id)
    _activity(org_id, rossi.id, date=MONDAY + dt.timedelta(days=1), name="Yoga")
    p1 = add_participant(activity_id, client_id)
    p2 = add_participant(activity_id, new_client("Luca Sala"))
    update_participant_status(p1, "attended")
    update_participant_status(p2, "no_show")
    update_group_activity(activity_id, status="completed")

    stats = activity_stats(org_id)

    assert stats["total"] == 2
    assert stats["by_status"] == {"active": 1, "completed": 1, "cancelled": 0}
    assert stats["total_participants"] == 2
    assert stats["attendance_rate"] == 50.0
    assert activity_stats(org_id, date_from=MONDAY + dt.timedelta(days=1))["total"] == 1


def test_billing_one_invoice_per_participant(org_id, rossi, client_id, new_client):
    (activity_id,) = _activity(org_id, rossi.id)
    add_participant(activity_id, client_id)
    incomplete = new_client("Luca Sala")
    add_participant(activity_id, incomplete)

    result = invoice_group_activity(activity_id)

    assert [r.invoice_number for r in result["created"]] == ["FAC0001"]
    assert result["skipped"][0]["client_id"] == incomplete
    assert result["skipped"][0]["reason"].startswith("dati mancanti")

    again = invoice_group_activity(activity_id)
    assert again["created"] == []
    assert {"client_id": client_id, "reason": "già fatturato"} in again["skipped"]
