import datetime as dt

import pytest
from fastapi.testclient import TestClient

from clinica.api_main import app


@pytest.fixture
def api():
    # lo startup crea le tabelle e il seed demo
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth(api):
    r = api.post("/api/auth/login", data={"username": "mrossi", "password": "demo1234"})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


def _professional_id(api, auth, name):
    return next(p["id"] for p in api.get("/api/professionals", headers=auth).json() if p["name"] == name)


def test_login_and_me(api, auth):
    me = api.get("/api/me", headers=auth).json()
    assert me["username"] == "mrossi"
    assert me["name"] == "Mario Rossi"

    bad = api.post("/api/auth/login", data={"username": "mrossi", "password": "sbagliata"})
    assert bad.status_code == 401


def test_protected_routes_need_a_token(api):
    assert api.get("/api/clients").status_code == 401
    assert api.get("/api/clients", headers={"Authorization": "Bearer nonvalido"}).status_code == 401


def test_public_slots(api, auth):
    org_id = api.get("/api/me", headers=auth).json()["organization_id"]
    services = api.get(f"/api/public/{org_id}/services").json()
    controllo = next(x for x in services if x["name"] == "Controllo")
    rossi = _professional_id(api, auth, "Mario Rossi")

    r = api.get("/api/public/slots", params={"professional_id": rossi, "service_id": controllo["id"], "day": "2026-03-02"})

    assert r.status_code == 200
    assert r.json()[0]["start_time"] == "09:00"


def test_create_client_then_appointment(api, auth):
    r = api.post("/api/clients", headers=auth, json={"name": "Paolo Gialli", "phone": "633222111"})
    assert r.status_code == 200
    client_id = r.json()["client_id"]

    bianchi = _professional_id(api, auth, "Laura Bianchi")
    r = api.post(
        "/api/appointments",
        headers=auth,
        json={"professional_id": bianchi, "date": "2026-03-02", "start_time": "11:00", "duration": 45, "client_id": client_id},
    )
    assert r.status_code == 200, r.text
    appointment_id = r.json()["appointment_id"]

    a = api.get(f"/api/appointments/{appointment_id}", headers=auth).json()
    assert a["client"] == "Paolo Gialli"
    assert a["end_time"] == "11:45"
    assert [x["id"] for x in api.get(f"/api/clients/{client_id}/appointments", headers=auth).json()] == [appointment_id]


def test_validation_errors_carry_the_field(api, auth):
    bianchi = _professional_id(api, auth, "Laura Bianchi")
    r = api.post(
        "/api/appointments",
        headers=auth,
        json={"professional_id": bianchi, "date": "2026-03-02", "start_time": "11:00", "client_name": "Mario", "client_phone": "12"},
    )
    assert r.status_code == 422
    assert r.json()["field"] == "client_phone"


def test_unknown_rows_are_404(api, auth):
    r = api.get("/api/appointments/9999", headers=auth)
    assert r.status_code == 404
    assert r.json()["detail"] == "Appuntamento non trovato."


def test_client_search_returns_prefill_when_empty(api, auth):
    found = api.get("/api/clients/search", headers=auth, params={"q": "612"}).json()
    assert found["results"][0]["name"] == "Giulia Verdi"
    assert found["prefill"] is None

    missing = api.get("/api/clients/search", headers=auth, params={"q": "Nessuno Qui"}).json()
    assert missing["results"] == []
    assert missing["prefill"] == {"phone": "", "first_name": "Nessuno", "last_name": "Qui"}


def test_invoice_preview(api, auth):
    r = api.post(
        "/api/invoices/preview",
        headers=auth,
        json={
            "client_id": 1,
            "lines": [{"description": "Seduta", "unit_price": "100", "discount_percentage": "10", "irpf_rate": "15"}],
        },
    )
    assert r.status_code == 200
    assert r.json()["total"] == "95.40"
    assert r.json()["vat"] == "18.90"


def test_medical_history_round_trip(api, auth):
    client_id = api.get("/api/clients/search", headers=auth, params={"q": "Giulia"}).json()["results"][0]["id"]
    url = f"/api/clients/{client_id}/medical-history"

    assert api.get(url, headers=auth).json()["exists"] is False

    r = api.put(url, headers=auth, json={"chief_complaint": "Cervicalgia", "weight": "70", "height": "170"})
    assert r.json() == {"ok": True, "version": 1, "imc": "24.2"}
    assert api.get(url, headers=auth).json()["data"]["chief_complaint"] == "Cervicalgia"


def test_group_series_by_occurrence_count(api, auth):
    rossi = _professional_id(api, auth, "Mario Rossi")
    start = dt.date.today() + dt.timedelta(days=1)
    r = api.post(
        "/api/group-activities",
        headers=auth,
        json={
            "name": "Ginnastica posturale",
            "date": start.isoformat(),
            "start_time": "18:00",
            "end_time": "19:00",
            "professional_id": rossi,
            "recurrence": {"freq": "weekly", "count": 3},
        },
    )
    assert r.status_code == 200, r.text
    assert len(r.json()["ids"]) == 3

    r = api.post(
        "/api/group-activities",
        headers=auth,
        json={
            "name": "Ginnastica posturale",
            "date": start.isoformat(),
            "start_time": "18:00",
            "end_time": "19:00",
            "professional_id": rossi,
            "recurrence": {"freq": "WEEKLY"},
        },
    )
    assert r.status_code == 422
    assert r.json()["field"] == "recurrence"
