from __future__ import annotations

import base64
import json
import os
from datetime import date, datetime, timedelta, timezone

import requests
import streamlit as st

st.set_page_config(page_title="Clinica", layout="wide")

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")
PUBLIC_ORG_ID = int(os.getenv("PUBLIC_ORG_ID", "1"))



# JWT helpers (solo per UI, senza verifica firma)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return {}
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
        return payload if isinstance(payload, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def jwt_is_expired(token: str) -> bool:
    p = jwt_payload(token)
    try:
        exp_int = int(p.get("exp"))
    except (TypeError, ValueError):
        return False

    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (exp_int - 5)


def jwt_username(token: str) -> str:
    p = jwt_payload(token)
    return str(p.get("username") or p.get("sub") or "utente")



# HTTP client (con JWT)

class ApiError(Exception):
    """Errore leggibile restituito dal backend (campo 'detail')."""


def _headers(token: str | None) -> dict:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _check(r: requests.Response) -> dict | list:
    if r.status_code == 401:
        raise PermissionError("401 Unauthorized (token non valido/scaduto oppure backend riavviato).")
    if r.status_code >= 400:
        try:
            detail = r.json().get("detail")
        except ValueError:
            detail = None
        if detail:
            raise ApiError(detail if isinstance(detail, str) else json.dumps(detail))
        r.raise_for_status()
    return r.json()


def api_get(path: str, token: str | None = None, params: dict | None = None) -> dict | list:
    r = requests.get(f"{API_BASE}{path}", headers=_headers(token), params=params, timeout=10)
    return _check(r)


def api_post(path: str, payload: dict | None = None, token: str | None = None) -> dict:
    r = requests.post(f"{API_BASE}{path}", headers=_headers(token), json=payload or {}, timeout=10)
    return _check(r)


def api_put(path: str, payload: dict, token: str) -> dict:
    r = requests.put(f"{API_BASE}{path}", headers=_headers(token), json=payload, timeout=10)
    return _check(r)


def api_delete(path: str, token: str, params: dict | None = None) -> dict:
    r = requests.delete(f"{API_BASE}{path}", headers=_headers(token), params=params, timeout=10)
    return _check(r)


def api_upload(path: str, files: dict, data: dict, token: str) -> dict:
    r = requests.post(f"{API_BASE}{path}", headers=_headers(token), files=files, data=data, timeout=60)
    return _check(r)


def api_login(username: str, password: str) -> str:
    # OAuth2PasswordRequestForm => x-www-form-urlencoded
    r = requests.post(
        f"{API_BASE}/api/auth/login",
        data={"username": username, "password": password},
        timeout=10,
    )
    r.raise_for_status()
    return r.json()["access_token"]


def is_logged_in() -> bool:
    token = st.session_state.get("token")
    return bool(token) and isinstance(token, str) and len(token) > 0


def do_logout() -> None:
    st.session_state.pop("token", None)
    st.session_state.pop("auth_error", None)
    st.rerun()


def require_auth() -> str | None:
    token = st.session_state.get("token")
    if not token:
        st.warning("Sezione riservata. Effettua il login dalla sidebar.")
        return None

    if jwt_is_expired(token):
        st.error("Sessione scaduta. Effettua Logout dalla sidebar e rifai login.")
        return None

    return token


def show_error(e: Exception) -> None:
    if isinstance(e, PermissionError):
        st.session_state["auth_error"] = str(e)
        st.error("Sessione non valida. Premi Logout e rifai login.")
    else:
        st.error(str(e))




# Sidebar login

with st.sidebar:
    st.header("Accesso")

    token = st.session_state.get("token")

    if not is_logged_in():
        u = st.text_input("Username", key="login_user")
        p = st.text_input("Password", type="password", key="login_pass")

        if st.button("Login", key="login_btn"):
            try:
                new_token = api_login(u.strip().lower(), p)
                st.session_state["token"] = new_token
                st.session_state.pop("auth_error", None)
                st.success("Login effettuato.")
                st.rerun()
            except requests.HTTPError:
                st.error("Credenziali non valide.")
            except requests.RequestException as e:
                st.error(str(e))
    else:
        user = jwt_username(token)
        st.write(f"Utente: **{user}**")

        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])

        if st.button("Logout", key="logout_btn"):
            do_logout()

    st.divider()
    st.caption(f"API: {API_BASE}")



# UI

st.title("Clinica (API REST + JWT + Streamlit)")

tab_cal, tab_cli, tab_mh, tab_grp, tab_wait, tab_inv = st.tabs(
    ["Calendario", "Clienti", "Storia clinica", "Attività di gruppo", "Lista d'attesa", "Fatturazione"]
)


def client_label(c: dict) -> str:
    return f"{c['name']} | {c.get('phone') or '-'} | {c.get('email') or '-'}"


def pick_client(token: str, key: str) -> dict | None:
    """Ricerca cliente (telefono, nome o email) e selezione."""
    query = st.text_input("Cerca cliente (telefono, nome o email)", key=f"{key}_q")
    if not query.strip():
        return None
    res = api_get("/api/clients/search", token=token, params={"q": query})
    results = res.get("results") or []
    if not results:
        st.info("Nessun cliente trovato.")
        return None
    return st.selectbox("Cliente", options=results, format_func=client_label, key=f"{key}_sel")



# TAB 1 - Calendario

with tab_cal:
    if not is_logged_in():
        st.subheader("Prenota un appuntamento")
        try:
            services = api_get(f"/api/public/{PUBLIC_ORG_ID}/services")
        except requests.RequestException as e:
            st.error(f"API non raggiungibile o errore: {e}")
            st.stop()

        service = st.selectbox(
            "Servizio", options=services, format_func=lambda s: f"{s['name']} ({s['duration']} min)", key="pub_srv"
        )
        day = st.date_input("Data", value=date.today() + timedelta(days=1), key="pub_day")
        pros = api_get(
            f"/api/public/{PUBLIC_ORG_ID}/professionals",
            params={"service_id": service["id"], "day": day.isoformat()},
        ) if service else []
        pro = st.selectbox("Professionista", options=pros, format_func=lambda p: p["name"], key="pub_pro")

        slots = []
        if pro and service:
            slots = api_get(
                "/api/public/slots",
                params={"professional_id": pro["id"], "service_id": service["id"], "day": day.isoformat()},
            )
        if not slots:
            st.info("Nessun orario libero per la data scelta.")
        else:
            slot = st.selectbox(
                "Orario", options=slots, format_func=lambda s: f"{s['start_time']} - {s['end_time']}", key="pub_slot"
            )
            name = st.text_input("Nome e cognome", key="pub_name")
            phone = st.text_input("Telefono", key="pub_phone")
            email = st.text_input("Email (opzionale)", key="pub_email")
            if st.button("Conferma prenotazione", key="pub_submit"):
                try:
                    res = api_post(
                        "/api/public/bookings",
                        {
                            "organization_id": PUBLIC_ORG_ID,
                            "professional_id": pro["id"],
                            "service_id": service["id"],
                            "date": day.isoformat(),
                            "start_time": slot["start_time"],
                            "name": name.strip(),
                            "phone": phone.strip(),
                            "email": email.strip() or None,
                        },
                    )
                    st.success(f"{res.get('message')} (ID: {res.get('appointment_id')})")
                except (ApiError, requests.RequestException) as e:
                    st.error(str(e))
    else:
        token = require_auth()
        if token:
            day = st.date_input("Giorno", value=date.today(), key="cal_day")
            try:
                cal = api_get("/api/calendar", token=token, params={"day": day.isoformat()})
                st.caption(f"Finestra: {cal['start']} - {cal['end']}")
                cols = st.columns(max(1, len(cal["professionals"])))
                for col, pro in zip(cols, cal["professionals"]):
                    with col:
                        st.markdown(f"**{pro['name']}**")
                        if pro["on_leave"]:
                            st.warning("In ferie")
                            continue
                        for a in pro["appointments"]:
                            st.write(f"- **{a['start_time']}-{a['end_time']}** {a['client']} ({a['status']})")
                        for b in pro["breaks"]:
                            st.caption(f"Pausa: {b['start_time']}-{b['end_time']}")
                        if pro["free_slots"]:
                            st.caption(
                                "Liberi: " + ", ".join(f"{f['start_time']}-{f['end_time']}" for f in pro["free_slots"])
                            )
            except (PermissionError, ApiError, requests.RequestException) as e:
                show_error(e)

            st.divider()
            st.subheader("Nuovo appuntamento")
            try:
                services = api_get("/api/services", token=token)
                service = st.selectbox(
                    "Servizio", options=[None, *services],
                    format_func=lambda s: "-" if s is None else f"{s['name']} ({s['duration']} min)", key="app_srv",
                )
                pros = api_get(
                    "/api/professionals", token=token,
                    params={"day": day.isoformat(), **({"service_id": service["id"]} if service else {})},
                )
                pro = st.selectbox("Professionista", options=pros, format_func=lambda p: p["name"], key="app_pro")
                start = st.time_input("Ora", value=datetime.strptime("09:00", "%H:%M").time(), step=300, key="app_time")
                duration = st.number_input(
                    "Durata (min)", min_value=5, max_value=480, step=5,
                    value=int(service["duration"]) if service else 30, key="app_dur",
                )
                client = pick_client(token, "app_cli")
                new_name = new_phone = ""
                if client is None:
                    c1, c2 = st.columns(2)
                    new_name = c1.text_input("Nome nuovo cliente", key="app_new_name")
                    new_phone = c2.text_input("Telefono nuovo cliente", key="app_new_phone")
                notes = st.text_area("Note", key="app_notes")

                if st.button("Crea appuntamento", key="app_submit", disabled=not pros):
                    payload = {
                        "professional_id": pro["id"],
                        "date": day.isoformat(),
                        "start_time": start.strftime("%H:%M"),
                        "duration": int(duration),
                        "client_id": client["id"] if client else None,
                        "client_name": new_name or None,
                        "client_phone": new_phone or None,
                        "service_id": service["id"] if service else None,
                        "notes": notes or None,
                    }
                    res = api_post("/api/appointments", payload, token=token)
                    st.success(f"Appuntamento creato (ID: {res['appointment_id']})")
            except (PermissionError, ApiError, requests.RequestException) as e:
                show_error(e)



# TAB 2 - Clienti (PROTETTO)

with tab_cli:
    st.subheader("Clienti")
    token = require_auth()
    if token:
        with st.expander("Crea nuovo cliente"):
            name = st.text_input("Nome e cognome", key="cli_name")
            c1, c2 = st.columns(2)
            phone = c1.text_input("Telefono", key="cli_phone")
            email = c2.text_input("Email", key="cli_email")
            tax_id = c1.text_input("CIF/NIF", key="cli_tax")
            address = c2.text_input("Indirizzo", key="cli_addr")
            postal_code = c1.text_input("CAP", key="cli_cap")
            city = c2.text_input("Città", key="cli_city")
            if st.button("Crea cliente", key="cli_submit"):
                payload = {
                    "name": name.strip(), "phone": phone or None, "email": email or None, "tax_id": tax_id or None,
                    "address": address or None, "postal_code": postal_code or None, "city": city or None,
                }
                try:
                    res = api_post("/api/clients", payload, token=token)
                    st.success(f"Cliente creato: {res.get('client_id')}")
                except (PermissionError, ApiError, requests.RequestException) as e:
                    show_error(e)

        try:
            client = pick_client(token, "cli_search")
            if client:
                for a in api_get(f"/api/clients/{client['id']}/appointments", token=token):
                    c1, c2 = st.columns([4, 1])
                    c1.write(f"- {a['date']} {a['start_time']}-{a['end_time']} | {a['professional']} | {a['status_label']}")
                    if c2.button("Fattura", key=f"inv_app_{a['id']}"):
                        res = api_post(f"/api/appointments/{a['id']}/invoice", token=token)
                        st.success(f"{res['message']} {res['invoice_number']} ({res['total_amount']} EUR)")
        except (PermissionError, ApiError, requests.RequestException) as e:
            show_error(e)



# TAB 3 - Storia clinica (PROTETTO)

MH_SECTIONS = {
    "Motivo della consulta": ["chief_complaint", "complaint_duration"],
    "Anamnesi": ["chronic_diseases", "previous_surgeries", "drug_allergies", "usual_medication"],
    "Esame obiettivo": ["blood_pressure", "heart_rate", "weight", "height"],
    "Diagnosi e trattamento": ["diagnosis", "medication", "recommendations", "follow_up"],
}

with tab_mh:
    st.subheader("Storia clinica")
    token = require_auth()
    if token:
        try:
            client = pick_client(token, "mh_cli")
            if client:
                record = api_get(f"/api/clients/{client['id']}/medical-history", token=token)
                data = dict(record["data"])
                st.caption(f"Versione: {record['version']}" if record["exists"] else "Nuova storia clinica")

                for title, fields in MH_SECTIONS.items():
                    with st.expander(title, expanded=title == "Motivo della consulta"):
                        for field in fields:
                            data[field] = st.text_area(
                                field.replace("_", " ").capitalize(), value=data.get(field) or "",
                                key=f"mh_{client['id']}_{field}",
                            ) or None
                st.text_input("IMC", value=data.get("imc") or "", disabled=True, key=f"mh_imc_{client['id']}")

                if st.button("Salva storia clinica", key="mh_save"):
                    res = api_put(f"/api/clients/{client['id']}/medical-history", data, token=token)
                    st.success(f"Salvata (versione {res['version']}, IMC {res.get('imc') or '-'})")

                st.divider()
                st.markdown("**Seguimenti**")
                form = st.session_state.setdefault(f"fu_form_{client['id']}", {"description": "", "recommendations": ""})
                audio = st.file_uploader("Registrazione vocale", type=["webm", "wav", "mp3", "m4a"], key="fu_audio")
                if audio is not None and st.button("Trascrivi", key="fu_voice"):
                    res = api_upload(
                        "/api/follow-ups/voice",
                        files={"audio": (audio.name, audio.getvalue(), audio.type or "audio/webm")},
                        data={"client_name": client["name"]},
                        token=token,
                    )
                    form.update(description=res["description"], recommendations=res["recommendations"])
                description = st.text_area("Descrizione", value=form["description"], key="fu_desc")
                recommendations = st.text_area("Raccomandazioni", value=form["recommendations"], key="fu_rec")
                c1, c2 = st.columns(2)
                if c1.button("Migliora con AI", key="fu_ai"):
                    res = api_post(
                        "/api/follow-ups/enhance",
                        {"description": description, "recommendations": recommendations, "client_name": client["name"]},
                        token=token,
                    )
                    form.update(
                        description=res.get("description") or description,
                        recommendations=res.get("recommendations") or recommendations,
                    )
                    st.rerun()
                if c2.button("Salva seguimento", key="fu_save"):
                    api_post(
                        f"/api/clients/{client['id']}/follow-ups",
                        {"description": description, "recommendations": recommendations or None},
                        token=token,
                    )
                    st.session_state.pop(f"fu_form_{client['id']}", None)
                    st.success("Seguimento salvato.")

                for f in api_get(f"/api/clients/{client['id']}/follow-ups", token=token):
                    st.write(f"- **{f['follow_up_date']}** [{f['follow_up_type']}] {f['description']}")
        except (PermissionError, ApiError, requests.RequestException) as e:
            show_error(e)



# TAB 4 - Attività di gruppo (PROTETTO)

with tab_grp:
    st.subheader("Attività di gruppo")
    token = require_auth()
    if token:
        try:
            with st.expander("Nuova attività"):
                pros = api_get("/api/professionals", token=token)
                name = st.text_input("Nome", key="grp_name")
                c1, c2, c3 = st.columns(3)
                gday = c1.date_input("Data", value=date.today(), key="grp_day")
                gstart = c2.time_input("Inizio", value=datetime.strptime("10:00", "%H:%M").time(), key="grp_start")
                gend = c3.time_input("Fine", value=datetime.strptime("11:00", "%H:%M").time(), key="grp_end")
                gpro = st.selectbox("Professionista", options=pros, format_func=lambda p: p["name"], key="grp_pro")
                maxp = st.number_input("Posti", min_value=1, value=10, key="grp_max")
                freq = st.selectbox("Ripetizione", ["Nessuna", "DAILY", "WEEKLY", "MONTHLY"], key="grp_freq")
                end_type = st.radio("Fine serie", ["Data", "Occorrenze"], horizontal=True, key="grp_end_type")
                if end_type == "Data":
                    until = st.date_input("Fino al", value=date.today() + timedelta(days=28), key="grp_until")
                    ending = {"until": until.isoformat()}
                else:
                    count = st.number_input("Numero di occorrenze", min_value=1, value=4, key="grp_count")
                    ending = {"count": int(count)}
                if st.button("Crea attività", key="grp_submit", disabled=not pros):
                    payload = {
                        "name": name.strip(),
                        "date": gday.isoformat(),
                        "start_time": gstart.strftime("%H:%M"),
                        "end_time": gend.strftime("%H:%M"),
                        "professional_id": gpro["id"],
                        "max_participants": int(maxp),
                        "recurrence": None if freq == "Nessuna" else {"freq": freq, "interval": 1, **ending},
                    }
                    res = api_post("/api/group-activities", payload, token=token)
                    st.success(f"Create {len(res['ids'])} attività.")

            stats = api_get("/api/group-activities/stats", token=token)
            st.caption(
                f"Totale: {stats['total']} | Partecipanti: {stats['total_participants']} | "
                f"Presenze: {stats['attendance_rate']}%"
            )
            for a in api_get("/api/group-activities", token=token, params={"date_from": date.today().isoformat()}):
                with st.expander(
                    f"{a['date']} {a['start_time']}-{a['end_time']} | {a['name']} "
                    f"({a['current_participants']}/{a['max_participants']})"
                ):
                    if a.get("recurrence_description"):
                        st.caption(a["recurrence_description"])
                    detail = api_get(f"/api/group-activities/{a['id']}", token=token)
                    for p in detail.get("participants", []):
                        st.write(f"- {p['client']} ({p['status']})")
                    client = pick_client(token, f"grp_cli_{a['id']}")
                    if client and st.button("Iscrivi", key=f"grp_add_{a['id']}"):
                        api_post(f"/api/group-activities/{a['id']}/participants", {"client_id": client["id"]}, token=token)
                        st.rerun()
                    if st.button("Fattura partecipanti", key=f"grp_inv_{a['id']}"):
                        res = api_post(f"/api/group-activities/{a['id']}/invoices", token=token)
                        st.success(f"Fatture create: {len(res['created'])}, saltate: {len(res['skipped'])}")
        except (PermissionError, ApiError, requests.RequestException) as e:
            show_error(e)



# TAB 5 - Lista d'attesa (PROTETTO)

with tab_wait:
    st.subheader("Lista d'attesa")
    token = require_auth()
    if token:
        try:
            with st.expander("Aggiungi alla lista"):
                client = pick_client(token, "wl_cli")
                services = api_get("/api/services", token=token)
                service = st.selectbox("Servizio", options=services, format_func=lambda s: s["name"], key="wl_srv")
                wstart = st.date_input("Dal", value=date.today(), key="wl_from")
                pref = st.selectbox(
                    "Preferenza", ["any", "morning", "afternoon"],
                    format_func={"any": "Qualsiasi orario", "morning": "Mattina", "afternoon": "Pomeriggio"}.get,
                    key="wl_pref",
                )
                if st.button("Aggiungi", key="wl_submit", disabled=client is None):
                    api_post(
                        "/api/waiting-list",
                        {
                            "client_id": client["id"],
                            "service_id": service["id"] if service else None,
                            "preferred_date_start": wstart.isoformat(),
                            "time_preference": pref,
                        },
                        token=token,
                    )
                    st.success("Aggiunto alla lista d'attesa.")

            text = st.text_input("Filtra per nome", key="wl_text")
            pros = api_get("/api/professionals", token=token)
            for e in api_get("/api/waiting-list", token=token, params={"q": text} if text else None):
                with st.expander(
                    f"{e['client_name']} | {e['service_name']} | {e['time_preference_label']} | "
                    f"{e['days_waiting']} giorni"
                ):
                    pday = st.date_input("Data", value=date.today(), key=f"wl_day_{e['id']}")
                    ptime = st.time_input("Ora", value=datetime.strptime("09:00", "%H:%M").time(), key=f"wl_t_{e['id']}")
                    ppro = st.selectbox("Professionista", options=pros, format_func=lambda p: p["name"], key=f"wl_p_{e['id']}")
                    c1, c2 = st.columns(2)
                    if c1.button("Crea appuntamento", key=f"wl_prom_{e['id']}"):
                        res = api_post(
                            f"/api/waiting-list/{e['id']}/promote",
                            {"date": pday.isoformat(), "start_time": ptime.strftime("%H:%M"), "professional_id": ppro["id"]},
                            token=token,
                        )
                        st.success(f"Appuntamento creato (ID: {res['appointment_id']})")
                    if c2.button("Rimuovi", key=f"wl_del_{e['id']}"):
                        api_delete(f"/api/waiting-list/{e['id']}", token=token)
                        st.rerun()
        except (PermissionError, ApiError, requests.RequestException) as e:
            show_error(e)



# TAB 6 - Fatturazione (PROTETTO)

with tab_inv:
    st.subheader("Fatturazione")
    token = require_auth()
    if token:
        try:
            with st.expander("Nuova fattura"):
                client = pick_client(token, "inv_cli")
                desc = st.text_input("Descrizione", key="inv_desc")
                c1, c2, c3 = st.columns(3)
                price = c1.number_input("Prezzo", min_value=0.0, value=50.0, step=5.0, key="inv_price")
                qty = c2.number_input("Quantità", min_value=1, value=1, key="inv_qty")
                disc = c3.number_input("Sconto %", min_value=0.0, max_value=100.0, value=0.0, key="inv_disc")
                vat = c1.number_input("IVA %", min_value=0.0, value=21.0, key="inv_vat")
                irpf = c2.number_input("IRPF %", min_value=0.0, value=0.0, key="inv_irpf")
                line = {
                    "description": desc or "Servizio",
                    "unit_price": str(price),
                    "quantity": str(qty),
                    "discount_percentage": str(disc),
                    "vat_rate": str(vat),
                    "irpf_rate": str(irpf),
                }
                if client:
                    preview = api_post("/api/invoices/preview", {"client_id": client["id"], "lines": [line]}, token=token)
                    st.caption(
                        f"Base {preview['base']} | IVA {preview['vat']} | IRPF {preview['irpf']} | "
                        f"Totale {preview['total']}"
                    )
                if st.button("Emetti fattura", key="inv_submit", disabled=client is None):
                    res = api_post("/api/invoices", {"client_id": client["id"], "lines": [line]}, token=token)
                    st.success(f"{res['message']} {res['invoice_number']}")

            for inv in api_get("/api/invoices", token=token):
                pdf = f" | [PDF]({API_BASE}{inv['pdf_url']})" if inv.get("pdf_url") else ""
                st.markdown(
                    f"- **{inv['invoice_number']}** {inv['issue_date']} | {inv['client']} | "
                    f"{inv['total_amount']} EUR | {inv['status']}{pdf}"
                )
        except (PermissionError, ApiError, requests.RequestException) as e:
            show_error(e)
