from __future__ import annotations

import logging
import datetime as dt
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from clinica import ai_client, appointments, availability, billing, catalog, follow_ups, group_activities
from clinica import medical_history, search, waiting_list
from clinica.auth_security import create_access_token, get_subject
from clinica.auth_service import authenticate, create_user, get_user_by_id
from clinica.config import STORAGE_BASE_URL, STORAGE_DIR, configure_logging
from clinica.db import init_db
from clinica.errors import ExternalServiceError, NotFoundError, ValidationError
from clinica.models import User
from clinica.seed import seed_base

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

app = FastAPI(title="Clinica API", version="1.0.0")

# PDF delle fatture (vedi storage.py)
app.mount(STORAGE_BASE_URL, StaticFiles(directory=STORAGE_DIR, check_dir=False), name="storage")



# Startup

@app.on_event("startup")
def startup() -> None:
    # Crea tabelle e seed base (idempotente)
    configure_logging()
    init_db()
    seed_base()



# Errori applicativi -> HTTP

@app.exception_handler(ValidationError)
def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": exc.message, "field": exc.field})


@app.exception_handler(NotFoundError)
def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(ExternalServiceError)
def _external_error(request: Request, exc: ExternalServiceError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"detail": exc.message, "service": exc.service})


@app.exception_handler(SQLAlchemyError)
def _db_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Errore database su %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Errore del database, riprova più tardi."})



# Schemi Auth

class RegisterIn(BaseModel):
    organization_id: int
    name: str
    username: str
    password: str
    email: str | None = None
    user_type: int = 1
    color: str | None = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeOut(BaseModel):
    id: str
    username: str | None
    name: str
    organization_id: int
    is_active: bool



# Schemi Domain

class ClientIn(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str | None = None
    email: str | None = None
    tax_id: str | None = None
    address: str | None = None
    postal_code: str | None = None
    city: str | None = None
    province: str | None = None


class ClientUpdateIn(BaseModel):
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    tax_id: str | None = None
    address: str | None = None
    postal_code: str | None = None
    city: str | None = None
    province: str | None = None


class AppointmentIn(BaseModel):
    professional_id: str
    date: dt.date
    start_time: str
    duration: int = 30
    client_id: int | None = None
    client_name: str | None = None
    client_phone: str | None = None
    client_email: str | None = None
    service_id: int | None = None
    consultation_id: int | None = None
    status: str = "confirmed"
    notes: str | None = None


class PublicBookingIn(BaseModel):
    # prenotazione "pubblica" (crea il cliente al volo)
    organization_id: int
    professional_id: str
    service_id: int
    date: dt.date
    start_time: str
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str | None = None
    notes: str | None = None


class AppointmentUpdateIn(BaseModel):
    professional_id: str | None = None
    consultation_id: int | None = None
    service_id: int | None = None
    date: dt.date | None = None
    start_time: str | None = None
    duration: int | None = None
    status: str | None = None
    notes: str | None = None
    diagnosis: str | None = None


class FollowUpIn(BaseModel):
    description: str
    follow_up_date: dt.date | None = None
    follow_up_type: str = "SEGUIMIENTO"
    recommendations: str | None = None
    next_appointment_note: str | None = None


class EnhanceIn(BaseModel):
    description: str
    recommendations: str = ""
    follow_up_type: str = "CONSULTA"
    client_name: str = ""


class RecurrenceIn(BaseModel):
    freq: str
    interval: int = 1
    until: dt.date | None = None
    count: int | None = None


class GroupActivityIn(BaseModel):
    name: str
    date: dt.date
    start_time: str
    end_time: str
    professional_id: str
    max_participants: int = 10
    description: str | None = None
    consultation_id: int | None = None
    service_id: int | None = None
    color: str = "#3B82F6"
    recurrence: RecurrenceIn | None = None


class GroupActivityUpdateIn(BaseModel):
    name: str | None = None
    description: str | None = None
    date: dt.date | None = None
    start_time: str | None = None
    end_time: str | None = None
    professional_id: str | None = None
    consultation_id: int | None = None
    service_id: int | None = None
    max_participants: int | None = None
    status: str | None = None
    color: str | None = None


class ParticipantIn(BaseModel):
    client_id: int
    notes: str | None = None


class StatusIn(BaseModel):
    status: str


class WaitingListIn(BaseModel):
    client_id: int
    preferred_date_start: dt.date
    preferred_date_end: dt.date | None = None
    professional_id: str | None = None
    service_id: int | None = None
    time_preference: str = "any"
    notes: str | None = None


class PromoteIn(BaseModel):
    date: dt.date
    start_time: str
    professional_id: str | None = None
    consultation_id: int | None = None
    duration: int | None = None


class InvoiceLineIn(BaseModel):
    description: str
    unit_price: Decimal
    quantity: Decimal = Decimal("1")
    discount_percentage: Decimal = Decimal("0")
    vat_rate: Decimal = Decimal("21")
    irpf_rate: Decimal = Decimal("0")
    retention_rate: Decimal = Decimal("0")
    professional_id: str | None = None


class InvoiceIn(BaseModel):
    client_id: int
    lines: list[InvoiceLineIn]
    issue_date: dt.date | None = None
    invoice_type: str | None = None
    notes: str | None = None



# Dipendenze auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    # protezione extra: elimina spazi / virgolette accidentali
    token = token.strip().strip('"').strip("'")

    user_id = get_subject(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token non valido")

    u = get_user_by_id(user_id)
    if not u or not u.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Utente non valido")
    return u


def _invoice_out(result: billing.InvoiceResult) -> dict[str, Any]:
    return {
        "ok": True,
        "invoice_id": result.invoice_id,
        "invoice_number": result.invoice_number,
        "total_amount": str(result.total_amount),
        "pdf_url": result.pdf_url,
        "message": result.message,
    }



# AUTH endpoints

@app.post("/api/auth/register", response_model=dict)
def register(payload: RegisterIn) -> dict[str, Any]:
    user_id = create_user(
        payload.organization_id,
        payload.name,
        payload.username,
        payload.password,
        email=payload.email,
        user_type=payload.user_type,
        color=payload.color,
    )
    return {"ok": True, "user_id": user_id}


@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    u = authenticate(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credenziali non valide")

    token = create_access_token(subject=u.id, extra={"username": u.username, "org": u.organization_id})
    return TokenOut(access_token=token)


@app.get("/api/me", response_model=MeOut)
def me(user: User = Depends(get_current_user)) -> MeOut:
    return MeOut(
        id=user.id,
        username=user.username,
        name=user.name,
        organization_id=user.organization_id,
        is_active=user.is_active,
    )



# PUBLIC endpoints (no JWT)

@app.get("/api/public/{organization_id}/services")
def api_public_services(organization_id: int, professional_id: str | None = None) -> list[dict]:
    return appointments.services_for_professional(organization_id, professional_id)


@app.get("/api/public/{organization_id}/professionals")
def api_public_professionals(
    organization_id: int,
    service_id: int | None = None,
    day: dt.date | None = None,
) -> list[dict]:
    return appointments.professionals_for_service(organization_id, service_id, day)


@app.get("/api/public/slots")
def api_public_slots(
    professional_id: str = Query(...),
    service_id: int = Query(...),
    day: dt.date = Query(...),
) -> list[dict]:
    return availability.available_slots(professional_id, service_id, day)


@app.post("/api/public/bookings")
def public_booking(payload: PublicBookingIn) -> dict[str, Any]:
    """
    Prenotazione senza login:
    - valida servizio/professionista/orario
    - crea (o riusa per telefono) il cliente
    - crea l'appuntamento in stato "pending"
    """
    services = {x["id"]: x for x in appointments.services_for_professional(payload.organization_id)}
    service = services.get(payload.service_id)
    if service is None:
        raise NotFoundError("Servizio non trovato.")

    form = appointments.AppointmentForm(
        organization_id=payload.organization_id,
        professional_id=payload.professional_id,
        date=payload.date,
        start_time=payload.start_time,
        duration=service["duration"],
        client_name=payload.name,
        client_phone=payload.phone,
        client_email=payload.email,
        service_id=payload.service_id,
        status="pending",
        notes=payload.notes,
    )
    appointment_id = appointments.book_appointment(form)
    return {"ok": True, "appointment_id": appointment_id, "message": "Prenotazione registrata."}



# PROTECTED endpoints (JWT)

# --- catalogo

@app.get("/api/organization")
def api_organization(user: User = Depends(get_current_user)) -> dict:
    return catalog.get_organization_flat(user.organization_id)


@app.get("/api/professionals")
def api_professionals(
    service_id: int | None = None,
    day: dt.date | None = None,
    user: User = Depends(get_current_user),
) -> list[dict]:
    return appointments.professionals_for_service(user.organization_id, service_id, day)


@app.get("/api/services")
def api_services(professional_id: str | None = None, user: User = Depends(get_current_user)) -> list[dict]:
    return appointments.services_for_professional(user.organization_id, professional_id)


@app.get("/api/consultations")
def api_consultations(
    day: dt.date | None = None,
    start: str | None = None,
    end: str | None = None,
    exclude_appointment_id: int | None = None,
    user: User = Depends(get_current_user),
) -> list[dict]:
    if day and start and end:
        return appointments.available_consultations(user.organization_id, day, start, end, exclude_appointment_id)
    return catalog.list_consultations_flat(user.organization_id)


# --- clienti

@app.get("/api/clients")
def api_clients(user: User = Depends(get_current_user)) -> list[dict]:
    return catalog.list_clients_flat(user.organization_id)


@app.post("/api/clients")
def api_create_client(payload: ClientIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    data = payload.model_dump(exclude={"name"}, exclude_none=True)
    client_id = catalog.create_client(user.organization_id, payload.name, **data)
    return {"ok": True, "client_id": client_id}


@app.get("/api/clients/search")
def api_search_clients(
    q: str = Query(""),
    exclude: list[int] | None = Query(None),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    matches = search.search_clients(user.organization_id, q, exclude_ids=exclude or ())
    return {
        "results": [m.__dict__ for m in matches],
        "prefill": search.prefill_from_query(q) if not matches else None,
    }


@app.get("/api/clients/{client_id}")
def api_client(client_id: int, user: User = Depends(get_current_user)) -> dict:
    return catalog.get_client_flat(client_id)


@app.patch("/api/clients/{client_id}")
def api_update_client(client_id: int, payload: ClientUpdateIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    catalog.update_client(client_id, **payload.model_dump(exclude_unset=True))
    return {"ok": True}


@app.get("/api/clients/{client_id}/appointments")
def api_client_appointments(client_id: int, user: User = Depends(get_current_user)) -> list[dict]:
    return appointments.client_appointments(client_id)


# --- storia clinica e seguimenti

@app.get("/api/clients/{client_id}/medical-history")
def api_get_medical_history(client_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    record = medical_history.get_medical_history(client_id)
    if record is None:
        return {"exists": False, "version": 0, "data": medical_history.MedicalHistoryData().model_dump()}
    return {"exists": True, "version": record["version"], "data": record["data"].model_dump()}


@app.put("/api/clients/{client_id}/medical-history")
def api_save_medical_history(
    client_id: int,
    payload: medical_history.MedicalHistoryData,
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    version = medical_history.save_medical_history(client_id, payload, professional_id=user.id)
    return {"ok": True, "version": version, "imc": medical_history.sync_bmi(payload).imc}


@app.get("/api/clients/{client_id}/follow-ups")
def api_follow_ups(client_id: int, user: User = Depends(get_current_user)) -> list[dict]:
    return follow_ups.list_follow_ups(client_id)


@app.post("/api/clients/{client_id}/follow-ups")
def api_create_follow_up(client_id: int, payload: FollowUpIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    follow_up_id = follow_ups.create_follow_up(client_id, professional_id=user.id, **payload.model_dump())
    return {"ok": True, "follow_up_id": follow_up_id}


@app.delete("/api/follow-ups/{follow_up_id}")
def api_delete_follow_up(follow_up_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    follow_ups.delete_follow_up(follow_up_id)
    return {"ok": True}


@app.post("/api/follow-ups/voice")
async def api_voice_follow_up(
    audio: UploadFile = File(...),
    client_name: str = Form(""),
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    content = await audio.read()
    return ai_client.transcribe_voice_follow_up(content, audio.filename or "recording.webm", client_name)


@app.post("/api/follow-ups/enhance")
def api_enhance_follow_up(payload: EnhanceIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return ai_client.enhance_follow_up(
        payload.description, payload.recommendations, payload.follow_up_type, payload.client_name
    )


# --- calendario e appuntamenti

@app.get("/api/calendar")
def api_calendar(
    day: dt.date = Query(...),
    professional_id: list[str] | None = Query(None),
    interval: int = 30,
    user: User = Depends(get_current_user),
) -> dict:
    return availability.calendar_day(user.organization_id, day, professional_id or None, interval)


@app.get("/api/slots")
def api_slots(
    professional_id: str = Query(...),
    service_id: int = Query(...),
    day: dt.date = Query(...),
    user: User = Depends(get_current_user),
) -> list[dict]:
    return availability.available_slots(professional_id, service_id, day)


@app.get("/api/agenda")
def api_agenda(
    professional_id: str = Query(...),
    day: dt.date = Query(...),
    user: User = Depends(get_current_user),
) -> list[dict]:
    return appointments.day_agenda(professional_id, day)


@app.post("/api/appointments")
def api_create_appointment(payload: AppointmentIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    form = appointments.AppointmentForm(organization_id=user.organization_id, **payload.model_dump())
    appointment_id = appointments.book_appointment(form)
    return {"ok": True, "appointment_id": appointment_id}


@app.get("/api/appointments/{appointment_id}")
def api_appointment(appointment_id: int, user: User = Depends(get_current_user)) -> dict:
    return appointments.get_appointment(appointment_id)


@app.patch("/api/appointments/{appointment_id}")
def api_update_appointment(
    appointment_id: int,
    payload: AppointmentUpdateIn,
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    appointments.update_appointment(appointment_id, **payload.model_dump(exclude_unset=True))
    return {"ok": True}


@app.delete("/api/appointments/{appointment_id}")
def api_delete_appointment(appointment_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    appointments.delete_appointment(appointment_id)
    return {"ok": True}


@app.post("/api/appointments/{appointment_id}/invoice")
def api_invoice_appointment(appointment_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return _invoice_out(billing.create_invoice_for_appointment(appointment_id, created_by=user.id))


# --- attività di gruppo

@app.get("/api/group-activities")
def api_group_activities(
    status_filter: str | None = Query(None, alias="status"),
    professional_id: str | None = None,
    date_from: dt.date | None = None,
    date_to: dt.date | None = None,
    user: User = Depends(get_current_user),
) -> list[dict]:
    return group_activities.list_group_activities(
        user.organization_id,
        status=status_filter,
        professional_id=professional_id,
        date_from=date_from,
        date_to=date_to,
    )


@app.post("/api/group-activities")
def api_create_group_activity(payload: GroupActivityIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    data = payload.model_dump(exclude={"recurrence"})
    rule = None
    if payload.recurrence is not None:
        rule = group_activities.RecurrenceRule(
            freq=payload.recurrence.freq.upper(),
            interval=payload.recurrence.interval,
            until=payload.recurrence.until,
            count=payload.recurrence.count,
        )
    ids = group_activities.create_group_activity(user.organization_id, recurrence=rule, **data)
    return {"ok": True, "ids": ids}


@app.get("/api/group-activities/stats")
def api_group_stats(
    date_from: dt.date | None = None,
    date_to: dt.date | None = None,
    user: User = Depends(get_current_user),
) -> dict:
    return group_activities.activity_stats(user.organization_id, date_from, date_to)


@app.get("/api/group-activities/{activity_id}")
def api_group_activity(activity_id: str, user: User = Depends(get_current_user)) -> dict:
    return group_activities.get_group_activity(activity_id)


@app.patch("/api/group-activities/{activity_id}")
def api_update_group_activity(
    activity_id: str,
    payload: GroupActivityUpdateIn,
    series: bool = False,
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    if series:
        activity = group_activities.get_group_activity(activity_id)
        if activity["series_id"]:
            updated = group_activities.update_series(activity["series_id"], **changes)
            return {"ok": True, "updated": updated}
    group_activities.update_group_activity(activity_id, **changes)
    return {"ok": True, "updated": 1}


@app.delete("/api/group-activities/{activity_id}")
def api_delete_group_activity(
    activity_id: str,
    series: bool = False,
    user: User = Depends(get_current_user),
) -> dict[str, Any]:
    if series:
        activity = group_activities.get_group_activity(activity_id)
        if activity["series_id"]:
            return {"ok": True, "deleted": group_activities.delete_series(activity["series_id"])}
    group_activities.delete_group_activity(activity_id)
    return {"ok": True, "deleted": 1}


@app.post("/api/group-activities/{activity_id}/participants")
def api_add_participant(activity_id: str, payload: ParticipantIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    participant_id = group_activities.add_participant(activity_id, payload.client_id, payload.notes)
    return {"ok": True, "participant_id": participant_id}


@app.patch("/api/participants/{participant_id}")
def api_participant_status(participant_id: int, payload: StatusIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    group_activities.update_participant_status(participant_id, payload.status)
    return {"ok": True}


@app.delete("/api/participants/{participant_id}")
def api_remove_participant(participant_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    group_activities.remove_participant(participant_id)
    return {"ok": True}


@app.post("/api/group-activities/{activity_id}/invoices")
def api_invoice_group_activity(activity_id: str, user: User = Depends(get_current_user)) -> dict[str, Any]:
    result = billing.invoice_group_activity(activity_id, created_by=user.id)
    return {
        "created": [_invoice_out(r) for r in result["created"]],
        "skipped": result["skipped"],
    }


# --- lista d'attesa

@app.get("/api/waiting-list")
def api_waiting_list(
    professional_id: str | None = None,
    service_id: int | None = None,
    time_preference: str | None = None,
    q: str | None = None,
    user: User = Depends(get_current_user),
) -> list[dict]:
    return waiting_list.list_waiting_list(
        user.organization_id,
        professional_id=professional_id,
        service_id=service_id,
        time_preference=time_preference,
        text=q,
    )


@app.post("/api/waiting-list")
def api_add_waiting(payload: WaitingListIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    entry_id = waiting_list.add_to_waiting_list(user.organization_id, **payload.model_dump())
    return {"ok": True, "entry_id": entry_id}


@app.delete("/api/waiting-list/{entry_id}")
def api_remove_waiting(entry_id: int, user: User = Depends(get_current_user)) -> dict[str, Any]:
    waiting_list.remove_from_waiting_list(entry_id, user.organization_id)
    return {"ok": True}


@app.post("/api/waiting-list/{entry_id}/promote")
def api_promote_waiting(entry_id: int, payload: PromoteIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    appointment_id = waiting_list.promote_to_appointment(
        entry_id,
        day=payload.date,
        start_time=payload.start_time,
        professional_id=payload.professional_id,
        consultation_id=payload.consultation_id,
        duration=payload.duration,
    )
    return {"ok": True, "appointment_id": appointment_id}


# --- fatturazione

@app.get("/api/invoices")
def api_invoices(client_id: int | None = None, user: User = Depends(get_current_user)) -> list[dict]:
    return billing.list_invoices(user.organization_id, client_id)


@app.post("/api/invoices")
def api_create_invoice(payload: InvoiceIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    lines = [billing.LineInput(**line.model_dump()) for line in payload.lines]
    result = billing.create_invoice(
        user.organization_id,
        payload.client_id,
        lines,
        issue_date=payload.issue_date,
        invoice_type=payload.invoice_type,
        notes=payload.notes,
        created_by=user.id,
    )
    return _invoice_out(result)


@app.post("/api/invoices/preview")
def api_preview_invoice(payload: InvoiceIn, user: User = Depends(get_current_user)) -> dict[str, str]:
    totals = billing.compute_totals([line.model_dump() for line in payload.lines]).rounded()
    return {k: str(v) for k, v in totals.__dict__.items()}


@app.patch("/api/invoices/{invoice_id}")
def api_invoice_status(invoice_id: int, payload: StatusIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    billing.set_invoice_status(invoice_id, payload.status)
    return {"ok": True}
