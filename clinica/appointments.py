"""
Appuntamenti.

Contiene la logica del form appuntamento (telefono, sincronizzazione
ora/durata, filtri di compatibilità servizio/professionista/sala,
validazione) e il CRUD. Gli stati sono liberi: qualsiasi stato può essere
impostato in modifica (nessun controllo di concorrenza, vince l'ultima
scrittura).
"""
from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import selectinload

from clinica.availability import can_schedule, check_specific_availability, professional_on_leave
from clinica.db import db_session
from clinica.errors import NotFoundError, ValidationError
from clinica.models import (
    Appointment,
    AppointmentStatus,
    Client,
    Consultation,
    GroupActivity,
    GroupActivityStatus,
    Service,
    User,
    UserService,
)
from clinica.timegrid import end_time, normalize_time, time_to_minutes

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    AppointmentStatus.CONFIRMED: "Confermato",
    AppointmentStatus.PENDING: "In attesa",
    AppointmentStatus.CANCELLED: "Annullato",
    AppointmentStatus.COMPLETED: "Completato",
    AppointmentStatus.NO_SHOW: "Non presentato",
}

EDITABLE_FIELDS = {
    "client_id", "professional_id", "consultation_id", "service_id", "date",
    "start_time", "duration", "status", "notes", "diagnosis",
}


# =========================
# Telefono
# =========================
_PHONE_CHARS = re.compile(r"[^\d+]")


def normalize_phone(phone: str | None) -> str:
    """
    Toglie spazi/trattini/parentesi e il prefisso spagnolo (+34, 0034, 34 su
    numeri lunghi), poi gli zeri iniziali. Gli altri prefissi internazionali
    restano con il "+".
    """
    if not phone:
        return ""
    value = _PHONE_CHARS.sub("", phone)
    if value.startswith("+34"):
        value = value[3:]
    elif value.startswith("0034"):
        value = value[4:]
    elif value.startswith("34") and len(value) > 11:
        value = value[2:]
    return value.lstrip("0")


def is_valid_phone(phone: str | None) -> bool:
    value = normalize_phone(phone)
    digits = value[1:] if value.startswith("+") else value
    return digits.isdigit() and 9 <= len(digits) <= 15


def format_phone(phone: str | None) -> str:
    """"612 345 678" per i numeri nazionali da 9 cifre, altrimenti invariato."""
    value = normalize_phone(phone)
    if len(value) == 9 and value.isdigit():
        return f"{value[:3]} {value[3:6]} {value[6:]}"
    return phone or ""


def phones_equal(a: str | None, b: str | None) -> bool:
    na, nb = normalize_phone(a), normalize_phone(b)
    return na == nb and len(na) >= 9


# =========================
# Ora / durata
# =========================
def sync_end_time(start: str, duration: int) -> str:
    """Nuova ora di fine quando cambiano inizio o durata."""
    if duration <= 0:
        raise ValidationError("La durata deve essere positiva.", field="duration")
    try:
        return end_time(start, duration)
    except ValueError as exc:
        raise ValidationError(str(exc), field="start_time") from None


def sync_duration(start: str, end: str) -> int:
    """Nuova durata quando l'utente modifica l'ora di fine."""
    try:
        minutes = time_to_minutes(end) - time_to_minutes(start)
    except ValueError as exc:
        raise ValidationError(str(exc), field="end_time") from None
    if minutes <= 0:
        raise ValidationError("L'ora di fine deve essere successiva all'inizio.", field="end_time")
    return minutes


def status_label(status: str | AppointmentStatus) -> str:
    st = status if isinstance(status, AppointmentStatus) else AppointmentStatus(status)
    return STATUS_LABELS[st]


# =========================
# Compatibilità
# =========================
def professionals_for_service(
    organization_id: int,
    service_id: int | None = None,
    day: dt.date | None = None,
) -> list[dict]:
    """
    Professionisti attivi; con un servizio solo quelli abilitati (se il
    servizio non ha abilitazioni li propone tutti); con una data esclude chi è
    in ferie.
    """
    with db_session() as s:
        q = (
            select(User)
            .where(and_(User.organization_id == organization_id, User.type == 1, User.is_active.is_(True)))
            .order_by(User.name)
        )
        users = list(s.scalars(q))

        if service_id:
            enabled = set(s.scalars(select(UserService.user_id).where(UserService.service_id == service_id)))
            if enabled:
                users = [u for u in users if u.id in enabled]

    if day is not None:
        users = [u for u in users if not professional_on_leave(u.id, day)]
    return [{"id": u.id, "name": u.name, "color": u.color} for u in users]


def services_for_professional(organization_id: int, user_id: str | None = None) -> list[dict]:
    """Servizi attivi; con un professionista solo quelli assegnati (tutti se nessuno)."""
    with db_session() as s:
        q = (
            select(Service)
            .where(and_(Service.organization_id == organization_id, Service.active.is_(True)))
            .order_by(Service.name)
        )
        services = list(s.scalars(q))
        if user_id:
            assigned = set(s.scalars(select(UserService.service_id).where(UserService.user_id == user_id)))
            if assigned:
                services = [x for x in services if x.id in assigned]

        return [
            {
                "id": x.id,
                "name": x.name,
                "duration": x.duration,
                "price": str(x.price),
                "color": x.color,
                "category": x.category,
            }
            for x in services
        ]


def is_compatible(professional_id: str, service_id: int) -> bool:
    with db_session() as s:
        links = set(s.scalars(select(UserService.user_id).where(UserService.service_id == service_id)))
    return not links or professional_id in links


def available_consultations(
    organization_id: int,
    day: dt.date,
    start: str,
    end: str,
    exclude_appointment_id: int | None = None,
) -> list[dict]:
    """Sale attive non occupate nell'intervallo da appuntamenti o attività di gruppo."""
    wanted_start, wanted_end = time_to_minutes(start), time_to_minutes(end)

    def overlaps(a_start: str, a_end: str) -> bool:
        return time_to_minutes(a_start) < wanted_end and time_to_minutes(a_end) > wanted_start

    with db_session() as s:
        rooms = list(
            s.scalars(
                select(Consultation)
                .where(and_(Consultation.organization_id == organization_id, Consultation.is_active.is_(True)))
                .order_by(Consultation.name)
            )
        )

        conditions = [
            Appointment.organization_id == organization_id,
            Appointment.date == day,
            Appointment.consultation_id.is_not(None),
            Appointment.status != AppointmentStatus.CANCELLED,
        ]
        if exclude_appointment_id is not None:
            conditions.append(Appointment.id != exclude_appointment_id)
        busy = {
            r.consultation_id
            for r in s.execute(
                select(Appointment.consultation_id, Appointment.start_time, Appointment.end_time).where(and_(*conditions))
            )
            if overlaps(r.start_time, r.end_time)
        }
        busy |= {
            r.consultation_id
            for r in s.execute(
                select(GroupActivity.consultation_id, GroupActivity.start_time, GroupActivity.end_time).where(
                    and_(
                        GroupActivity.organization_id == organization_id,
                        GroupActivity.date == day,
                        GroupActivity.consultation_id.is_not(None),
                        GroupActivity.status != GroupActivityStatus.CANCELLED,
                    )
                )
            )
            if overlaps(r.start_time, r.end_time)
        }

    return [{"id": c.id, "name": c.name} for c in rooms if c.id not in busy]


# =========================
# Validazione form
# =========================
@dataclass(frozen=True)
class AppointmentForm:
    organization_id: int
    professional_id: str
    date: dt.date
    start_time: str
    duration: int
    client_id: int | None = None
    client_name: str | None = None
    client_phone: str | None = None
    client_email: str | None = None
    service_id: int | None = None
    consultation_id: int | None = None
    status: str = AppointmentStatus.CONFIRMED.value
    notes: str | None = None


def validate_appointment_form(form: AppointmentForm, exclude_appointment_id: int | None = None) -> None:
    """Solleva ValidationError sul primo campo non valido."""
    if form.client_id is None:
        if not (form.client_phone or "").strip():
            raise ValidationError("Il telefono è obbligatorio.", field="client_phone")
        if not is_valid_phone(form.client_phone):
            raise ValidationError("Formato del telefono non valido.", field="client_phone")
        if not (form.client_name or "").strip():
            raise ValidationError("Il nome è obbligatorio.", field="client_name")

    if not form.professional_id:
        raise ValidationError("Seleziona un professionista.", field="professional_id")
    if form.duration <= 0:
        raise ValidationError("La durata deve essere positiva.", field="duration")
    try:
        AppointmentStatus(form.status)
    except ValueError:
        raise ValidationError(f"Stato non valido: {form.status}", field="status") from None
    end = sync_end_time(form.start_time, form.duration)

    if form.service_id and not is_compatible(form.professional_id, form.service_id):
        raise ValidationError("Il professionista non offre questo servizio.", field="service_id")

    if not can_schedule(form.professional_id, form.date, form.start_time):
        raise ValidationError(
            "Il professionista non è disponibile a quest'ora (fuori orario, pausa o ferie).",
            field="start_time",
        )
    if not check_specific_availability(
        form.professional_id, form.date, form.start_time, form.duration, exclude_appointment_id
    ):
        raise ValidationError("L'orario si sovrappone a un altro appuntamento o a una pausa.", field="start_time")

    if form.consultation_id:
        free = available_consultations(
            form.organization_id, form.date, form.start_time, end, exclude_appointment_id
        )
        if form.consultation_id not in {c["id"] for c in free}:
            raise ValidationError("La sala è già occupata in questo orario.", field="consultation_id")


# =========================
# CRUD
# =========================
def find_or_create_client(
    organization_id: int,
    name: str,
    phone: str,
    email: str | None = None,
) -> int:
    """Riusa il cliente con lo stesso telefono (normalizzato), altrimenti lo crea."""
    normalized = normalize_phone(phone)
    with db_session() as s:
        candidates = s.scalars(
            select(Client).where(and_(Client.organization_id == organization_id, Client.phone.is_not(None)))
        )
        for c in candidates:
            if phones_equal(c.phone, normalized):
                return c.id

        c = Client(organization_id=organization_id, name=name.strip(), phone=normalized, email=email)
        s.add(c)
        s.flush()
        logger.info("Nuovo cliente %s creato dall'agenda", c.id)
        return c.id


def create_appointment(
    organization_id: int,
    client_id: int,
    professional_id: str,
    day: dt.date,
    start_time: str,
    duration: int,
    service_id: int | None = None,
    consultation_id: int | None = None,
    status: str | AppointmentStatus = AppointmentStatus.CONFIRMED,
    notes: str | None = None,
    check_availability: bool = True,
) -> int:
    end = sync_end_time(start_time, duration)
    if check_availability and not check_specific_availability(professional_id, day, start_time, duration):
        raise ValidationError("Orario non disponibile per il professionista.", field="start_time")

    with db_session() as s:
        if s.get(Client, client_id) is None:
            raise NotFoundError("Cliente non trovato.")
        if s.get(User, professional_id) is None:
            raise NotFoundError("Professionista non trovato.")

        a = Appointment(
            organization_id=organization_id,
            client_id=client_id,
            professional_id=professional_id,
            consultation_id=consultation_id,
            service_id=service_id,
            date=day,
            start_time=normalize_time(start_time),
            end_time=end,
            duration=duration,
            status=status if isinstance(status, AppointmentStatus) else AppointmentStatus(status),
            notes=notes,
        )
        s.add(a)
        s.flush()
        return a.id


def book_appointment(form: AppointmentForm) -> int:
    """
    Flusso completo del form: valida, crea il cliente se serve, poi
    l'appuntamento (due passi separati: se il secondo fallisce il cliente resta).
    """
    validate_appointment_form(form)
    client_id = form.client_id
    if client_id is None:
        client_id = find_or_create_client(
            form.organization_id, form.client_name or "", form.client_phone or "", form.client_email
        )
    return create_appointment(
        organization_id=form.organization_id,
        client_id=client_id,
        professional_id=form.professional_id,
        day=form.date,
        start_time=form.start_time,
        duration=form.duration,
        service_id=form.service_id,
        consultation_id=form.consultation_id,
        status=form.status,
        notes=form.notes,
        check_availability=False,
    )


def update_appointment(appointment_id: int, **changes: Any) -> None:
    """Modifica libera (anche dello stato); ricalcola l'ora di fine."""
    with db_session() as s:
        a = s.get(Appointment, appointment_id)
        if a is None:
            raise NotFoundError("Appuntamento non trovato.")
        for key, value in changes.items():
            if key not in EDITABLE_FIELDS:
                raise ValidationError(f"Campo non modificabile: {key}", field=key)
            if key == "status" and not isinstance(value, AppointmentStatus):
                try:
                    value = AppointmentStatus(value)
                except ValueError:
                    raise ValidationError(f"Stato non valido: {value}", field="status") from None
            if key == "start_time":
                value = normalize_time(value)
            setattr(a, key, value)
        a.end_time = sync_end_time(a.start_time, a.duration)


def delete_appointment(appointment_id: int) -> None:
    with db_session() as s:
        a = s.get(Appointment, appointment_id)
        if a is None:
            raise NotFoundError("Appuntamento non trovato.")
        s.delete(a)


def get_appointment(appointment_id: int) -> dict:
    with db_session() as s:
        a = s.execute(
            select(Appointment)
            .options(
                selectinload(Appointment.client),
                selectinload(Appointment.professional),
                selectinload(Appointment.service),
                selectinload(Appointment.consultation),
            )
            .where(Appointment.id == appointment_id)
        ).scalar_one_or_none()
        if a is None:
            raise NotFoundError("Appuntamento non trovato.")
        return _appointment_dict(a)


def _appointment_dict(a: Appointment) -> dict:
    return {
        "id": a.id,
        "date": a.date.isoformat(),
        "start_time": normalize_time(a.start_time),
        "end_time": normalize_time(a.end_time),
        "duration": a.duration,
        "status": a.status.value,
        "status_label": STATUS_LABELS[a.status],
        "client_id": a.client_id,
        "client": a.client.name if a.client else None,
        "client_phone": a.client.phone if a.client else None,
        "professional_id": a.professional_id,
        "professional": a.professional.name if a.professional else None,
        "service_id": a.service_id,
        "service": a.service.name if a.service else None,
        "consultation_id": a.consultation_id,
        "consultation": a.consultation.name if a.consultation else None,
        "notes": a.notes,
        "diagnosis": a.diagnosis,
    }


def day_agenda(professional_id: str, day: dt.date, include_cancelled: bool = False) -> list[dict]:
    """Versione 'flat' dell'agenda giornaliera di un professionista."""
    conditions = [Appointment.professional_id == professional_id, Appointment.date == day]
    if not include_cancelled:
        conditions.append(Appointment.status != AppointmentStatus.CANCELLED)

    with db_session() as s:
        q = (
            select(Appointment)
            .options(
                selectinload(Appointment.client),
                selectinload(Appointment.professional),
                selectinload(Appointment.service),
                selectinload(Appointment.consultation),
            )
            .where(and_(*conditions))
            .order_by(Appointment.start_time.asc())
        )
        return [_appointment_dict(a) for a in s.scalars(q)]


def client_appointments(client_id: int) -> list[dict]:
    with db_session() as s:
        q = (
            select(Appointment)
            .options(
                selectinload(Appointment.client),
                selectinload(Appointment.professional),
                selectinload(Appointment.service),
                selectinload(Appointment.consultation),
            )
            .where(Appointment.client_id == client_id)
            .order_by(Appointment.date.desc(), Appointment.start_time.desc())
        )
        return [_appointment_dict(a) for a in s.scalars(q)]
