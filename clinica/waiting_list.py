from __future__ import annotations

import datetime as dt
import logging
import math

from sqlalchemy import and_, func, select

from clinica.appointments import create_appointment
from clinica.db import db_session
from clinica.errors import NotFoundError, ValidationError
from clinica.models import Client, Service, TimePreference, User, WaitingListEntry

logger = logging.getLogger(__name__)

TIME_PREFERENCE_LABELS = {
    TimePreference.MORNING: "Mattina",
    TimePreference.AFTERNOON: "Pomeriggio",
    TimePreference.ANY: "Qualsiasi orario",
}


def time_preference_label(preference: str | TimePreference | None) -> str:
    try:
        pref = preference if isinstance(preference, TimePreference) else TimePreference(preference)
    except ValueError:
        return TIME_PREFERENCE_LABELS[TimePreference.ANY]
    return TIME_PREFERENCE_LABELS[pref]


def days_waiting(created_at: dt.datetime, now: dt.datetime | None = None) -> int:
    """Giorni di attesa arrotondati per eccesso (un'ora di attesa = 1 giorno)."""
    now = now or dt.datetime.utcnow()
    seconds = abs((now - created_at).total_seconds())
    return math.ceil(seconds / 86400)


def add_to_waiting_list(
    organization_id: int,
    client_id: int,
    preferred_date_start: dt.date,
    preferred_date_end: dt.date | None = None,
    professional_id: str | None = None,
    service_id: int | None = None,
    time_preference: str | TimePreference = TimePreference.ANY,
    notes: str | None = None,
) -> int:
    if preferred_date_end and preferred_date_end < preferred_date_start:
        raise ValidationError("La data finale precede quella iniziale.", field="preferred_date_end")
    try:
        pref = time_preference if isinstance(time_preference, TimePreference) else TimePreference(time_preference)
    except ValueError:
        raise ValidationError(f"Preferenza oraria non valida: {time_preference}", field="preferred_time_preference") from None

    with db_session() as s:
        if s.get(Client, client_id) is None:
            raise NotFoundError("Cliente non trovato.")
        if professional_id and s.get(User, professional_id) is None:
            raise NotFoundError("Professionista non trovato.")
        if service_id and s.get(Service, service_id) is None:
            raise NotFoundError("Servizio non trovato.")

        entry = WaitingListEntry(
            organization_id=organization_id,
            client_id=client_id,
            professional_id=professional_id,
            service_id=service_id,
            preferred_date_start=preferred_date_start,
            preferred_date_end=preferred_date_end,
            preferred_time_preference=pref,
            notes=notes,
        )
        s.add(entry)
        s.flush()
        return entry.id


def remove_from_waiting_list(entry_id: int, organization_id: int | None = None) -> None:
    with db_session() as s:
        entry = s.get(WaitingListEntry, entry_id)
        if entry is None or (organization_id is not None and entry.organization_id != organization_id):
            raise NotFoundError("Voce della lista d'attesa non trovata.")
        s.delete(entry)


def list_waiting_list(
    organization_id: int,
    professional_id: str | None = None,
    service_id: int | None = None,
    time_preference: str | None = None,
    text: str | None = None,
    now: dt.datetime | None = None,
) -> list[dict]:
    """Voci in ordine di inserimento (la più vecchia per prima), con filtri opzionali."""
    conditions = [WaitingListEntry.organization_id == organization_id]
    if professional_id:
        conditions.append(WaitingListEntry.professional_id == professional_id)
    if service_id:
        conditions.append(WaitingListEntry.service_id == service_id)
    if time_preference:
        try:
            conditions.append(WaitingListEntry.preferred_time_preference == TimePreference(time_preference))
        except ValueError:
            raise ValidationError(f"Preferenza oraria non valida: {time_preference}", field="time_preference") from None
    if text and text.strip():
        conditions.append(func.lower(Client.name).contains(text.strip().lower()))

    with db_session() as s:
        q = (
            select(
                WaitingListEntry,
                Client.name.label("client_name"),
                Client.phone.label("client_phone"),
                User.name.label("professional_name"),
                Service.name.label("service_name"),
                Service.duration.label("service_duration"),
                Service.color.label("service_color"),
            )
            .join(Client, Client.id == WaitingListEntry.client_id)
            .outerjoin(User, User.id == WaitingListEntry.professional_id)
            .outerjoin(Service, Service.id == WaitingListEntry.service_id)
            .where(and_(*conditions))
            .order_by(WaitingListEntry.created_at.asc(), WaitingListEntry.id.asc())
        )
        rows = s.execute(q).all()

    return [
        {
            "id": r.WaitingListEntry.id,
            "client_id": r.WaitingListEntry.client_id,
            "client_name": r.client_name,
            "client_phone": r.client_phone,
            "professional_id": r.WaitingListEntry.professional_id,
            "professional_name": r.professional_name,
            "service_id": r.WaitingListEntry.service_id,
            "service_name": r.service_name or "Servizio sconosciuto",
            "service_duration": r.service_duration or 30,
            "service_color": r.service_color or "#3B82F6",
            "preferred_date_start": r.WaitingListEntry.preferred_date_start.isoformat(),
            "preferred_date_end": (
                r.WaitingListEntry.preferred_date_end.isoformat() if r.WaitingListEntry.preferred_date_end else None
            ),
            "time_preference": r.WaitingListEntry.preferred_time_preference.value,
            "time_preference_label": time_preference_label(r.WaitingListEntry.preferred_time_preference),
            "notes": r.WaitingListEntry.notes,
            "created_at": r.WaitingListEntry.created_at.isoformat(),
            "days_waiting": days_waiting(r.WaitingListEntry.created_at, now),
        }
        for r in rows
    ]


def promote_to_appointment(
    entry_id: int,
    day: dt.date,
    start_time: str,
    professional_id: str | None = None,
    consultation_id: int | None = None,
    duration: int | None = None,
    notes: str | None = None,
) -> int:
    """
    Crea un appuntamento confermato dalla voce in lista d'attesa e poi la
    rimuove. Il professionista di default è quello indicato nella voce.
    Se la creazione fallisce la voce resta in lista.
    """
    with db_session() as s:
        entry = s.get(WaitingListEntry, entry_id)
        if entry is None:
            raise NotFoundError("Voce della lista d'attesa non trovata.")
        service = s.get(Service, entry.service_id) if entry.service_id else None
        organization_id, client_id, service_id = entry.organization_id, entry.client_id, entry.service_id
        professional_id = professional_id or entry.professional_id
        duration = duration or (service.duration if service else 30)
        notes = notes if notes is not None else entry.notes

    if not professional_id:
        raise ValidationError("Seleziona un professionista.", field="professional_id")

    appointment_id = create_appointment(
        organization_id=organization_id,
        client_id=client_id,
        professional_id=professional_id,
        day=day,
        start_time=start_time,
        duration=duration,
        service_id=service_id,
        consultation_id=consultation_id,
        notes=notes,
    )

    with db_session() as s:
        entry = s.get(WaitingListEntry, entry_id)
        if entry is not None:
            s.delete(entry)

    logger.info("Lista d'attesa %s promossa all'appuntamento %s", entry_id, appointment_id)
    return appointment_id
