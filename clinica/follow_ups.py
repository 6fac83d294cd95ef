from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy import and_, select
from sqlalchemy.orm import selectinload

from clinica.db import db_session
from clinica.errors import NotFoundError, ValidationError
from clinica.models import Client, PatientFollowUp, User

logger = logging.getLogger(__name__)

FOLLOW_UP_TYPES = ("CONSULTA", "SEGUIMIENTO", "REVISION", "TRATAMIENTO", "OTRO")


def _to_dict(f: PatientFollowUp) -> dict:
    return {
        "id": f.id,
        "client_id": f.client_id,
        "professional_id": f.professional_id,
        "professional_name": f.professional.name if f.professional else None,
        "follow_up_date": f.follow_up_date.isoformat(),
        "follow_up_type": f.follow_up_type,
        "description": f.description,
        "recommendations": f.recommendations,
        "next_appointment_note": f.next_appointment_note,
        "created_at": f.created_at.isoformat(),
    }


def list_follow_ups(client_id: int) -> list[dict]:
    """Seguimenti attivi del cliente, il più recente per primo."""
    with db_session() as s:
        rows = s.execute(
            select(PatientFollowUp)
            .options(selectinload(PatientFollowUp.professional))
            .where(and_(PatientFollowUp.client_id == client_id, PatientFollowUp.is_active.is_(True)))
            .order_by(PatientFollowUp.follow_up_date.desc(), PatientFollowUp.id.desc())
        ).scalars().all()
        return [_to_dict(f) for f in rows]


def create_follow_up(
    client_id: int,
    description: str,
    follow_up_date: dt.date | None = None,
    follow_up_type: str = "SEGUIMIENTO",
    recommendations: str | None = None,
    next_appointment_note: str | None = None,
    professional_id: str | None = None,
) -> int:
    if not (description or "").strip():
        raise ValidationError("La descrizione del seguimento è obbligatoria.", field="description")

    with db_session() as s:
        client = s.get(Client, client_id)
        if client is None:
            raise NotFoundError("Cliente non trovato.")
        if professional_id and s.get(User, professional_id) is None:
            professional_id = None

        now = dt.datetime.utcnow()
        f = PatientFollowUp(
            client_id=client_id,
            organization_id=client.organization_id,
            professional_id=professional_id,
            follow_up_date=follow_up_date or dt.date.today(),
            follow_up_type=(follow_up_type or "SEGUIMIENTO").upper(),
            description=description.strip(),
            recommendations=recommendations or None,
            next_appointment_note=next_appointment_note or None,
            created_at=now,
            updated_at=now,
        )
        s.add(f)
        s.flush()
        return f.id


def delete_follow_up(follow_up_id: int) -> None:
    """Cancellazione logica (is_active=False)."""
    with db_session() as s:
        f = s.get(PatientFollowUp, follow_up_id)
        if f is None or not f.is_active:
            raise NotFoundError("Seguimento non trovato.")
        f.is_active = False
        f.updated_at = dt.datetime.utcnow()
    logger.info("Seguimento %s disattivato", follow_up_id)
