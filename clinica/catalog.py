from __future__ import annotations

from typing import Any

from sqlalchemy import and_, select

from clinica.db import db_session
from clinica.errors import NotFoundError, ValidationError
from clinica.models import Client, Consultation, Organization

CLIENT_FIELDS = {
    "name", "phone", "email", "tax_id", "address", "postal_code", "city", "province", "birth_date", "gender",
}


def get_organization_flat(organization_id: int) -> dict:
    with db_session() as s:
        o = s.get(Organization, organization_id)
        if o is None:
            raise NotFoundError("Organizzazione non trovata.")
        return {
            "id": o.id,
            "name": o.name,
            "tax_id": o.tax_id,
            "address": o.address,
            "postal_code": o.postal_code,
            "city": o.city,
            "invoice_prefix": o.invoice_prefix,
            "last_invoice_number": o.last_invoice_number,
        }


def list_consultations_flat(organization_id: int) -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(Consultation.id, Consultation.name)
            .where(and_(Consultation.organization_id == organization_id, Consultation.is_active.is_(True)))
            .order_by(Consultation.name)
        ).all()
        return [{"id": r.id, "name": r.name} for r in rows]


def _client_dict(c: Client) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "phone": c.phone,
        "email": c.email,
        "tax_id": c.tax_id,
        "address": c.address,
        "postal_code": c.postal_code,
        "city": c.city,
        "province": c.province,
        "birth_date": c.birth_date.isoformat() if c.birth_date else None,
        "gender": c.gender,
    }


def list_clients_flat(organization_id: int) -> list[dict]:
    with db_session() as s:
        rows = s.scalars(select(Client).where(Client.organization_id == organization_id).order_by(Client.name))
        return [_client_dict(c) for c in rows]


def get_client_flat(client_id: int) -> dict:
    with db_session() as s:
        c = s.get(Client, client_id)
        if c is None:
            raise NotFoundError("Cliente non trovato.")
        return _client_dict(c)


def create_client(organization_id: int, name: str, **fields: Any) -> int:
    if not (name or "").strip():
        raise ValidationError("Il nome del cliente è obbligatorio.", field="name")
    unknown = set(fields) - CLIENT_FIELDS
    if unknown:
        raise ValidationError(f"Campo sconosciuto: {sorted(unknown)[0]}", field=sorted(unknown)[0])

    with db_session() as s:
        if s.get(Organization, organization_id) is None:
            raise NotFoundError("Organizzazione non trovata.")
        c = Client(organization_id=organization_id, name=name.strip(), **fields)
        s.add(c)
        s.flush()
        return c.id


def update_client(client_id: int, **changes: Any) -> None:
    with db_session() as s:
        c = s.get(Client, client_id)
        if c is None:
            raise NotFoundError("Cliente non trovato.")
        for key, value in changes.items():
            if key not in CLIENT_FIELDS:
                raise ValidationError(f"Campo non modificabile: {key}", field=key)
            setattr(c, key, value)
