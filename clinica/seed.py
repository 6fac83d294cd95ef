from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from clinica.auth_security import hash_password
from clinica.db import db_session
from clinica.models import (
    Client,
    Consultation,
    Organization,
    Service,
    User,
    UserService,
    WorkSchedule,
    WorkScheduleBreak,
)

DEMO_ORGANIZATION = "Clinica Demo"
DEMO_PASSWORD = "demo1234"


def seed_base() -> int:
    """
    Popola dati minimi (idempotente) e ritorna l'id dell'organizzazione demo:
    - organizzazione con dati di fatturazione
    - servizi
    - sale (consultations)
    - professionisti con orario settimanale e pausa pranzo
    - un amministratore e un cliente di prova
    """
    with db_session() as s:
        org = s.execute(select(Organization).where(Organization.name == DEMO_ORGANIZATION)).scalar_one_or_none()
        if org is None:
            org = Organization(
                name=DEMO_ORGANIZATION,
                tax_id="B12345678",
                address="Calle Mayor 1",
                postal_code="28001",
                city="Madrid",
                province="Madrid",
                email="info@clinica.local",
                invoice_prefix="FAC",
            )
            s.add(org)
            s.flush()

        # Servizi
        servizi = [
            ("Fisioterapia", 45, "45.00", "#10B981"),
            ("Prima visita", 60, "60.00", "#3B82F6"),
            ("Controllo", 30, "35.00", "#F59E0B"),
        ]
        for nome, durata, prezzo, colore in servizi:
            exists = s.execute(
                select(Service).where(Service.organization_id == org.id, Service.name == nome)
            ).scalar_one_or_none()
            if exists is None:
                s.add(Service(organization_id=org.id, name=nome, duration=durata, price=Decimal(prezzo), color=colore))

        # Sale
        for nome in ("Sala 1", "Sala 2"):
            exists = s.execute(
                select(Consultation).where(Consultation.organization_id == org.id, Consultation.name == nome)
            ).scalar_one_or_none()
            if exists is None:
                s.add(Consultation(organization_id=org.id, name=nome))

        # Utenti: type 1 = professionista, 0 = amministrazione
        utenti = [
            ("Mario Rossi", "mrossi", 1, "#6366F1"),
            ("Laura Bianchi", "lbianchi", 1, "#EC4899"),
            ("Segreteria", "admin", 0, None),
        ]
        for nome, username, tipo, colore in utenti:
            if s.execute(select(User).where(User.username == username)).scalar_one_or_none() is None:
                s.add(
                    User(
                        organization_id=org.id,
                        name=nome,
                        username=username,
                        password_hash=hash_password(DEMO_PASSWORD),
                        type=tipo,
                        color=colore,
                    )
                )

        s.flush()

        rossi = s.execute(select(User).where(User.username == "mrossi")).scalar_one()
        bianchi = s.execute(select(User).where(User.username == "lbianchi")).scalar_one()

        def add_week(user: User, start: str, end: str) -> None:
            # lunedì..venerdì (0 = domenica)
            for dow in range(1, 6):
                exists = s.execute(
                    select(WorkSchedule).where(WorkSchedule.user_id == user.id, WorkSchedule.day_of_week == dow)
                ).scalar_one_or_none()
                if exists is None:
                    ws = WorkSchedule(user_id=user.id, day_of_week=dow, start_time=start, end_time=end)
                    ws.breaks.append(WorkScheduleBreak(break_name="Pranzo", start_time="14:00", end_time="15:00"))
                    s.add(ws)

        add_week(rossi, "09:00", "18:00")
        add_week(bianchi, "10:00", "19:00")

        # Abilitazioni: Rossi fa solo fisioterapia, Bianchi nessun vincolo
        fisio = s.execute(
            select(Service).where(Service.organization_id == org.id, Service.name == "Fisioterapia")
        ).scalar_one()
        link = s.execute(
            select(UserService).where(UserService.user_id == rossi.id, UserService.service_id == fisio.id)
        ).scalar_one_or_none()
        if link is None:
            s.add(UserService(user_id=rossi.id, service_id=fisio.id))

        if s.execute(select(Client).where(Client.organization_id == org.id)).first() is None:
            s.add(
                Client(
                    organization_id=org.id,
                    name="Giulia Verdi",
                    phone="612345678",
                    email="giulia.verdi@example.com",
                    tax_id="12345678Z",
                    address="Calle Luna 5",
                    postal_code="28004",
                    city="Madrid",
                )
            )

        return org.id
