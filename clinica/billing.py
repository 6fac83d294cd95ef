"""
Fatturazione.

- calcolo importi riga per riga (imponibile, IVA, IRPF, ritenuta, sconto)
- numerazione progressiva per organizzazione (<prefisso><0000>)
- creazione fattura da appuntamento, libera o per attività di gruppo
- generazione e archiviazione del PDF (un errore qui non annulla la fattura)

Gli importi della fattura sono arrotondati ai centesimi (half-up) voce per
voce, e il totale salvato è sempre imponibile + IVA - IRPF - ritenuta sulle
voci arrotondate.

Nota sul contatore: di default il numero viene letto, incrementato in memoria
e scritto sull'organizzazione solo dopo l'inserimento della fattura. Due
creazioni concorrenti possono quindi ottenere lo stesso numero. Con
CLINICA_INVOICE_COUNTER_ATOMIC=1 il contatore viene invece incrementato con un
unico UPDATE ... RETURNING.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session, selectinload

from clinica import config
from clinica.db import db_session
from clinica.errors import ExternalServiceError, NotFoundError, ValidationError
from clinica.models import (
    Appointment,
    Client,
    GroupActivity,
    GroupActivityParticipant,
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    InvoiceType,
    Organization,
    ParticipantStatus,
)
from clinica.pdf_invoice import generate_invoice_pdf
from clinica.storage import save_pdf
from clinica.timegrid import normalize_time

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
MAX_NUMBER_ATTEMPTS = 1000
DEFAULT_PRICE = Decimal("50")
DEFAULT_VAT = Decimal("21")


# =========================
# Tipi
# =========================
@dataclass(frozen=True)
class LineInput:
    description: str
    unit_price: Decimal
    quantity: Decimal = Decimal("1")
    discount_percentage: Decimal = Decimal("0")
    vat_rate: Decimal = DEFAULT_VAT
    irpf_rate: Decimal = Decimal("0")
    retention_rate: Decimal = Decimal("0")
    professional_id: str | None = None


@dataclass(frozen=True)
class LineAmounts:
    subtotal: Decimal
    discount: Decimal
    base: Decimal
    vat: Decimal
    irpf: Decimal
    retention: Decimal
    total: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    base: Decimal
    vat: Decimal
    irpf: Decimal
    retention: Decimal
    discount: Decimal
    total: Decimal

    def rounded(self) -> "InvoiceTotals":
        """Ai centesimi; il totale si ricava dalle parti già arrotondate."""
        base, vat, irpf, retention, discount = (
            round_cents(v) for v in (self.base, self.vat, self.irpf, self.retention, self.discount)
        )
        return InvoiceTotals(base, vat, irpf, retention, discount, total=base + vat - irpf - retention)


@dataclass(frozen=True)
class InvoiceResult:
    invoice_id: int
    invoice_number: str
    total_amount: Decimal
    pdf_url: str | None
    message: str


# =========================
# Calcoli
# =========================
def to_decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _field(line: Any, name: str, default: str = "0") -> Decimal:
    raw = line.get(name) if isinstance(line, dict) else getattr(line, name, None)
    return to_decimal(raw, default)


def compute_line(line: Any) -> LineAmounts:
    """
    Importi di una riga (dict, LineInput o InvoiceLine). Le percentuali sono
    espresse in punti (21 = 21%). Nessun arrotondamento intermedio.
    """
    quantity = _field(line, "quantity", "1")
    unit_price = _field(line, "unit_price")

    subtotal = quantity * unit_price
    discount = subtotal * _field(line, "discount_percentage") / HUNDRED
    base = subtotal - discount
    vat = base * _field(line, "vat_rate") / HUNDRED
    irpf = base * _field(line, "irpf_rate") / HUNDRED
    retention = base * _field(line, "retention_rate") / HUNDRED

    return LineAmounts(
        subtotal=subtotal,
        discount=discount,
        base=base,
        vat=vat,
        irpf=irpf,
        retention=retention,
        total=base + vat - irpf - retention,
    )


def compute_totals(lines: Iterable[Any]) -> InvoiceTotals:
    """Somma riga per riga; ogni riga usa le proprie aliquote."""
    base = vat = irpf = retention = discount = Decimal("0")
    for line in lines:
        amounts = compute_line(line)
        base += amounts.base
        vat += amounts.vat
        irpf += amounts.irpf
        retention += amounts.retention
        discount += amounts.discount

    return InvoiceTotals(
        base=base,
        vat=vat,
        irpf=irpf,
        retention=retention,
        discount=discount,
        total=base + vat - irpf - retention,
    )


# =========================
# Validazioni
# =========================
_TYPE_ALIASES = {
    "simplified": InvoiceType.SIMPLIFICADA,
    "simple": InvoiceType.SIMPLIFICADA,
    "simplificada": InvoiceType.SIMPLIFICADA,
    "rectificative": InvoiceType.RECTIFICATIVA,
    "rectificativa": InvoiceType.RECTIFICATIVA,
}


def validate_invoice_type(value: str | InvoiceType | None) -> InvoiceType:
    """Normalizza gli alias; qualsiasi valore sconosciuto diventa 'normal'."""
    if isinstance(value, InvoiceType):
        return value
    return _TYPE_ALIASES.get((value or "").strip().lower(), InvoiceType.NORMAL)


_REQUIRED_BILLING_FIELDS = (
    ("name", "nome"),
    ("tax_id", "CIF/NIF"),
    ("address", "indirizzo"),
    ("postal_code", "CAP"),
    ("city", "città"),
)


def validate_client_billing_data(client: Any) -> list[str]:
    """Etichette dei dati di fatturazione mancanti (lista vuota se completo)."""
    missing = []
    for attr, label in _REQUIRED_BILLING_FIELDS:
        value = client.get(attr) if isinstance(client, dict) else getattr(client, attr, None)
        if not (value or "").strip():
            missing.append(label)
    return missing


def _require_billing_data(client: Client) -> None:
    missing = validate_client_billing_data(client)
    if missing:
        raise ValidationError(
            f"Dati del cliente incompleti: {', '.join(missing)}",
            field="client",
        )


# =========================
# Numerazione
# =========================
def format_invoice_number(prefix: str, number: int) -> str:
    return f"{prefix}{number:04d}"


def _number_in_use(s: Session, invoice_number: str) -> bool:
    # il controllo è su tutte le organizzazioni
    q = select(Invoice.id).where(Invoice.invoice_number == invoice_number).limit(1)
    return s.execute(q).first() is not None


def _first_free_number(s: Session, prefix: str, start: int) -> tuple[str, int]:
    number = start
    for _ in range(MAX_NUMBER_ATTEMPTS):
        formatted = format_invoice_number(prefix, number)
        if not _number_in_use(s, formatted):
            return formatted, number
        number += 1
    raise ValidationError("Impossibile generare un numero di fattura univoco.", field="invoice_number")


def _reserve(s: Session, organization_id: int, atomic: bool) -> tuple[str, int]:
    org = s.get(Organization, organization_id)
    if org is None:
        raise NotFoundError("Organizzazione non trovata.")

    if not atomic:
        return _first_free_number(s, org.invoice_prefix, (org.last_invoice_number or 0) + 1)

    for _ in range(MAX_NUMBER_ATTEMPTS):
        number = s.execute(
            update(Organization)
            .where(Organization.id == organization_id)
            .values(last_invoice_number=Organization.last_invoice_number + 1)
            .returning(Organization.last_invoice_number)
        ).scalar_one()
        formatted = format_invoice_number(org.invoice_prefix, number)
        if not _number_in_use(s, formatted):
            return formatted, number
    raise ValidationError("Impossibile generare un numero di fattura univoco.", field="invoice_number")


def reserve_invoice_number(organization_id: int, atomic: bool | None = None) -> tuple[str, int]:
    """
    (numero formattato, numero) del prossimo numero libero.
    In modalità non atomica il contatore dell'organizzazione NON viene toccato:
    lo aggiorna create_invoice dopo l'inserimento.
    """
    if atomic is None:
        atomic = config.INVOICE_COUNTER_ATOMIC
    with db_session() as s:
        return _reserve(s, organization_id, atomic)


# =========================
# Creazione
# =========================
def _store_pdf(invoice_id: int) -> str | None:
    with db_session() as s:
        invoice = s.execute(
            select(Invoice).options(selectinload(Invoice.lines)).where(Invoice.id == invoice_id)
        ).scalar_one()
        organization = s.get(Organization, invoice.organization_id)
        client = s.get(Client, invoice.client_id)

        try:
            pdf = generate_invoice_pdf(invoice, invoice.lines, organization, client)
            url = save_pdf(pdf, f"{invoice.invoice_number}.pdf", invoice.organization_id)
        except ExternalServiceError as exc:
            logger.warning("Fattura %s creata senza PDF: %s", invoice.invoice_number, exc.message)
            return None

        invoice.pdf_url = url
        return url


def create_invoice(
    organization_id: int,
    client_id: int,
    lines: Sequence[LineInput | dict],
    issue_date: dt.date | None = None,
    invoice_type: str | InvoiceType | None = None,
    notes: str | None = None,
    created_by: str | None = None,
    appointment_id: int | None = None,
    group_activity_id: str | None = None,
    status: InvoiceStatus = InvoiceStatus.SENT,
    with_pdf: bool = True,
) -> InvoiceResult:
    if not lines:
        raise ValidationError("La fattura deve avere almeno una riga.", field="lines")

    atomic = config.INVOICE_COUNTER_ATOMIC
    totals = compute_totals(lines).rounded()

    with db_session() as s:
        client = s.get(Client, client_id)
        if client is None or client.organization_id != organization_id:
            raise NotFoundError("Cliente non trovato.")
        _require_billing_data(client)

        invoice_number, number = _reserve(s, organization_id, atomic)

        invoice = Invoice(
            organization_id=organization_id,
            client_id=client_id,
            appointment_id=appointment_id,
            group_activity_id=group_activity_id,
            invoice_number=invoice_number,
            issue_date=issue_date or dt.date.today(),
            invoice_type=validate_invoice_type(invoice_type),
            status=status,
            base_amount=totals.base,
            vat_amount=totals.vat,
            irpf_amount=totals.irpf,
            retention_amount=totals.retention,
            discount_amount=totals.discount,
            total_amount=totals.total,
            notes=notes,
            created_by=created_by,
        )
        s.add(invoice)
        s.flush()

        for line in lines:
            data = line if isinstance(line, dict) else asdict(line)
            amounts = compute_line(data)
            s.add(
                InvoiceLine(
                    invoice_id=invoice.id,
                    description=data["description"],
                    quantity=to_decimal(data.get("quantity"), "1"),
                    unit_price=to_decimal(data.get("unit_price")),
                    discount_percentage=to_decimal(data.get("discount_percentage")),
                    vat_rate=to_decimal(data.get("vat_rate"), str(DEFAULT_VAT)),
                    irpf_rate=to_decimal(data.get("irpf_rate")),
                    retention_rate=to_decimal(data.get("retention_rate")),
                    line_amount=round_cents(amounts.base),
                    professional_id=data.get("professional_id"),
                )
            )

        if not atomic:
            # scrittura del contatore separata dalla lettura (vedi nota del modulo)
            s.execute(
                update(Organization)
                .where(Organization.id == organization_id)
                .values(last_invoice_number=number)
            )
        invoice_id = invoice.id

    logger.info("Fattura %s creata (id=%s, org=%s)", invoice_number, invoice_id, organization_id)

    pdf_url = _store_pdf(invoice_id) if with_pdf else None
    message = "Fattura generata." if pdf_url or not with_pdf else "Fattura generata, ma il PDF non è disponibile."
    return InvoiceResult(
        invoice_id=invoice_id,
        invoice_number=invoice_number,
        total_amount=totals.total,
        pdf_url=pdf_url,
        message=message,
    )


def _client_notes(client: Client) -> str:
    return (
        f"Cliente: {client.name}, CIF/NIF: {client.tax_id}, Indirizzo: {client.address}, "
        f"{client.postal_code} {client.city}, {client.province or ''}".rstrip(", ")
    )


def create_invoice_for_appointment(appointment_id: int, created_by: str | None = None) -> InvoiceResult:
    """Una riga dal servizio dell'appuntamento (prezzo di default 50, IVA 21%)."""
    with db_session() as s:
        a = s.execute(
            select(Appointment)
            .options(
                selectinload(Appointment.client),
                selectinload(Appointment.professional),
                selectinload(Appointment.consultation),
                selectinload(Appointment.service),
            )
            .where(Appointment.id == appointment_id)
        ).scalar_one_or_none()
        if a is None:
            raise NotFoundError("Appuntamento non trovato.")

        service = a.service
        line = LineInput(
            description=(
                f"{a.consultation.name if a.consultation else 'Consulta'} - {a.professional.name} "
                f"({normalize_time(a.start_time)}-{normalize_time(a.end_time)}) [{a.status.value}]"
            ),
            unit_price=to_decimal(service.price) if service and service.price is not None else DEFAULT_PRICE,
            vat_rate=to_decimal(service.vat_rate, "21") if service else DEFAULT_VAT,
            irpf_rate=to_decimal(service.irpf_rate) if service else Decimal("0"),
            retention_rate=to_decimal(service.retention_rate) if service else Decimal("0"),
        )
        notes = (
            f"{_client_notes(a.client)}\n\n"
            f"Fattura generata per l'appuntamento del {a.date.strftime('%d/%m/%Y')} - "
            f"{normalize_time(a.start_time)} (stato: {a.status.value})"
        )
        organization_id, client_id, issue_date = a.organization_id, a.client_id, a.date

    return create_invoice(
        organization_id,
        client_id,
        [line],
        issue_date=issue_date,
        notes=notes,
        created_by=created_by,
        appointment_id=appointment_id,
    )


def invoice_group_activity(activity_id: str, created_by: str | None = None) -> dict:
    """
    Una fattura per ogni partecipante registrato/presente con dati di
    fatturazione completi e non ancora fatturato per questa attività.
    Ritorna {"created": [InvoiceResult], "skipped": [{client_id, reason}]}.
    """
    with db_session() as s:
        activity = s.execute(
            select(GroupActivity)
            .options(
                selectinload(GroupActivity.participants).selectinload(GroupActivityParticipant.client),
                selectinload(GroupActivity.professional),
                selectinload(GroupActivity.service),
            )
            .where(GroupActivity.id == activity_id)
        ).scalar_one_or_none()
        if activity is None:
            raise NotFoundError("Attività di gruppo non trovata.")

        already = set(
            s.scalars(
                select(Invoice.client_id).where(
                    and_(Invoice.group_activity_id == activity_id, Invoice.status != InvoiceStatus.CANCELLED)
                )
            )
        )

        service = activity.service
        description = (
            f"Attività di gruppo: {activity.name} - {activity.date.strftime('%d/%m/%Y')} "
            f"({normalize_time(activity.start_time)}-{normalize_time(activity.end_time)}) - "
            f"{activity.professional.name if activity.professional else 'Senza professionista'}"
        )
        line = LineInput(
            description=description,
            unit_price=to_decimal(service.price) if service else DEFAULT_PRICE,
            vat_rate=to_decimal(service.vat_rate, "21") if service else DEFAULT_VAT,
            irpf_rate=to_decimal(service.irpf_rate) if service else Decimal("0"),
            retention_rate=to_decimal(service.retention_rate) if service else Decimal("0"),
            professional_id=activity.professional_id,
        )

        candidates = []
        skipped = []
        for p in activity.participants:
            if p.status not in (ParticipantStatus.ATTENDED, ParticipantStatus.REGISTERED):
                continue
            if p.client_id in already:
                skipped.append({"client_id": p.client_id, "reason": "già fatturato"})
                continue
            missing = validate_client_billing_data(p.client)
            if missing:
                skipped.append({"client_id": p.client_id, "reason": f"dati mancanti: {', '.join(missing)}"})
                continue
            candidates.append(p.client_id)
        organization_id, issue_date = activity.organization_id, activity.date

    created = [
        create_invoice(
            organization_id,
            client_id,
            [line],
            issue_date=issue_date,
            created_by=created_by,
            group_activity_id=activity_id,
        )
        for client_id in candidates
    ]
    logger.info("Attività %s: %d fatture create, %d saltate", activity_id, len(created), len(skipped))
    return {"created": created, "skipped": skipped}


def list_invoices(organization_id: int, client_id: int | None = None) -> list[dict]:
    with db_session() as s:
        q = (
            select(Invoice, Client.name)
            .join(Client, Client.id == Invoice.client_id)
            .where(Invoice.organization_id == organization_id)
            .order_by(Invoice.issue_date.desc(), Invoice.id.desc())
        )
        if client_id is not None:
            q = q.where(Invoice.client_id == client_id)
        return [
            {
                "id": inv.id,
                "invoice_number": inv.invoice_number,
                "issue_date": inv.issue_date.isoformat(),
                "client": client_name,
                "invoice_type": inv.invoice_type.value,
                "status": inv.status.value,
                "total_amount": str(inv.total_amount),
                "pdf_url": inv.pdf_url,
            }
            for inv, client_name in s.execute(q).all()
        ]


def set_invoice_status(invoice_id: int, status: str | InvoiceStatus) -> None:
    try:
        new_status = status if isinstance(status, InvoiceStatus) else InvoiceStatus(status)
    except ValueError:
        raise ValidationError(f"Stato fattura non valido: {status}", field="status") from None
    with db_session() as s:
        invoice = s.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Fattura non trovata.")
        invoice.status = new_status
