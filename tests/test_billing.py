from decimal import Decimal

import pytest

from clinica import billing, config
from clinica.appointments import create_appointment
from clinica.billing import (
    LineInput,
    compute_line,
    compute_totals,
    create_invoice,
    create_invoice_for_appointment,
    format_invoice_number,
    list_invoices,
    reserve_invoice_number,
    set_invoice_status,
    validate_client_billing_data,
    validate_invoice_type,
)
from clinica.db import db_session
from clinica.errors import ExternalServiceError, ValidationError
from clinica.models import Invoice, InvoiceType, Organization

from conftest import MONDAY

REFERENCE_LINE = LineInput(
    description="Seduta",
    unit_price=Decimal("100"),
    quantity=Decimal("1"),
    discount_percentage=Decimal("10"),
    vat_rate=Decimal("21"),
    irpf_rate=Decimal("15"),
)


def test_reference_line_amounts():
    amounts = compute_line(REFERENCE_LINE)
    assert amounts.base == Decimal("90")
    assert amounts.vat == Decimal("18.9")
    assert amounts.irpf == Decimal("13.5")
    assert amounts.total == Decimal("95.4")


def test_totals_use_each_line_rates_and_accept_dicts():
    lines = [
        REFERENCE_LINE,
        {"description": "Esente", "unit_price": "40", "quantity": 2, "vat_rate": 0},
    ]
    totals = compute_totals(lines).rounded()
    assert totals.base == Decimal("170.00")
    assert totals.vat == Decimal("18.90")
    assert totals.irpf == Decimal("13.50")
    assert totals.discount == Decimal("10.00")
    assert totals.total == Decimal("175.40")


def test_rounding_is_half_up():
    totals = compute_totals([{"description": "x", "unit_price": "0.05", "vat_rate": "10"}]).rounded()
    assert totals.vat == Decimal("0.01")


def test_rounded_total_matches_the_rounded_parts():
    # IVA 0.005 sale a 0.01, IRPF 0.004 scende a 0.00
    totals = compute_totals([{"description": "x", "unit_price": "1", "vat_rate": "0.5", "irpf_rate": "0.4"}]).rounded()
    assert (totals.vat, totals.irpf) == (Decimal("0.01"), Decimal("0.00"))
    assert totals.total == Decimal("1.01")
    assert totals.total == totals.base + totals.vat - totals.irpf - totals.retention


def test_invoice_type_aliases():
    assert validate_invoice_type("simplified") is InvoiceType.SIMPLIFICADA
    assert validate_invoice_type("Rectificative") is InvoiceType.RECTIFICATIVA
    assert validate_invoice_type("whatever") is InvoiceType.NORMAL
    assert validate_invoice_type(None) is InvoiceType.NORMAL


def test_missing_billing_data_labels():
    assert validate_client_billing_data({"name": "A", "tax_id": " "}) == ["CIF/NIF", "indirizzo", "CAP", "città"]
    assert format_invoice_number("FAC", 7) == "FAC0007"


def test_create_invoice_numbers_and_pdf(org_id, client_id):
    first = create_invoice(org_id, client_id, [REFERENCE_LINE])
    second = create_invoice(org_id, client_id, [REFERENCE_LINE], invoice_type="simplified")

    assert first.invoice_number == "FAC0001"
    assert second.invoice_number == "FAC0002"
    assert first.total_amount == Decimal("95.40")
    assert first.pdf_url == f"{config.STORAGE_BASE_URL}/invoices/{org_id}/FAC0001.pdf"
    assert (config.STORAGE_DIR / "invoices" / str(org_id) / "FAC0001.pdf").read_bytes().startswith(b"%PDF")

    with db_session() as s:
        assert s.get(Organization, org_id).last_invoice_number == 2
        invoice = s.get(Invoice, second.invoice_id)
        assert invoice.invoice_type is InvoiceType.SIMPLIFICADA
        assert invoice.lines[0].line_amount == Decimal("90.00")


def test_incomplete_client_is_rejected(org_id, new_client):
    client_id = new_client("Senza Dati", phone="600000000")
    with pytest.raises(ValidationError) as exc:
        create_invoice(org_id, client_id, [REFERENCE_LINE])
    assert exc.value.field == "client"
    assert "CIF/NIF" in exc.value.message
    assert list_invoices(org_id) == []


def test_pdf_failure_keeps_the_invoice(org_id, client_id, monkeypatch):
    def broken(*args, **kwargs):
        raise ExternalServiceError("disco pieno", service="storage")

    monkeypatch.setattr(billing, "save_pdf", broken)
    result = create_invoice(org_id, client_id, [REFERENCE_LINE])

    assert result.pdf_url is None
    assert "PDF" in result.message
    assert [i["invoice_number"] for i in list_invoices(org_id)] == ["FAC0001"]


def test_concurrent_reservations_can_collide_without_atomic_counter(org_id):
    # lettura e scrittura del contatore sono separate: due richieste
    # contemporanee vedono lo stesso numero
    assert reserve_invoice_number(org_id, atomic=False) == reserve_invoice_number(org_id, atomic=False)


def test_atomic_counter_hands_out_distinct_numbers(org_id, client_id, monkeypatch):
    assert reserve_invoice_number(org_id, atomic=True) != reserve_invoice_number(org_id, atomic=True)

    monkeypatch.setattr(config, "INVOICE_COUNTER_ATOMIC", True)
    result = create_invoice(org_id, client_id, [REFERENCE_LINE], with_pdf=False)
    assert result.invoice_number == "FAC0003"


def test_existing_numbers_are_skipped(org_id, client_id):
    create_invoice(org_id, client_id, [REFERENCE_LINE], with_pdf=False)
    with db_session() as s:
        s.get(Organization, org_id).last_invoice_number = 0

    assert reserve_invoice_number(org_id)[0] == "FAC0002"


def test_invoice_from_appointment(org_id, client_id, rossi):
    appointment_id = create_appointment(org_id, client_id, rossi.id, MONDAY, "10:00", 45)

    result = create_invoice_for_appointment(appointment_id)

    with db_session() as s:
        invoice = s.get(Invoice, result.invoice_id)
        line = invoice.lines[0]
        assert invoice.appointment_id == appointment_id
        assert invoice.issue_date == MONDAY
        assert line.description == "Consulta - Mario Rossi (10:00-10:45) [confirmed]"
        assert line.unit_price == Decimal("50.00")
        assert "02/03/2026 - 10:00" in invoice.notes
    assert result.total_amount == Decimal("60.50")

    set_invoice_status(result.invoice_id, "paid")
    assert list_invoices(org_id, client_id)[0]["status"] == "paid"
    with pytest.raises(ValidationError):
        set_invoice_status(result.invoice_id, "lost")
