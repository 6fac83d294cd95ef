"""
PDF della fattura (reportlab/platypus).

Layout: intestazione con numero e data, blocco emittente/cliente, tabella
righe, riepilogo imponibile/IVA/IRPF/ritenuta/totale, note.
"""
from __future__ import annotations

import io
import logging
from decimal import Decimal
from typing import Any, Iterable
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from clinica.errors import ExternalServiceError

logger = logging.getLogger(__name__)

BRAND = colors.HexColor("#3B82F6")
DARK = colors.HexColor("#1e293b")
LIGHT = colors.HexColor("#f1f5f9")

TYPE_TITLES = {
    "normal": "FATTURA",
    "rectificativa": "FATTURA RETTIFICATIVA",
    "simplificada": "FATTURA SEMPLIFICATA",
}


def _money(value: Any) -> str:
    amount = Decimal(str(value or 0)).quantize(Decimal("0.01"))
    return f"{amount:,.2f} €".replace(",", "X").replace(".", ",").replace("X", ".")


def _pct(value: Any) -> str:
    return f"{Decimal(str(value or 0)).normalize():f}%"


def _party_lines(entity: Any) -> list[str]:
    lines = [f"<b>{escape(entity.name)}</b>"]
    if getattr(entity, "tax_id", None):
        lines.append(f"CIF/NIF: {entity.tax_id}")
    if getattr(entity, "address", None):
        lines.append(escape(entity.address))
    place = " ".join(p for p in (getattr(entity, "postal_code", None), getattr(entity, "city", None)) if p)
    if getattr(entity, "province", None):
        place = f"{place} ({entity.province})" if place else entity.province
    if place:
        lines.append(place)
    for attr in ("email", "phone"):
        if getattr(entity, attr, None):
            lines.append(getattr(entity, attr))
    return lines


def generate_invoice_pdf(invoice: Any, lines: Iterable[Any], organization: Any, client: Any) -> bytes:
    """Ritorna i byte del PDF. Errori di reportlab -> ExternalServiceError."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=2 * cm,
        leftMargin=2 * cm,
        topMargin=2 * cm,
        bottomMargin=2 * cm,
        title=f"Fattura {invoice.invoice_number}",
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle("InvTitle", parent=styles["Heading1"], fontSize=20, textColor=BRAND, spaceAfter=6)
    body_style = ParagraphStyle("InvBody", parent=styles["Normal"], fontSize=9, textColor=DARK, leading=12)
    cell_style = ParagraphStyle("InvCell", parent=body_style, fontSize=8, leading=10)

    invoice_type = getattr(invoice.invoice_type, "value", invoice.invoice_type) or "normal"
    story: list[Any] = [
        Paragraph(TYPE_TITLES.get(invoice_type, "FATTURA"), title_style),
        Paragraph(
            f"N. <b>{invoice.invoice_number}</b> &nbsp;&nbsp; Data: {invoice.issue_date.strftime('%d/%m/%Y')}",
            body_style,
        ),
        Spacer(1, 0.6 * cm),
    ]

    parties = Table(
        [
            [Paragraph("<br/>".join(_party_lines(organization)), body_style),
             Paragraph("<br/>".join(_party_lines(client)), body_style)],
        ],
        colWidths=[8.5 * cm, 8.5 * cm],
    )
    parties.setStyle(
        TableStyle(
            [
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("BACKGROUND", (1, 0), (1, 0), LIGHT),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 8),
            ]
        )
    )
    story.extend([parties, Spacer(1, 0.6 * cm)])

    rows: list[list[Any]] = [["Descrizione", "Q.tà", "Prezzo", "Sconto", "IVA", "IRPF", "Importo"]]
    for line in lines:
        rows.append(
            [
                Paragraph(escape(line.description), cell_style),
                f"{Decimal(str(line.quantity)).normalize():f}",
                _money(line.unit_price),
                _pct(line.discount_percentage),
                _pct(line.vat_rate),
                _pct(line.irpf_rate),
                _money(line.line_amount),
            ]
        )

    table = Table(rows, colWidths=[6.5 * cm, 1.3 * cm, 2.2 * cm, 1.6 * cm, 1.4 * cm, 1.4 * cm, 2.6 * cm], repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), BRAND),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONT", (0, 0), (-1, 0), "Helvetica-Bold", 8),
                ("FONT", (1, 1), (-1, -1), "Helvetica", 8),
                ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ("LINEBELOW", (0, 0), (-1, -1), 0.25, colors.grey),
            ]
        )
    )
    story.extend([table, Spacer(1, 0.5 * cm)])

    summary = [
        ["Imponibile", _money(invoice.base_amount)],
        ["Sconto", _money(invoice.discount_amount)],
        ["IVA", _money(invoice.vat_amount)],
    ]
    if Decimal(str(invoice.irpf_amount or 0)):
        summary.append(["IRPF", f"- {_money(invoice.irpf_amount)}"])
    if Decimal(str(invoice.retention_amount or 0)):
        summary.append(["Ritenuta", f"- {_money(invoice.retention_amount)}"])
    summary.append(["TOTALE", _money(invoice.total_amount)])

    totals = Table(summary, colWidths=[4 * cm, 3.5 * cm], hAlign="RIGHT")
    totals.setStyle(
        TableStyle(
            [
                ("FONT", (0, 0), (-1, -1), "Helvetica", 9),
                ("FONT", (0, -1), (-1, -1), "Helvetica-Bold", 10),
                ("ALIGN", (1, 0), (1, -1), "RIGHT"),
                ("LINEABOVE", (0, -1), (-1, -1), 0.75, DARK),
            ]
        )
    )
    story.append(totals)

    if invoice.notes:
        story.append(Spacer(1, 0.8 * cm))
        story.append(Paragraph(escape(invoice.notes).replace("\n", "<br/>"), body_style))

    try:
        doc.build(story)
    except Exception as exc:
        logger.error("Generazione PDF fallita per la fattura %s: %s", invoice.invoice_number, exc)
        raise ExternalServiceError("Impossibile generare il PDF della fattura.", service="pdf") from exc

    return buffer.getvalue()
