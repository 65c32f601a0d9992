"""Invoice document rendering and archival."""

from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path
from typing import Protocol

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from billing.core.config import Config
from billing.core.exceptions import RenderError
from billing.schemas.documents import InvoiceDocument
from billing.utils.money import format_money
from billing.utils.validators import safe_filename

logger = logging.getLogger(__name__)


class DocumentRenderer(Protocol):
    """Turns an invoice snapshot into PDF bytes."""

    def render(self, document: InvoiceDocument) -> bytes: ...


class ReportLabRenderer:
    """Minimal one-page PDF invoice built with ReportLab."""

    def render(self, document: InvoiceDocument) -> bytes:
        invoice = document.invoice
        currency = invoice.currency
        buffer = BytesIO()
        try:
            doc = SimpleDocTemplate(
                buffer,
                pagesize=A4,
                rightMargin=inch,
                leftMargin=inch,
                topMargin=inch,
                bottomMargin=inch,
                title=invoice.invoice_num,
            )
            styles = getSampleStyleSheet()
            title_style = ParagraphStyle(
                "InvoiceTitle",
                parent=styles["Heading1"],
                fontSize=22,
                textColor=colors.HexColor("#2C3E50"),
                spaceAfter=24,
                alignment=TA_CENTER,
            )

            elements = [
                Paragraph(document.company.name, title_style),
                Paragraph(
                    "<br/>".join(filter(None, [document.company.address, document.company.email])),
                    styles["Normal"],
                ),
                Spacer(1, 0.3 * inch),
                Paragraph(f"INVOICE {invoice.invoice_num}", styles["Heading1"]),
                Spacer(1, 0.2 * inch),
            ]

            header = [
                ["Bill To:", "", "Issued:", invoice.issued_date.isoformat()],
                [document.client.name, "", "Due:", invoice.due_date.isoformat()],
                [document.client.email, "", "Amount Due:", format_money(invoice.amount, currency)],
            ]
            if invoice.period_start and invoice.period_end:
                header.append(["", "", "Period:", f"{invoice.period_start} to {invoice.period_end}"])
            header_table = Table(header, colWidths=[2.5 * inch, 0.3 * inch, 1.2 * inch, 2 * inch])
            header_table.setStyle(
                TableStyle(
                    [
                        ("FONTNAME", (0, 0), (0, 0), "Helvetica-Bold"),
                        ("FONTNAME", (2, 0), (2, -1), "Helvetica-Bold"),
                        ("FONTSIZE", (0, 0), (-1, -1), 10),
                        ("BOTTOMPADDING", (0, 0), (-1, -1), 8),
                        ("VALIGN", (0, 0), (-1, -1), "TOP"),
                    ]
                )
            )
            elements += [header_table, Spacer(1, 0.4 * inch)]

            rows = [["Description", "Quantity", "Rate", "Amount"]]
            for item in document.line_items:
                label = item.item_name if not item.description else f"{item.item_name}<br/>{item.description}"
                rows.append(
                    [
                        Paragraph(label, styles["Normal"]),
                        f"{item.quantity.normalize():f}",
                        format_money(item.rate, currency),
                        format_money(item.amount, currency),
                    ]
                )
            rows.append(["", "", "Total:", format_money(invoice.amount, currency)])
            items_table = Table(rows, colWidths=[3 * inch, 0.9 * inch, 1.2 * inch, 1.3 * inch])
            items_table.setStyle(
                TableStyle(
                    [
                        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#3498DB")),
                        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                        ("FONTNAME", (2, -1), (-1, -1), "Helvetica-Bold"),
                        ("LINEABOVE", (2, -1), (-1, -1), 1, colors.HexColor("#2C3E50")),
                        ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
                        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                        ("GRID", (0, 0), (-1, -2), 0.5, colors.grey),
                    ]
                )
            )
            elements.append(items_table)

            if document.company.bank_account:
                elements += [
                    Spacer(1, 0.4 * inch),
                    Paragraph("<b>Payment details</b>", styles["Heading2"]),
                    Paragraph(
                        "<br/>".join(
                            filter(
                                None,
                                [
                                    document.company.bank_name,
                                    f"Account: {document.company.bank_account}",
                                    f"SWIFT: {document.company.bank_swift}" if document.company.bank_swift else None,
                                    f"Reference: {invoice.invoice_num}",
                                ],
                            )
                        ),
                        styles["Normal"],
                    ),
                ]

            doc.build(elements)
        except Exception as exc:
            raise RenderError(f"Failed to render invoice {invoice.invoice_num}: {exc}") from exc
        return buffer.getvalue()


class DocumentArchive:
    """Writes rendered documents to durable storage, one folder per tenant."""

    def __init__(self, config: Config, base_dir: str | Path | None = None) -> None:
        self._base_dir = Path(base_dir or config.INVOICE_OUTPUT_DIR)

    def path_for(self, tenant_id: str, invoice_num: str) -> Path:
        return self._base_dir / safe_filename(tenant_id) / f"{safe_filename(invoice_num, 'invoice')}.pdf"

    def store(self, tenant_id: str, invoice_num: str, pdf_bytes: bytes) -> Path:
        path = self.path_for(tenant_id, invoice_num)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".pdf.tmp")
        tmp_path.write_bytes(pdf_bytes)
        tmp_path.replace(path)
        logger.info(
            "document.stored",
            extra={"event": "document.stored", "tenant_id": tenant_id, "reason": str(path)},
        )
        return path

    def load(self, path: str | Path) -> bytes:
        return Path(path).read_bytes()
