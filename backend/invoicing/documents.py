"""
Invoice documents. Rendering is an injected capability (settings
BILLING["INVOICE_RENDERER"]) behind `InvoiceRenderer.render(document, tenant_id)`;
it may fail, and callers only ever see a `RenderResult`.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple
from xml.sax.saxutils import escape

from celery.exceptions import TimeoutError as CeleryTimeoutError
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.utils.module_loading import import_string
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from reportlab.platypus.flowables import HRFlowable

from billing.conf import billing_setting
from billing.money import format_amount

logger = logging.getLogger(__name__)

PRIMARY_COLOR = colors.HexColor("#2563eb")
SECONDARY_COLOR = colors.HexColor("#6b7280")
LIGHT_GRAY = colors.HexColor("#f3f4f6")
DARK_GRAY = colors.HexColor("#333333")


class DocumentRenderError(Exception):
    pass


@dataclass(frozen=True)
class DocumentLine:
    description: str
    quantity: int
    unit_price: int
    total: int


@dataclass(frozen=True)
class InvoiceDocument:
    """Everything a renderer needs, detached from the ORM."""
    number: str
    status: str
    currency: str
    issued_at: datetime
    due_date: Optional[datetime]
    paid_at: Optional[datetime]
    seller_name: str
    billing_name: Optional[str]
    billing_email: Optional[str]
    billing_address: Optional[str]
    lines: Tuple[DocumentLine, ...]
    subtotal: int
    tax: int
    total: int
    notes: Optional[str] = None

    @classmethod
    def from_invoice(cls, invoice) -> "InvoiceDocument":
        return cls(
            number=invoice.number,
            status=invoice.status,
            currency=invoice.currency,
            issued_at=invoice.issued_at,
            due_date=invoice.due_date,
            paid_at=invoice.paid_at,
            seller_name=invoice.tenant.name,
            billing_name=invoice.billing_name,
            billing_email=invoice.billing_email,
            billing_address=invoice.billing_address,
            lines=tuple(
                DocumentLine(li.description, li.quantity, li.unit_price, li.total)
                for li in invoice.line_items.all()
            ),
            subtotal=invoice.subtotal,
            tax=invoice.tax,
            total=invoice.total,
            notes=invoice.notes,
        )


@dataclass(frozen=True)
class RenderResult:
    ok: bool
    path: Optional[str] = None
    error: Optional[str] = None


class InvoiceRenderer:
    def render(self, document: InvoiceDocument, tenant_id: str) -> str:
        """Render and store the document; return its storage path."""
        raise NotImplementedError


def storage_path(document: InvoiceDocument, tenant_id: str) -> str:
    return f"{billing_setting('INVOICE_STORAGE_PREFIX')}/{tenant_id}/{document.number}.pdf"


class ReportLabInvoiceRenderer(InvoiceRenderer):
    """A4 PDF via ReportLab, saved through Django's default storage."""

    def __init__(self):
        base = getSampleStyleSheet()
        self.styles = {
            "Title": ParagraphStyle("Title", parent=base["Heading1"], fontSize=22, textColor=PRIMARY_COLOR),
            "Normal": ParagraphStyle("Normal", parent=base["Normal"], fontSize=10, textColor=DARK_GRAY, leading=14),
            "Small": ParagraphStyle("Small", parent=base["Normal"], fontSize=9, textColor=SECONDARY_COLOR),
        }

    def build_pdf(self, document: InvoiceDocument) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer, pagesize=A4,
            leftMargin=20 * mm, topMargin=20 * mm, rightMargin=20 * mm, bottomMargin=20 * mm,
            title=f"Invoice {document.number}", author=document.seller_name,
        )
        story = []
        story.extend(self._header(document))
        story.extend(self._lines(document))
        story.extend(self._totals(document))
        if document.notes:
            story.append(Paragraph(f"<b>Notes</b><br/>{escape(document.notes)}", self.styles["Small"]))
        doc.build(story)
        return buffer.getvalue()

    def _header(self, document: InvoiceDocument) -> list:
        fmt = "%B %d, %Y"
        bill_to = "<b>BILL TO</b><br/>" + "<br/>".join(
            escape(v) for v in (document.billing_name, document.billing_email, document.billing_address) if v
        )
        meta = (
            f"<para align='right'><b>INVOICE</b><br/>#{escape(document.number)}<br/>"
            f"{document.status.upper()}<br/>Issued {document.issued_at.strftime(fmt)}"
        )
        if document.due_date:
            meta += f"<br/>Due {document.due_date.strftime(fmt)}"
        if document.paid_at:
            meta += f"<br/>Paid {document.paid_at.strftime(fmt)}"
        meta += "</para>"

        table = Table([[Paragraph(bill_to, self.styles["Normal"]), Paragraph(meta, self.styles["Normal"])]])
        table.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP"), ("BOTTOMPADDING", (0, 0), (-1, -1), 16)]))
        return [
            Paragraph(escape(document.seller_name), self.styles["Title"]),
            table,
            HRFlowable(width="100%", thickness=2, color=PRIMARY_COLOR),
            Spacer(1, 16),
        ]

    def _lines(self, document: InvoiceDocument) -> list:
        data = [["Description", "Qty", "Unit price", "Amount"]]
        for line in document.lines:
            data.append([
                Paragraph(escape(line.description), self.styles["Normal"]),
                str(line.quantity),
                format_amount(line.unit_price, document.currency),
                format_amount(line.total, document.currency),
            ])
        table = Table(data, colWidths=[None, 40, 90, 90])
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), LIGHT_GRAY),
            ("TEXTCOLOR", (0, 0), (-1, 0), SECONDARY_COLOR),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 9),
            ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.lightgrey),
            ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ]))
        return [table, Spacer(1, 20)]

    def _totals(self, document: InvoiceDocument) -> list:
        rows = [
            ["Subtotal", format_amount(document.subtotal, document.currency)],
            ["Tax", format_amount(document.tax, document.currency)],
            ["Total", format_amount(document.total, document.currency)],
        ]
        table = Table(rows, colWidths=[None, 110], hAlign="RIGHT")
        table.setStyle(TableStyle([
            ("ALIGN", (0, 0), (-1, -1), "RIGHT"),
            ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
            ("LINEABOVE", (0, -1), (-1, -1), 1, DARK_GRAY),
        ]))
        return [table, Spacer(1, 20)]

    def render(self, document: InvoiceDocument, tenant_id: str) -> str:
        try:
            pdf = self.build_pdf(document)
        except Exception as exc:
            raise DocumentRenderError(f"Could not build PDF for {document.number}: {exc}") from exc
        path = storage_path(document, tenant_id)
        if default_storage.exists(path):
            default_storage.delete(path)
        return default_storage.save(path, ContentFile(pdf))


def get_renderer() -> InvoiceRenderer:
    return import_string(billing_setting("INVOICE_RENDERER"))()


def render_document(invoice) -> RenderResult:
    """
    Best-effort render through the Celery task, waiting at most
    DOCUMENT_RENDER_TIMEOUT seconds. Never raises; the billing write that
    preceded it stands either way and `pdf_path` can be regenerated later.
    """
    from .tasks import render_invoice_document

    timeout = billing_setting("DOCUMENT_RENDER_TIMEOUT")
    try:
        path = render_invoice_document.delay(str(invoice.pk)).get(timeout=timeout)
    except CeleryTimeoutError:
        logger.warning("Rendering invoice %s timed out after %ss", invoice.number, timeout)
        return RenderResult(ok=False, error="Document rendering timed out")
    except Exception as exc:
        logger.warning("Rendering invoice %s failed: %s", invoice.number, exc, exc_info=True)
        return RenderResult(ok=False, error="Document rendering failed")

    invoice.pdf_path = path
    return RenderResult(ok=True, path=path)
