import logging

from celery import shared_task

from .documents import InvoiceDocument, get_renderer
from .models import Invoice
from .services import mark_overdue

logger = logging.getLogger(__name__)


@shared_task
def render_invoice_document(invoice_id: str) -> str:
    """Render the invoice through the configured renderer and remember where it was stored."""
    invoice = Invoice.objects.select_related("tenant").get(pk=invoice_id)
    path = get_renderer().render(InvoiceDocument.from_invoice(invoice), str(invoice.tenant_id))
    Invoice.objects.filter(pk=invoice.pk).update(pdf_path=path)
    logger.info("Invoice %s rendered to %s", invoice.number, path)
    return path


@shared_task(bind=True, max_retries=3, autoretry_for=(Exception,), retry_backoff=True, retry_backoff_max=300)
def mark_overdue_invoices(self):
    """Periodic (beat) sweep; each invoice is moved in its own transaction."""
    return mark_overdue()
