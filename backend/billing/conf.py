from django.conf import settings

DEFAULTS = {
    "CURRENCY": "USD",
    "INVOICE_DUE_DAYS": 30,
    "SUBSCRIPTION_NUMBER_START": 1000,
    "INVOICE_NUMBER_START": 1001,
    "ACTIVITY_TIMELINE_LIMIT": 20,
    "DOCUMENT_RENDER_TIMEOUT": 10,
    "INVOICE_RENDERER": "invoicing.documents.ReportLabInvoiceRenderer",
    "INVOICE_STORAGE_PREFIX": "invoices",
}


def billing_setting(name: str):
    """settings.BILLING[name], falling back to the built-in default."""
    overrides = getattr(settings, "BILLING", None) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
