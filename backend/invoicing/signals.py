from datetime import timedelta

from django.db.models.signals import pre_save
from django.dispatch import receiver

from billing.conf import billing_setting
from platformapp.sequences import next_value

from .models import Invoice


def _generate_number(tenant) -> str:
    n = next_value(tenant, "invoice", billing_setting("INVOICE_NUMBER_START"))
    return f"INV-{tenant.slug.upper()}-{n}"


@receiver(pre_save, sender=Invoice)
def fill_invoice_defaults(sender, instance: Invoice, **kwargs):
    if not instance.number:
        instance.number = _generate_number(instance.tenant)
    if not instance.due_date:
        instance.due_date = instance.issued_at + timedelta(days=billing_setting("INVOICE_DUE_DAYS"))
    if not instance.currency:
        instance.currency = billing_setting("CURRENCY")
