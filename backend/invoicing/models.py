from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from common.models import BaseModel


class Invoice(BaseModel):
    """
    Private, tenant-scoped. Amounts are integer minor units snapshotted at
    creation; afterwards only status, paid_at and pdf_path change.
    """
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        FINAL = "final", "Final"
        PAID = "paid", "Paid"
        OVERDUE = "overdue", "Overdue"
        CANCELED = "canceled", "Canceled"

    TRANSITIONS = {
        Status.DRAFT: {Status.FINAL, Status.PAID, Status.CANCELED},
        Status.FINAL: {Status.PAID, Status.CANCELED, Status.OVERDUE},
        Status.OVERDUE: {Status.PAID, Status.CANCELED},
        Status.PAID: set(),
        Status.CANCELED: set(),
    }

    tenant = models.ForeignKey(
        "platformapp.Tenant", on_delete=models.CASCADE, related_name="invoices"
    )
    customer = models.ForeignKey(
        "crm.Customer", on_delete=models.PROTECT, related_name="invoices"
    )
    subscription = models.ForeignKey(
        "billing.Subscription", on_delete=models.PROTECT, related_name="invoices", blank=True, null=True
    )

    # Human-friendly number (auto-filled in signal if not provided)
    number = models.CharField(max_length=50, blank=True)

    subtotal = models.BigIntegerField(default=0)
    tax = models.PositiveBigIntegerField(default=0)
    total = models.BigIntegerField(default=0)
    currency = models.CharField(max_length=3, default="USD")

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT)
    issued_at = models.DateTimeField(default=timezone.now)
    due_date = models.DateTimeField(blank=True, null=True)
    paid_at = models.DateTimeField(blank=True, null=True)
    canceled_at = models.DateTimeField(blank=True, null=True)

    # Presentation / billing snapshot
    pdf_path = models.CharField(max_length=255, blank=True, null=True)
    notes = models.TextField(blank=True, null=True)
    billing_name = models.CharField(max_length=200, blank=True, null=True)
    billing_email = models.EmailField(blank=True, null=True)
    billing_address = models.TextField(blank=True, null=True)

    class Meta:
        unique_together = ("tenant", "number")
        indexes = [
            models.Index(fields=["tenant", "status", "issued_at"]),
            models.Index(fields=["status", "due_date"]),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(total=F("subtotal") + F("tax")), name="invoice_total_is_subtotal_plus_tax"),
            models.CheckConstraint(condition=Q(subtotal__gte=0), name="invoice_subtotal_non_negative"),
        ]

    def __str__(self):
        return self.number

    def can_transition_to(self, target) -> bool:
        return target in self.TRANSITIONS.get(self.status, set())


class InvoiceLineItem(models.Model):
    """One priced row; negative totals are discounts."""
    id = models.BigAutoField(primary_key=True)
    invoice = models.ForeignKey("invoicing.Invoice", on_delete=models.CASCADE, related_name="line_items")
    position = models.PositiveIntegerField()
    description = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField(default=1)
    unit_price = models.BigIntegerField()
    total = models.BigIntegerField()

    class Meta:
        ordering = ("position",)
        constraints = [
            models.UniqueConstraint(fields=["invoice", "position"], name="uniq_line_position"),
            models.CheckConstraint(condition=Q(total=F("quantity") * F("unit_price")), name="line_total_is_quantity_times_price"),
        ]

    def __str__(self):
        return f"{self.description}: {self.total}"
