"""
Invoice generation and the invoice state machine.

Totals are integer minor units: `subtotal == sum(line.total)` and
`total == subtotal + tax` always hold (the DB enforces both per row).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from billing import activity
from billing.conf import billing_setting
from billing.discounts import DiscountBreakdown
from billing.models import Coupon, Subscription, SubscriptionActivity
from billing.money import format_amount
from billing.pricing import PriceQuote
from billing.subscriptions import activate_for_payment, raise_active_conflict, transition as transition_subscription
from common.exceptions import IllegalTransition, InvalidRequest

from .models import Invoice, InvoiceLineItem

logger = logging.getLogger(__name__)

Status = Invoice.Status


@dataclass(frozen=True)
class LineDraft:
    description: str
    quantity: int
    unit_price: int

    @property
    def total(self) -> int:
        return self.quantity * self.unit_price


# ---- Line building ----

def build_subscription_lines(*, plan_name: str, billing_cycle: str, quote: PriceQuote,
                             breakdown: DiscountBreakdown, coupon: Optional[Coupon] = None) -> List[LineDraft]:
    """
    (1) plan charge, first seat included; (2) additional seats;
    (3) account discount; (4) coupon discount. Monthly-equivalent figures are
    scaled by 12 for yearly billing; the coupon line is clamped so the
    subtotal never drops below zero.
    """
    scale = 12 if billing_cycle == Subscription.BillingCycle.YEARLY else 1
    currency = quote.currency
    lines: List[LineDraft] = []

    first_seat = quote.per_seat_amount if quote.has_seat_pricing else 0
    lines.append(LineDraft(f"{plan_name} ({billing_cycle})", 1, (quote.plan_amount + first_seat) * scale))

    if quote.has_seat_pricing and quote.seats > 1:
        unit = quote.per_seat_amount * scale
        lines.append(LineDraft(
            f"Additional seats ({quote.seats - 1} x {format_amount(unit, currency)})",
            quote.seats - 1, unit,
        ))

    if breakdown.account_discount_amount > 0:
        lines.append(LineDraft("Account discount", 1, -breakdown.account_discount_amount * scale))

    if breakdown.coupon_discount_amount > 0:
        running = sum(line.total for line in lines)
        amount = min(breakdown.coupon_discount_amount * scale, running)
        if amount > 0:
            label = f"Coupon {coupon.code}" if coupon is not None else "Coupon discount"
            lines.append(LineDraft(label, 1, -amount))

    return lines


def _persist(*, tenant, customer, subscription, lines: Iterable[LineDraft], tax: int, currency: str,
             issued_at: datetime, due_date: Optional[datetime], notes: Optional[str]) -> Invoice:
    lines = list(lines)
    if tax is None:
        tax = 0
    if isinstance(tax, bool) or not isinstance(tax, int) or tax < 0:
        raise InvalidRequest("Tax must be a non-negative integer amount", field="tax")
    subtotal = sum(line.total for line in lines)
    if subtotal < 0:
        raise InvalidRequest("Invoice subtotal cannot be negative", field="line_items")

    invoice = Invoice.objects.create(
        tenant=tenant,
        customer=customer,
        subscription=subscription,
        status=Status.DRAFT,
        subtotal=subtotal,
        tax=tax,
        total=subtotal + tax,
        currency=currency,
        issued_at=issued_at,
        due_date=due_date,
        notes=notes,
        billing_name=customer.name,
        billing_email=customer.email,
        billing_address=customer.billing_address,
    )
    InvoiceLineItem.objects.bulk_create([
        InvoiceLineItem(invoice=invoice, position=i, description=line.description[:255],
                        quantity=line.quantity, unit_price=line.unit_price, total=line.total)
        for i, line in enumerate(lines, start=1)
    ])
    return invoice


def generate_subscription_invoice(subscription: Subscription, *, quote: PriceQuote, breakdown: DiscountBreakdown,
                                  coupon: Optional[Coupon] = None, tax: int = 0, notes: Optional[str] = None,
                                  actor=None, now: Optional[datetime] = None) -> Invoice:
    """First invoice of a subscription; runs inside the creating transaction."""
    now = now or timezone.now()
    lines = build_subscription_lines(
        plan_name=subscription.plan.name, billing_cycle=subscription.billing_cycle,
        quote=quote, breakdown=breakdown, coupon=coupon,
    )
    invoice = _persist(
        tenant=subscription.tenant, customer=subscription.customer, subscription=subscription,
        lines=lines, tax=tax, currency=quote.currency, issued_at=now,
        due_date=now + timedelta(days=billing_setting("INVOICE_DUE_DAYS")),
        notes=notes if notes is not None else subscription.notes,
    )
    activity.record(
        subscription, SubscriptionActivity.Kind.INVOICE_CREATED,
        f"Invoice {invoice.number} created for {format_amount(invoice.total, invoice.currency)}",
        actor=actor,
        metadata={"invoiceId": str(invoice.pk), "invoiceNumber": invoice.number,
                  "subtotal": invoice.subtotal, "tax": invoice.tax, "total": invoice.total},
    )
    return invoice


def create_standalone_invoice(tenant, customer, line_items: Iterable[dict], *, tax: int = 0,
                              issued_at: Optional[datetime] = None, due_date: Optional[datetime] = None,
                              notes: Optional[str] = None, currency: Optional[str] = None) -> Invoice:
    """
    Manual invoice with no subscription. Each item needs a description, an
    integer quantity (default 1) and an integer unit price; totals are derived.
    """
    items = list(line_items or [])
    if not items:
        raise InvalidRequest("At least one line item is required", field="line_items")

    lines = []
    for item in items:
        description = (item.get("description") or "").strip()
        quantity = item.get("quantity", 1)
        unit_price = item.get("unit_price")
        if (not description
                or isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1
                or isinstance(unit_price, bool) or not isinstance(unit_price, int)):
            raise InvalidRequest(
                "Invalid line item format. Each item needs a description, quantity and unit_price",
                field="line_items",
            )
        lines.append(LineDraft(description, quantity, unit_price))

    issued_at = issued_at or timezone.now()
    with transaction.atomic():
        invoice = _persist(
            tenant=tenant, customer=customer, subscription=None, lines=lines, tax=tax,
            currency=currency or billing_setting("CURRENCY"), issued_at=issued_at,
            due_date=due_date or issued_at + timedelta(days=billing_setting("INVOICE_DUE_DAYS")),
            notes=notes,
        )
    logger.info("Standalone invoice %s created (%s)", invoice.number, invoice.total)
    return invoice


# ---- State machine ----

def _lock(invoice: Invoice) -> Invoice:
    return Invoice.objects.select_for_update().get(pk=invoice.pk)


def _set_status(invoice: Invoice, target: str, *extra_fields: str) -> None:
    if not invoice.can_transition_to(target):
        raise IllegalTransition(f"Cannot change invoice status from {invoice.status} to {target}")
    invoice.status = target
    invoice.save(update_fields=["status", "updated_at", *extra_fields])


def finalize_invoice(invoice: Invoice) -> Invoice:
    with transaction.atomic():
        inv = _lock(invoice)
        if inv.status == Status.FINAL:
            raise IllegalTransition("Invoice is already finalized")
        if inv.status != Status.DRAFT:
            raise IllegalTransition("Only draft invoices can be finalized")
        _set_status(inv, Status.FINAL)
    logger.info("Invoice %s finalized", inv.number)
    return inv


def mark_invoice_paid(invoice: Invoice, *, actor=None, now: Optional[datetime] = None) -> Invoice:
    """
    Pay the invoice and, in the same transaction, activate its subscription
    when that is still draft (or past_due). If the customer already has
    another active subscription nothing is written and a 409 is raised.
    """
    now = now or timezone.now()
    try:
        with transaction.atomic():
            inv = _lock(invoice)
            if inv.status == Status.PAID:
                raise IllegalTransition("Invoice is already paid")
            if inv.status == Status.CANCELED:
                raise IllegalTransition("Cannot pay a canceled invoice")
            inv.paid_at = now
            _set_status(inv, Status.PAID, "paid_at")

            if inv.subscription_id:
                sub = (
                    Subscription.objects.select_for_update()
                    .select_related("customer", "coupon")
                    .get(pk=inv.subscription_id)
                )
                activity.record(
                    sub, SubscriptionActivity.Kind.INVOICE_PAID,
                    f"Invoice {inv.number} paid ({format_amount(inv.total, inv.currency)})",
                    actor=actor,
                    metadata={"invoiceId": str(inv.pk), "invoiceNumber": inv.number, "total": inv.total},
                )
                activate_for_payment(sub, paid_at=now, invoice_number=inv.number, actor=actor)
    except IntegrityError:
        sub = Subscription.objects.filter(pk=invoice.subscription_id).first()
        if sub is not None:
            raise_active_conflict(sub.customer_id)
        raise

    logger.info("Invoice %s marked paid", inv.number)
    return inv


def cancel_invoice(invoice: Invoice) -> Invoice:
    with transaction.atomic():
        inv = _lock(invoice)
        if inv.status == Status.CANCELED:
            raise IllegalTransition("Invoice is already canceled")
        if inv.status == Status.PAID:
            raise IllegalTransition("Paid invoices cannot be canceled")
        inv.canceled_at = timezone.now()
        _set_status(inv, Status.CANCELED, "canceled_at")
    logger.info("Invoice %s canceled", inv.number)
    return inv


def mark_overdue(now: Optional[datetime] = None) -> int:
    """
    Sweep final invoices past their due date to overdue; an active subscription
    behind one of them becomes past_due. Returns the number of invoices moved.
    """
    now = now or timezone.now()
    moved = 0
    candidates = Invoice.objects.filter(status=Status.FINAL, due_date__lt=now).values_list("pk", flat=True)
    for pk in list(candidates):
        with transaction.atomic():
            inv = Invoice.objects.select_for_update().get(pk=pk)
            if inv.status != Status.FINAL:
                continue
            _set_status(inv, Status.OVERDUE)
            moved += 1
            if inv.subscription_id:
                sub = Subscription.objects.select_for_update().select_related("customer").get(pk=inv.subscription_id)
                if sub.status == Subscription.Status.ACTIVE:
                    transition_subscription(sub, Subscription.Status.PAST_DUE, now=now,
                                            metadata={"invoiceNumber": inv.number})
    if moved:
        logger.info("Marked %s invoice(s) overdue", moved)
    return moved
