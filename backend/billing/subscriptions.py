"""
Subscription lifecycle: creation (draft + first invoice, or the legacy direct
active/trial path), status transitions, seat/plan/notes changes, cancellation
and explicit MRR reconciliation.

Every operation runs in one `transaction.atomic()` block; the customer row is
locked before the single-active-subscription check, and the partial unique
constraint on `Subscription(customer) WHERE status='active'` backs it up.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from common.exceptions import (
    ActiveSubscriptionConflict, EntityNotFound, IllegalTransition, InvalidRequest,
)
from crm.models import Customer, Opportunity
from platformapp.sequences import next_value

from . import activity
from .conf import billing_setting
from .coupons import NOT_FOUND, CouponRejected, find_coupon, redeem
from .discounts import account_discount_of, apply_discounts, extend_period
from .models import Coupon, Plan, Subscription, SubscriptionActivity
from .money import format_amount
from .pricing import resolve_base_amount, select_price, validate_seats

logger = logging.getLogger(__name__)

Status = Subscription.Status
Kind = SubscriptionActivity.Kind

# customer-facing label differs for trials
CUSTOMER_STATUS_LABELS = {Status.TRIAL: "trialing"}


@dataclass
class CreationResult:
    subscription: Subscription
    invoice: Any = None          # invoicing.models.Invoice | None
    created: bool = True         # False when replayed from an Idempotency-Key


# ---- Helpers ----

def _get_owned(model, tenant, pk, label, *, lock=False):
    if pk in (None, ""):
        raise InvalidRequest(f"{label} is required", field=label.lower().replace(" ", "_"))
    qs = model.objects.select_for_update() if lock else model.objects.all()
    try:
        return qs.get(tenant=tenant, pk=pk)
    except (model.DoesNotExist, DjangoValidationError, ValueError):
        raise EntityNotFound(f"{label} not found")


def cycle_delta(billing_cycle: str) -> relativedelta:
    if billing_cycle == Subscription.BillingCycle.YEARLY:
        return relativedelta(years=1)
    return relativedelta(months=1)


def _coerce(choices, value, field):
    if value not in choices.values:
        raise InvalidRequest(f"Invalid {field}: {value}", field=field)
    return choices(value)


def current_subscription(customer_id) -> Optional[Subscription]:
    """The active subscription if there is one, else the most recently changed one."""
    qs = Subscription.objects.filter(customer_id=customer_id).select_related("plan")
    active = qs.filter(status=Status.ACTIVE).first()
    if active is not None:
        return active
    return qs.order_by("-updated_at", "-created_at").first()


def sync_customer(customer: Customer) -> None:
    """Copy plan and status of the customer's current subscription onto its labels."""
    current = current_subscription(customer.pk)
    if current is None:
        return
    customer.subscription_plan = current.plan.name
    customer.subscription_status = CUSTOMER_STATUS_LABELS.get(current.status, current.status)
    customer.save(update_fields=["subscription_plan", "subscription_status", "updated_at"])


def _lock_customer(customer_id) -> None:
    list(Customer.objects.select_for_update().filter(pk=customer_id).values_list("pk", flat=True))


def _ensure_no_other_active(customer_id, exclude_pk=None) -> None:
    qs = Subscription.objects.filter(customer_id=customer_id, status=Status.ACTIVE)
    if exclude_pk is not None:
        qs = qs.exclude(pk=exclude_pk)
    existing = qs.first()
    if existing is not None:
        raise ActiveSubscriptionConflict(existing.number)


def raise_active_conflict(customer_id) -> None:
    """
    After an IntegrityError: raise the 409 when another subscription of the
    customer is active (the partial unique index fired). Returns otherwise so
    the caller can re-raise the original error.
    """
    existing = Subscription.objects.filter(customer_id=customer_id, status=Status.ACTIVE).first()
    if existing is not None:
        raise ActiveSubscriptionConflict(existing.number)


def _replay(tenant, request_key: str) -> Optional[CreationResult]:
    sub = Subscription.objects.filter(tenant=tenant, request_key=request_key).first()
    if sub is None:
        return None
    return CreationResult(sub, sub.invoices.order_by("created_at").first(), created=False)


def _resolve_coupon(tenant, coupon_id, coupon_code) -> Optional[Coupon]:
    if coupon_id:
        return _get_owned(Coupon, tenant, coupon_id, "Coupon")
    if coupon_code:
        coupon = find_coupon(tenant, coupon_code)
        if coupon is None:
            raise EntityNotFound("Coupon not found")
        return coupon
    return None


# ---- Creation ----

def create_subscription(tenant, *, customer_id, plan_id, billing_cycle: str = "monthly",
                        seats=1, coupon_id=None, coupon_code=None, linked_deal_id=None,
                        notes: Optional[str] = None, status: str = Status.DRAFT, tax: int = 0,
                        request_key: Optional[str] = None, actor=None,
                        now: Optional[datetime] = None) -> CreationResult:
    """
    Create a subscription.

    status=draft (default): price it, redeem the coupon, persist the
    subscription and its first invoice; the subscription turns active when
    that invoice is paid. status=active|trial: legacy path, no invoice.

    Raises EntityNotFound (customer/plan/coupon/deal), InvalidRequest
    (seats, cycle, rejected coupon) or ActiveSubscriptionConflict.
    """
    billing_cycle = _coerce(Subscription.BillingCycle, billing_cycle, "billing_cycle")
    status = _coerce(Status, status, "status")
    if status not in (Status.DRAFT, Status.ACTIVE, Status.TRIAL):
        raise InvalidRequest("New subscriptions start as draft, active or trial", field="status")
    seats = validate_seats(seats)

    if request_key:
        replay = _replay(tenant, request_key)
        if replay is not None:
            return replay

    now = now or timezone.now()
    try:
        with transaction.atomic():
            result = _create_locked(
                tenant, customer_id=customer_id, plan_id=plan_id, billing_cycle=billing_cycle,
                seats=seats, coupon_id=coupon_id, coupon_code=coupon_code,
                linked_deal_id=linked_deal_id, notes=notes, status=status, tax=tax,
                request_key=request_key, actor=actor, now=now,
            )
    except IntegrityError:
        # lost a race the row lock could not prevent (e.g. SQLite, or a concurrent retry)
        if request_key:
            replay = _replay(tenant, request_key)
            if replay is not None:
                return replay
        raise_active_conflict(customer_id)
        raise

    logger.info("Subscription %s created for customer %s (%s, mrr=%s)",
                result.subscription.number, customer_id, status, result.subscription.mrr)
    return result


def _create_locked(tenant, *, customer_id, plan_id, billing_cycle, seats, coupon_id, coupon_code,
                   linked_deal_id, notes, status, tax, request_key, actor, now) -> CreationResult:
    customer = _get_owned(Customer, tenant, customer_id, "Customer", lock=True)
    plan = _get_owned(Plan, tenant, plan_id, "Plan")
    coupon = _resolve_coupon(tenant, coupon_id, coupon_code)
    deal = _get_owned(Opportunity, tenant, linked_deal_id, "Deal") if linked_deal_id else None

    _ensure_no_other_active(customer.pk)

    quote = resolve_base_amount(plan, select_price(plan, billing_cycle), billing_cycle, seats)

    if coupon is not None:
        try:
            coupon = redeem(coupon, plan.pk, now)
        except CouponRejected as exc:
            if exc.reason == NOT_FOUND:
                raise EntityNotFound(exc.message)
            raise InvalidRequest(exc.message, field="coupon", reason=exc.reason)

    breakdown = apply_discounts(quote.amount, account_discount_of(customer), coupon)
    period_end = extend_period(now + cycle_delta(billing_cycle), coupon)

    number = next_value(tenant, "subscription", billing_setting("SUBSCRIPTION_NUMBER_START"))
    sub = Subscription.objects.create(
        tenant=tenant,
        customer=customer,
        plan=plan,
        number=f"SUB-{number}",
        status=status,
        billing_cycle=billing_cycle,
        seats=seats,
        mrr=breakdown.net_amount,
        current_period_start=now,
        current_period_end=period_end,
        coupon=coupon,
        linked_deal=deal,
        notes=notes,
        request_key=request_key or None,
    )

    activity.record(
        sub, Kind.CREATED,
        f"Subscription created on {plan.name} ({billing_cycle}) at "
        f"{format_amount(breakdown.net_amount, quote.currency)}/month",
        actor=actor,
        metadata={
            **breakdown.as_metadata(),
            "seats": seats,
            "billingCycle": billing_cycle,
            "status": status,
            "couponCode": coupon.code if coupon else None,
        },
    )
    if coupon is not None:
        activity.record(
            sub, Kind.COUPON_APPLIED,
            f"Coupon {coupon.code} applied",
            actor=actor,
            metadata={
                "couponId": str(coupon.pk),
                "couponCode": coupon.code,
                "discountType": coupon.discount_type,
                "discountValue": coupon.discount_value,
                "discountAmount": breakdown.coupon_discount_amount,
                "periodEnd": period_end.isoformat(),
            },
        )

    sync_customer(customer)

    invoice = None
    if status == Status.DRAFT:
        from invoicing.services import generate_subscription_invoice

        invoice = generate_subscription_invoice(
            sub, quote=quote, breakdown=breakdown, coupon=coupon, tax=tax, actor=actor, now=now,
        )
    return CreationResult(sub, invoice)


# ---- Status transitions ----

def _status_kind(previous: str, target: str) -> str:
    if target == Status.PAUSED:
        return Kind.PAUSED
    if target == Status.CANCELED:
        return Kind.CANCELED
    if target == Status.PAST_DUE:
        return Kind.PAST_DUE
    if target == Status.ACTIVE:
        return Kind.RESUMED if previous == Status.PAUSED else Kind.ACTIVATED
    return Kind.STATUS_CHANGED


def transition(sub: Subscription, target, *, actor=None, now=None, metadata=None) -> str:
    """
    Move `sub` (already locked by the caller) to `target` along a legal edge,
    record it, and cascade the label to the customer. Returns the description.
    """
    target = _coerce(Status, target, "status")
    previous = sub.status
    if previous == Status.CANCELED and target == Status.CANCELED:
        raise IllegalTransition("Subscription is already canceled")
    if not sub.can_transition_to(target):
        raise IllegalTransition(f"Cannot change subscription status from {previous} to {target}")
    if target == Status.ACTIVE:
        _lock_customer(sub.customer_id)
        _ensure_no_other_active(sub.customer_id, exclude_pk=sub.pk)

    now = now or timezone.now()
    sub.status = target
    fields = ["status", "updated_at"]
    if target == Status.CANCELED:
        sub.canceled_at = now
        fields.append("canceled_at")
    sub.save(update_fields=fields)

    description = f"Status changed from {previous} to {target}"
    activity.record(sub, _status_kind(previous, target), description, actor=actor,
                    metadata={"from": previous, "to": target, **(metadata or {})})
    sync_customer(sub.customer)
    return description


def activate_for_payment(sub: Subscription, *, paid_at: datetime, invoice_number: str, actor=None) -> bool:
    """
    Payment of a subscription invoice: draft or past_due becomes active, with a
    fresh period starting at `paid_at`. Returns False when nothing changed.
    """
    if sub.status not in (Status.DRAFT, Status.PAST_DUE):
        return False
    first_activation = sub.status == Status.DRAFT
    end = paid_at + cycle_delta(sub.billing_cycle)
    if first_activation:
        end = extend_period(end, sub.coupon)
    sub.current_period_start = paid_at
    sub.current_period_end = end
    sub.save(update_fields=["current_period_start", "current_period_end", "updated_at"])
    transition(sub, Status.ACTIVE, actor=actor, now=paid_at,
               metadata={"invoiceNumber": invoice_number, "periodEnd": end.isoformat()})
    return True


# ---- Update / cancel ----

def _lock(subscription: Subscription) -> Subscription:
    return (
        Subscription.objects.select_for_update()
        .select_related("customer", "plan", "coupon")
        .get(pk=subscription.pk)
    )


def update_subscription(subscription: Subscription, patch: Dict[str, Any], *, actor=None) -> List[str]:
    """
    Apply any combination of status / seats / plan / notes. Each effective
    change appends one activity entry; MRR is left as is (see `recalculate`).
    Canceled subscriptions are immutable.
    """
    try:
        with transaction.atomic():
            changes = _update_locked(subscription, patch, actor=actor)
    except IntegrityError:
        raise_active_conflict(subscription.customer_id)
        raise

    subscription.refresh_from_db()
    return changes


def _update_locked(subscription: Subscription, patch: Dict[str, Any], *, actor) -> List[str]:
    changes: List[str] = []
    sub = _lock(subscription)

    if sub.status == Status.CANCELED and any(
        patch.get(field) is not None for field in ("seats", "plan", "notes")
    ):
        raise IllegalTransition("Canceled subscriptions cannot be changed")

    if "status" in patch and patch["status"] not in (None, sub.status):
        changes.append(transition(sub, patch["status"], actor=actor))

    if "seats" in patch and patch["seats"] is not None:
        seats = validate_seats(patch["seats"])
        if seats != sub.seats:
            previous = sub.seats
            sub.seats = seats
            sub.save(update_fields=["seats", "updated_at"])
            kind = Kind.SEAT_ADDED if seats > previous else Kind.SEAT_REMOVED
            verb = "increased" if seats > previous else "decreased"
            description = f"Seats {verb} from {previous} to {seats}"
            activity.record(sub, kind, description, actor=actor,
                            metadata={"from": previous, "to": seats})
            changes.append(description)

    if patch.get("plan") and str(patch["plan"]) != str(sub.plan_id):
        plan = _get_owned(Plan, sub.tenant_id, patch["plan"], "Plan")
        previous = sub.plan
        sub.plan = plan
        sub.save(update_fields=["plan", "updated_at"])
        description = f"Plan changed from {previous.name} to {plan.name}"
        activity.record(sub, Kind.PLAN_CHANGED, description, actor=actor,
                        metadata={"fromPlanId": str(previous.pk), "toPlanId": str(plan.pk),
                                  "fromPlan": previous.name, "toPlan": plan.name})
        sync_customer(sub.customer)
        changes.append(description)

    if "notes" in patch and (patch["notes"] or None) != (sub.notes or None):
        sub.notes = patch["notes"] or None
        sub.save(update_fields=["notes", "updated_at"])
        description = "Notes updated"
        activity.record(sub, Kind.NOTES_UPDATED, description, actor=actor)
        changes.append(description)

    return changes


def cancel_subscription(subscription: Subscription, *, actor=None) -> Subscription:
    with transaction.atomic():
        sub = _lock(subscription)
        transition(sub, Status.CANCELED, actor=actor)
    logger.info("Subscription %s canceled", sub.number)
    subscription.refresh_from_db()
    return subscription


def recalculate(subscription: Subscription, *, actor=None) -> Subscription:
    """
    Manual reconciliation after seat/plan changes: recompute MRR from the
    current plan price, seats, account discount and the coupon already on the
    subscription (no new redemption).
    """
    with transaction.atomic():
        sub = _lock(subscription)
        quote = resolve_base_amount(sub.plan, select_price(sub.plan, sub.billing_cycle),
                                    sub.billing_cycle, sub.seats)
        breakdown = apply_discounts(quote.amount, account_discount_of(sub.customer), sub.coupon)
        previous = sub.mrr
        sub.mrr = breakdown.net_amount
        sub.save(update_fields=["mrr", "updated_at"])
        activity.record(
            sub, Kind.MRR_RECALCULATED,
            f"MRR recalculated from {format_amount(previous, quote.currency)} "
            f"to {format_amount(sub.mrr, quote.currency)}",
            actor=actor,
            metadata={"previousMRR": previous, **breakdown.as_metadata(), "seats": sub.seats},
        )
    subscription.refresh_from_db()
    return subscription
