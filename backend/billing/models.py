from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from common.models import BaseModel


class Plan(BaseModel):
    class PricingModel(models.TextChoices):
        FLAT = "flat", "Flat"
        PER_SEAT = "per_seat", "Per seat"
        USAGE = "usage", "Usage metered"

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        ARCHIVED = "archived", "Archived"

    tenant = models.ForeignKey(
        "platformapp.Tenant",
        on_delete=models.CASCADE,
        related_name="billing_plans",
        related_query_name="billing_plan",   # <- keeps reverse query name clear of Subscription.plan
    )
    code = models.SlugField(max_length=50)
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True, null=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    pricing_model = models.CharField(max_length=16, choices=PricingModel.choices, default=PricingModel.FLAT)
    features_json = models.JSONField(default=dict, blank=True)  # limits, entitlements

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "code"], name="uniq_plan_code_per_tenant"),
        ]

    def __str__(self):
        return self.name


class Price(BaseModel):
    """Base price of a plan for one billing interval, in minor units."""

    class Interval(models.TextChoices):
        MONTHLY = "monthly", "Monthly"
        YEARLY = "yearly", "Yearly"

    plan = models.ForeignKey("billing.Plan", on_delete=models.CASCADE, related_name="prices")
    pricing_type = models.CharField(max_length=16, default="base")
    interval = models.CharField(max_length=16, choices=Interval.choices, default=Interval.MONTHLY)
    currency = models.CharField(max_length=3, default="USD")
    amount = models.PositiveBigIntegerField(default=0)
    per_seat_amount = models.PositiveBigIntegerField(blank=True, null=True)  # monthly, per seat

    class Meta:
        ordering = ("created_at",)
        constraints = [
            models.UniqueConstraint(fields=["plan", "pricing_type", "interval"], name="uniq_price_per_interval"),
        ]


class CouponQuerySet(models.QuerySet):
    def expired(self, now=None):
        """Still flagged active, but past expiry or out of redemptions."""
        now = now or timezone.now()
        return self.filter(status=Coupon.Status.ACTIVE).filter(
            Q(expires_at__lte=now)
            | Q(max_redemptions__isnull=False, redemption_count__gte=F("max_redemptions"))
        )

    def redeemable(self, now=None):
        now = now or timezone.now()
        return self.filter(status=Coupon.Status.ACTIVE).filter(
            Q(expires_at__isnull=True) | Q(expires_at__gt=now)
        ).filter(
            Q(max_redemptions__isnull=True) | Q(redemption_count__lt=F("max_redemptions"))
        )


def normalize_code(code) -> str:
    return (code or "").strip().upper()


class Coupon(BaseModel):
    class DiscountType(models.TextChoices):
        PERCENTAGE = "percentage", "Percentage"
        FIXED_AMOUNT = "fixed_amount", "Fixed amount"
        FREE_MONTHS = "free_months", "Free months"
        TRIAL_EXTENSION = "trial_extension", "Trial extension (days)"

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        DISABLED = "disabled", "Disabled"

    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="coupons")
    code = models.CharField(max_length=50)
    description = models.TextField(blank=True, null=True)
    discount_type = models.CharField(max_length=20, choices=DiscountType.choices)
    discount_value = models.PositiveIntegerField(default=0)
    applicable_plan_ids = models.JSONField(default=list, blank=True)  # [] -> every plan
    max_redemptions = models.PositiveIntegerField(blank=True, null=True)
    redemption_count = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    expires_at = models.DateTimeField(blank=True, null=True)

    objects = CouponQuerySet.as_manager()

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "code"], name="uniq_coupon_code_per_tenant"),
            models.CheckConstraint(
                condition=Q(max_redemptions__isnull=True) | Q(redemption_count__lte=F("max_redemptions")),
                name="coupon_redemptions_within_limit",
            ),
        ]
        indexes = [models.Index(fields=["tenant", "status"])]

    def save(self, *args, **kwargs):
        self.code = normalize_code(self.code)
        super().save(*args, **kwargs)

    def __str__(self):
        return self.code

    def is_expired(self, now=None) -> bool:
        return bool(self.expires_at and self.expires_at <= (now or timezone.now()))

    def is_exhausted(self) -> bool:
        return self.max_redemptions is not None and self.redemption_count >= self.max_redemptions

    def applies_to(self, plan_id) -> bool:
        allowed = [str(p) for p in (self.applicable_plan_ids or [])]
        return not allowed or str(plan_id) in allowed

    def actual_status(self, now=None) -> str:
        if self.status == self.Status.ACTIVE and (self.is_expired(now) or self.is_exhausted()):
            return "expired"
        return self.status


class Subscription(BaseModel):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        TRIAL = "trial", "Trial"
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past due"
        PAUSED = "paused", "Paused"
        CANCELED = "canceled", "Canceled"

    class BillingCycle(models.TextChoices):
        MONTHLY = "monthly", "Monthly"
        YEARLY = "yearly", "Yearly"

    TRANSITIONS = {
        Status.DRAFT: {Status.ACTIVE, Status.CANCELED},
        Status.TRIAL: {Status.ACTIVE, Status.PAST_DUE, Status.CANCELED},
        Status.ACTIVE: {Status.PAST_DUE, Status.PAUSED, Status.CANCELED},
        Status.PAST_DUE: {Status.ACTIVE, Status.CANCELED},
        Status.PAUSED: {Status.ACTIVE, Status.CANCELED},
        Status.CANCELED: set(),
    }

    tenant = models.ForeignKey(
        "platformapp.Tenant",
        on_delete=models.CASCADE,
        related_name="billing_subscriptions",
        related_query_name="billing_subscription",
    )
    customer = models.ForeignKey("crm.Customer", on_delete=models.PROTECT, related_name="subscriptions")
    plan = models.ForeignKey("billing.Plan", on_delete=models.PROTECT, related_name="subscriptions")
    number = models.CharField(max_length=32)  # SUB-1000
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT)
    billing_cycle = models.CharField(max_length=16, choices=BillingCycle.choices, default=BillingCycle.MONTHLY)
    seats = models.PositiveIntegerField(default=1)
    mrr = models.PositiveBigIntegerField(default=0)  # net, minor units
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()
    coupon = models.ForeignKey("billing.Coupon", on_delete=models.SET_NULL, blank=True, null=True,
                               related_name="subscriptions")
    linked_deal = models.ForeignKey("crm.Opportunity", on_delete=models.SET_NULL, blank=True, null=True,
                                    related_name="subscriptions")
    notes = models.TextField(blank=True, null=True)
    canceled_at = models.DateTimeField(blank=True, null=True)
    request_key = models.CharField(max_length=100, blank=True, null=True)  # Idempotency-Key of the creating call

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "number"], name="uniq_subscription_number_per_tenant"),
            models.UniqueConstraint(
                fields=["customer"], condition=Q(status="active"), name="uniq_active_subscription_per_customer"
            ),
            models.UniqueConstraint(
                fields=["tenant", "request_key"], condition=Q(request_key__isnull=False),
                name="uniq_subscription_request_key",
            ),
            models.CheckConstraint(condition=Q(seats__gte=1), name="subscription_seats_positive"),
        ]
        indexes = [
            models.Index(fields=["tenant", "status"]),
            models.Index(fields=["tenant", "-created_at"]),
        ]

    def __str__(self):
        return self.number

    def can_transition_to(self, target) -> bool:
        return target in self.TRANSITIONS.get(self.status, set())


class ActivityImmutable(Exception):
    pass


class ActivityQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise ActivityImmutable("Subscription activity is append-only")

    def delete(self):
        raise ActivityImmutable("Subscription activity is append-only")


class SubscriptionActivity(models.Model):
    """
    Append-only audit trail of a subscription. Rows are written once through
    `billing.activity.record` and never updated or deleted.
    """
    class Kind(models.TextChoices):
        CREATED = "created"
        COUPON_APPLIED = "coupon_applied"
        INVOICE_CREATED = "invoice_created"
        INVOICE_PAID = "invoice_paid"
        ACTIVATED = "activated"
        PAUSED = "paused"
        RESUMED = "resumed"
        PAST_DUE = "past_due"
        CANCELED = "canceled"
        STATUS_CHANGED = "status_changed"
        SEAT_ADDED = "seat_added"
        SEAT_REMOVED = "seat_removed"
        PLAN_CHANGED = "plan_changed"
        NOTES_UPDATED = "notes_updated"
        MRR_RECALCULATED = "mrr_recalculated"

    id = models.BigAutoField(primary_key=True)
    subscription = models.ForeignKey("billing.Subscription", on_delete=models.PROTECT, related_name="activities")
    activity_type = models.CharField(max_length=32, choices=Kind.choices)
    description = models.TextField()
    actor_user_id = models.CharField(max_length=64, blank=True, null=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    objects = ActivityQuerySet.as_manager()

    class Meta:
        ordering = ("-created_at", "-id")
        indexes = [models.Index(fields=["subscription", "-created_at"])]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ActivityImmutable("Subscription activity is append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ActivityImmutable("Subscription activity is append-only")
