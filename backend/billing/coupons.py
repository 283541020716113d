from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Optional

from django.db.models import F
from django.utils import timezone

from common.exceptions import InvalidRequest

from .models import Coupon, Plan, normalize_code

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I
CODE_LENGTH = 8
CODE_ATTEMPTS = 10

NOT_FOUND = "not_found"
INACTIVE = "inactive"
EXPIRED = "expired"
EXHAUSTED = "exhausted"
NOT_APPLICABLE = "not_applicable"

MESSAGES = {
    NOT_FOUND: "Coupon code not found",
    INACTIVE: "This coupon is no longer active",
    EXPIRED: "This coupon has expired",
    EXHAUSTED: "This coupon has reached its maximum number of redemptions",
    NOT_APPLICABLE: "This coupon does not apply to the selected plan",
}


class CouponRejected(Exception):
    """A coupon that cannot be applied. A business outcome, not a fault."""

    def __init__(self, reason: str):
        super().__init__(MESSAGES[reason])
        self.reason = reason
        self.message = MESSAGES[reason]


@dataclass(frozen=True)
class CouponCheck:
    valid: bool
    coupon: Optional[Coupon] = None
    reason: Optional[str] = None

    @property
    def error(self) -> Optional[str]:
        return MESSAGES.get(self.reason) if self.reason else None


def find_coupon(tenant, code) -> Optional[Coupon]:
    code = normalize_code(code)
    if not code:
        return None
    return Coupon.objects.filter(tenant=tenant, code=code).first()


def validate(coupon: Optional[Coupon], plan_id=None, now=None) -> CouponCheck:
    """
    Eligibility only, no writes. Reasons are checked in a fixed order:
    not found, inactive, expired, exhausted, not applicable to the plan.
    Without a plan id the plan allow-list is not consulted.
    """
    now = now or timezone.now()
    if coupon is None:
        return CouponCheck(False, reason=NOT_FOUND)
    if coupon.status != Coupon.Status.ACTIVE:
        return CouponCheck(False, coupon, INACTIVE)
    if coupon.is_expired(now):
        return CouponCheck(False, coupon, EXPIRED)
    if coupon.is_exhausted():
        return CouponCheck(False, coupon, EXHAUSTED)
    if plan_id is not None and not coupon.applies_to(plan_id):
        return CouponCheck(False, coupon, NOT_APPLICABLE)
    return CouponCheck(True, coupon)


def redeem(coupon: Optional[Coupon], plan_id, now=None) -> Coupon:
    """
    Validate and consume one redemption.

    The increment is a single conditional UPDATE, so concurrent redemptions of
    the last slot cannot both succeed and the counter never passes
    `max_redemptions`. Must run inside the caller's transaction.
    """
    now = now or timezone.now()
    check = validate(coupon, plan_id, now)
    if not check.valid:
        raise CouponRejected(check.reason)

    updated = (
        Coupon.objects.redeemable(now)
        .filter(pk=coupon.pk)
        .update(redemption_count=F("redemption_count") + 1, updated_at=now)
    )
    if not updated:
        coupon.refresh_from_db()
        check = validate(coupon, plan_id, now)
        raise CouponRejected(EXHAUSTED if check.valid else check.reason)

    coupon.refresh_from_db(fields=["redemption_count", "updated_at"])
    logger.info("Coupon %s redeemed (%s/%s)", coupon.code, coupon.redemption_count,
                coupon.max_redemptions if coupon.max_redemptions is not None else "unlimited")
    return coupon


def generate_code(tenant) -> str:
    for _ in range(CODE_ATTEMPTS):
        code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
        if not Coupon.objects.filter(tenant=tenant, code=code).exists():
            return code
    raise InvalidRequest("Failed to generate a unique coupon code", field="code")


def validate_plan_ids(tenant, plan_ids) -> list:
    """Allow-list entries must be plans of the tenant; returns them as strings."""
    ids = []
    for raw in plan_ids or []:
        try:
            ids.append(str(uuid.UUID(str(raw))))
        except ValueError:
            raise InvalidRequest(f"Invalid plan id: {raw}", field="applicable_plan_ids")
    if not ids:
        return []
    known = {str(pk) for pk in Plan.objects.filter(tenant=tenant, pk__in=ids).values_list("pk", flat=True)}
    missing = [p for p in ids if p not in known]
    if missing:
        raise InvalidRequest(f"Unknown plan ids: {', '.join(missing)}", field="applicable_plan_ids")
    return ids
