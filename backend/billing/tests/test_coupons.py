from datetime import timedelta

import pytest
from django.utils import timezone

from billing import coupons
from billing.models import Coupon

pytestmark = pytest.mark.django_db


def test_validation_reasons_in_order(make_coupon, plan, seat_plan):
    now = timezone.now()
    assert coupons.validate(None).reason == coupons.NOT_FOUND

    disabled = make_coupon(code="OFF", status=Coupon.Status.DISABLED, expires_at=now - timedelta(days=1))
    assert coupons.validate(disabled, now=now).reason == coupons.INACTIVE

    expired = make_coupon(code="OLD", expires_at=now - timedelta(seconds=1), max_redemptions=1, redemption_count=1)
    assert coupons.validate(expired, now=now).reason == coupons.EXPIRED

    used_up = make_coupon(code="USED", max_redemptions=2, redemption_count=2)
    assert coupons.validate(used_up, now=now).reason == coupons.EXHAUSTED

    scoped = make_coupon(code="PROONLY", applicable_plan_ids=[str(plan.pk)])
    check = coupons.validate(scoped, seat_plan.pk, now=now)
    assert not check.valid
    assert check.reason == coupons.NOT_APPLICABLE
    assert check.error == "This coupon does not apply to the selected plan"
    assert coupons.validate(scoped, plan.pk, now=now).valid
    # no plan given: the allow-list is not consulted
    assert coupons.validate(scoped, now=now).valid


def test_find_coupon_is_case_insensitive(tenant, make_coupon):
    coupon = make_coupon(code=" save20 ")
    assert coupon.code == "SAVE20"
    assert coupons.find_coupon(tenant, "Save20") == coupon
    assert coupons.find_coupon(tenant, "") is None


def test_redeem_increments_counter(make_coupon, plan):
    coupon = make_coupon(max_redemptions=3)
    coupons.redeem(coupon, plan.pk)
    coupon.refresh_from_db()
    assert coupon.redemption_count == 1


def test_last_slot_goes_to_exactly_one_redeemer(make_coupon, plan):
    coupon = make_coupon(max_redemptions=1)
    first = Coupon.objects.get(pk=coupon.pk)
    second = Coupon.objects.get(pk=coupon.pk)  # stale copy, still sees 0 redemptions

    coupons.redeem(first, plan.pk)
    with pytest.raises(coupons.CouponRejected) as err:
        coupons.redeem(second, plan.pk)
    assert err.value.reason == coupons.EXHAUSTED

    coupon.refresh_from_db()
    assert coupon.redemption_count == 1


def test_rejected_redemption_leaves_counter_alone(make_coupon, plan):
    coupon = make_coupon(expires_at=timezone.now() - timedelta(days=1))
    with pytest.raises(coupons.CouponRejected):
        coupons.redeem(coupon, plan.pk)
    coupon.refresh_from_db()
    assert coupon.redemption_count == 0


def test_actual_status(make_coupon):
    assert make_coupon(code="A").actual_status() == "active"
    assert make_coupon(code="B", max_redemptions=1, redemption_count=1).actual_status() == "expired"
    assert make_coupon(code="C", status=Coupon.Status.DISABLED).actual_status() == "disabled"


def test_generate_code_uses_unambiguous_alphabet(tenant):
    code = coupons.generate_code(tenant)
    assert len(code) == coupons.CODE_LENGTH
    assert set(code) <= set(coupons.CODE_ALPHABET)


# ---- API ----

def test_create_coupon_generates_code(api_client):
    resp = api_client.post("/api/v1/billing/coupon", {
        "discount_type": "percentage", "discount_value": 25,
    }, format="json")
    assert resp.status_code == 201, resp.content
    body = resp.json()
    assert len(body["code"]) == coupons.CODE_LENGTH
    assert body["actual_status"] == "active"
    assert body["redemption_count"] == 0


def test_duplicate_code_is_rejected(api_client, make_coupon):
    make_coupon(code="LAUNCH")
    resp = api_client.post("/api/v1/billing/coupon", {
        "code": "launch", "discount_type": "fixed_amount", "discount_value": 500,
    }, format="json")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Coupon code already exists"


def test_percentage_over_100_is_rejected(api_client):
    resp = api_client.post("/api/v1/billing/coupon", {
        "code": "HUGE", "discount_type": "percentage", "discount_value": 150,
    }, format="json")
    assert resp.status_code == 400
    assert resp.json()["field"] == "discount_value"


def test_unknown_plan_in_allow_list_is_rejected(api_client, other_tenant):
    from billing.models import Plan

    foreign = Plan.objects.create(tenant=other_tenant, code="x", name="X")
    resp = api_client.post("/api/v1/billing/coupon", {
        "code": "SCOPED", "discount_type": "percentage", "discount_value": 10,
        "applicable_plan_ids": [str(foreign.pk)],
    }, format="json")
    assert resp.status_code == 400
    assert resp.json()["field"] == "applicable_plan_ids"


def test_delete_disables(api_client, make_coupon):
    coupon = make_coupon()
    resp = api_client.delete(f"/api/v1/billing/coupon/{coupon.pk}")
    assert resp.status_code == 200
    assert resp.json()["message"] == "Coupon disabled successfully"
    coupon.refresh_from_db()
    assert coupon.status == Coupon.Status.DISABLED


def test_filter_by_actual_status(api_client, make_coupon):
    make_coupon(code="LIVE")
    make_coupon(code="GONE", expires_at=timezone.now() - timedelta(days=1))
    resp = api_client.get("/api/v1/billing/coupon", {"actual_status": "expired"})
    assert [c["code"] for c in resp.json()["results"]] == ["GONE"]


def test_validate_endpoint(api_client, make_coupon, plan, seat_plan):
    make_coupon(code="PROONLY", applicable_plan_ids=[str(plan.pk)])

    ok = api_client.post("/api/v1/billing/coupon/validate", {"code": "proonly", "plan": str(plan.pk)}, format="json")
    assert ok.status_code == 200
    assert ok.json()["valid"] is True
    assert ok.json()["coupon"]["code"] == "PROONLY"

    wrong_plan = api_client.post("/api/v1/billing/coupon/validate",
                                 {"code": "PROONLY", "plan": str(seat_plan.pk)}, format="json")
    assert wrong_plan.status_code == 200
    assert wrong_plan.json() == {
        "valid": False, "error": "This coupon does not apply to the selected plan", "reason": "not_applicable",
    }

    missing = api_client.post("/api/v1/billing/coupon/validate", {"code": "NOPE"}, format="json")
    assert missing.json()["reason"] == "not_found"

    blank = api_client.post("/api/v1/billing/coupon/validate", {"code": "  "}, format="json")
    assert blank.status_code == 400
    assert blank.json()["error"] == "Coupon code is required"


def test_coupons_are_tenant_scoped(api_client, other_tenant):
    Coupon.objects.create(tenant=other_tenant, code="THEIRS", discount_type="percentage", discount_value=5)
    resp = api_client.get("/api/v1/billing/coupon")
    assert resp.json()["results"] == []
