import pytest
from dateutil.relativedelta import relativedelta
from django.utils import timezone

from billing import activity, subscriptions
from billing.models import ActivityImmutable, Coupon, Subscription, SubscriptionActivity
from billing.subscriptions import create_subscription, recalculate, update_subscription
from common.exceptions import ActiveSubscriptionConflict, EntityNotFound, IllegalTransition, InvalidRequest
from invoicing.models import Invoice

pytestmark = pytest.mark.django_db

URL = "/api/v1/billing/subscription"


def _create(api_client, **body):
    return api_client.post(URL, body, format="json")


# ---- Creation ----

def test_draft_creation_issues_first_invoice(api_client, customer, plan, make_coupon):
    coupon = make_coupon(code="SAVE20")
    resp = _create(api_client, customer=str(customer.pk), plan=str(plan.pk), coupon_code="save20")
    assert resp.status_code == 201, resp.content
    body = resp.json()

    sub = body["subscription"]
    assert sub["number"] == "SUB-1000"
    assert sub["status"] == "draft"
    assert sub["mrr"] == 7920
    assert sub["coupon_code"] == "SAVE20"

    invoice = body["invoice"]
    assert invoice["number"] == "INV-ACME-1001"
    assert invoice["status"] == "draft"
    assert [(li["description"], li["total"]) for li in invoice["line_items"]] == [
        ("Pro (monthly)", 9900),
        ("Coupon SAVE20", -1980),
    ]
    assert invoice["subtotal"] == 7920
    assert invoice["total"] == 7920
    assert body["document"]["rendered"] is True

    coupon.refresh_from_db()
    assert coupon.redemption_count == 1
    customer.refresh_from_db()
    assert customer.subscription_plan == "Pro"
    assert customer.subscription_status == "draft"

    kinds = [a.activity_type for a in activity.timeline(Subscription.objects.get(pk=sub["id"]))]
    assert kinds == ["invoice_created", "coupon_applied", "created"]


def test_yearly_invoice_with_both_discounts(api_client, customer, plan, make_coupon):
    customer.discount_type = "percentage"
    customer.discount_value = 10
    customer.save()
    make_coupon(code="SAVE20")

    resp = _create(api_client, customer=str(customer.pk), plan=str(plan.pk),
                   billing_cycle="yearly", coupon_code="SAVE20", tax=500)
    assert resp.status_code == 201, resp.content
    body = resp.json()
    assert body["subscription"]["mrr"] == 6930

    lines = [li["total"] for li in body["invoice"]["line_items"]]
    assert lines == [118800, -11880, -23760]
    assert body["invoice"]["subtotal"] == 6930 * 12
    assert body["invoice"]["total"] == 6930 * 12 + 500


def test_additional_seats_get_their_own_line(api_client, customer, seat_plan):
    resp = _create(api_client, customer=str(customer.pk), plan=str(seat_plan.pk), seats=3)
    assert resp.status_code == 201, resp.content
    lines = resp.json()["invoice"]["line_items"]
    assert [(li["quantity"], li["unit_price"], li["total"]) for li in lines] == [(1, 6000, 6000), (2, 1000, 2000)]
    assert resp.json()["subscription"]["mrr"] == 8000


def test_legacy_trial_creation_has_no_invoice(api_client, customer, plan):
    resp = _create(api_client, customer=str(customer.pk), plan=str(plan.pk), status="trial")
    assert resp.status_code == 201
    assert "invoice" not in resp.json()
    assert Invoice.objects.count() == 0
    customer.refresh_from_db()
    assert customer.subscription_status == "trialing"


def test_second_active_subscription_is_a_conflict(api_client, customer, plan):
    first = _create(api_client, customer=str(customer.pk), plan=str(plan.pk), status="active")
    assert first.status_code == 201

    resp = _create(api_client, customer=str(customer.pk), plan=str(plan.pk), status="active")
    assert resp.status_code == 409
    assert resp.json() == {
        "error": "Customer already has an active subscription",
        "existing_subscription_number": "SUB-1000",
    }
    assert Subscription.objects.filter(customer=customer).count() == 1


def test_idempotency_key_replays_the_first_result(api_client, customer, plan, make_coupon):
    coupon = make_coupon(code="ONCE", max_redemptions=5)
    body = {"customer": str(customer.pk), "plan": str(plan.pk), "coupon_code": "ONCE"}

    first = api_client.post(URL, body, format="json", HTTP_IDEMPOTENCY_KEY="req-1")
    second = api_client.post(URL, body, format="json", HTTP_IDEMPOTENCY_KEY="req-1")
    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["subscription"]["id"] == first.json()["subscription"]["id"]
    assert second.json()["invoice"]["number"] == first.json()["invoice"]["number"]

    assert Subscription.objects.count() == 1
    assert Invoice.objects.count() == 1
    coupon.refresh_from_db()
    assert coupon.redemption_count == 1


def test_rejected_coupon_creates_nothing(api_client, customer, plan, seat_plan, make_coupon):
    make_coupon(code="TEAMONLY", applicable_plan_ids=[str(seat_plan.pk)])
    resp = _create(api_client, customer=str(customer.pk), plan=str(plan.pk), coupon_code="TEAMONLY")
    assert resp.status_code == 400
    assert resp.json()["reason"] == "not_applicable"
    assert Subscription.objects.count() == 0

    missing = _create(api_client, customer=str(customer.pk), plan=str(plan.pk), coupon_code="NOPE")
    assert missing.status_code == 404
    assert missing.json()["error"] == "Coupon not found"


def test_unknown_customer_or_plan(api_client, customer, plan, other_tenant):
    from crm.models import Customer

    foreign = Customer.objects.create(tenant=other_tenant, name="Elsewhere")
    resp = _create(api_client, customer=str(foreign.pk), plan=str(plan.pk))
    assert resp.status_code == 404
    assert resp.json()["error"] == "Customer not found"

    resp = _create(api_client, customer=str(customer.pk), plan="not-a-uuid")
    assert resp.status_code == 404
    assert resp.json()["error"] == "Plan not found"


def test_invalid_seats_rejected_by_service(tenant, customer, plan):
    with pytest.raises(InvalidRequest):
        create_subscription(tenant, customer_id=customer.pk, plan_id=plan.pk, seats=0)
    with pytest.raises(EntityNotFound):
        create_subscription(tenant, customer_id=customer.pk, plan_id=plan.pk, coupon_id=customer.pk)


def test_free_months_coupon_extends_the_period(tenant, customer, plan, make_coupon):
    coupon = make_coupon(code="FREE2", discount_type=Coupon.DiscountType.FREE_MONTHS, discount_value=2)
    now = timezone.now()
    result = create_subscription(tenant, customer_id=customer.pk, plan_id=plan.pk, coupon_id=coupon.pk, now=now)
    assert result.subscription.current_period_end == now + relativedelta(months=1) + relativedelta(months=2)
    assert result.subscription.mrr == 9900


# ---- Lifecycle ----

@pytest.fixture
def active_sub(tenant, customer, plan):
    return create_subscription(tenant, customer_id=customer.pk, plan_id=plan.pk, status="active").subscription


def test_illegal_transition_is_rejected(api_client, tenant, customer, plan):
    draft = create_subscription(tenant, customer_id=customer.pk, plan_id=plan.pk).subscription
    resp = api_client.patch(f"{URL}/{draft.pk}", {"status": "paused"}, format="json")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Cannot change subscription status from draft to paused"


def test_pause_and_resume(api_client, active_sub, customer):
    resp = api_client.patch(f"{URL}/{active_sub.pk}", {"status": "paused"}, format="json")
    assert resp.status_code == 200
    assert resp.json()["changes"] == ["Status changed from active to paused"]
    customer.refresh_from_db()
    assert customer.subscription_status == "paused"

    api_client.patch(f"{URL}/{active_sub.pk}", {"status": "active"}, format="json")
    kinds = [a.activity_type for a in activity.timeline(active_sub)]
    assert kinds[:2] == ["resumed", "paused"]


def test_update_reports_each_change(api_client, active_sub, seat_plan):
    resp = api_client.patch(f"{URL}/{active_sub.pk}",
                            {"seats": 3, "plan": str(seat_plan.pk), "notes": "Renewal call in May"}, format="json")
    assert resp.status_code == 200, resp.content
    body = resp.json()
    assert body["changes"] == [
        "Seats increased from 1 to 3",
        "Plan changed from Pro to Team",
        "Notes updated",
    ]
    assert body["subscription"]["seats"] == 3
    assert body["subscription"]["plan_name"] == "Team"
    # MRR is only reconciled on request
    assert body["subscription"]["mrr"] == 9900

    noop = api_client.patch(f"{URL}/{active_sub.pk}", {"seats": 3}, format="json")
    assert noop.json()["changes"] == []
    assert noop.json()["message"] == "No changes applied"


def test_recalculate_after_seat_change(api_client, active_sub, seat_plan):
    update_subscription(active_sub, {"plan": str(seat_plan.pk), "seats": 3})
    resp = api_client.post(f"{URL}/{active_sub.pk}/recalculate")
    assert resp.status_code == 200
    assert resp.json()["subscription"]["mrr"] == 8000

    entry = activity.timeline(active_sub)[0]
    assert entry.activity_type == "mrr_recalculated"
    assert entry.metadata["previousMRR"] == 9900
    assert entry.metadata["finalMRR"] == 8000


def test_cancel_then_cancel_again(api_client, active_sub, customer):
    resp = api_client.delete(f"{URL}/{active_sub.pk}")
    assert resp.status_code == 200
    assert resp.json()["message"] == "Subscription canceled successfully"
    active_sub.refresh_from_db()
    assert active_sub.status == "canceled"
    assert active_sub.canceled_at is not None
    customer.refresh_from_db()
    assert customer.subscription_status == "canceled"

    again = api_client.delete(f"{URL}/{active_sub.pk}")
    assert again.status_code == 400
    assert again.json()["error"] == "Subscription is already canceled"


def test_canceled_customer_can_subscribe_again(tenant, customer, plan, active_sub):
    update_subscription(active_sub, {"status": "canceled"})
    again = create_subscription(tenant, customer_id=customer.pk, plan_id=plan.pk, status="active")
    assert again.subscription.number == "SUB-1001"


def test_reactivating_a_paused_sub_with_another_active_is_a_conflict(tenant, customer, plan, active_sub):
    update_subscription(active_sub, {"status": "paused"})
    create_subscription(tenant, customer_id=customer.pk, plan_id=plan.pk, status="active")
    with pytest.raises(ActiveSubscriptionConflict):
        update_subscription(active_sub, {"status": "active"})
    with pytest.raises(IllegalTransition):
        update_subscription(active_sub, {"status": "draft"})


def test_customer_label_follows_the_active_subscription(tenant, customer, seat_plan, active_sub):
    update_subscription(active_sub, {"status": "paused"})
    create_subscription(tenant, customer_id=customer.pk, plan_id=seat_plan.pk, status="active")

    update_subscription(active_sub, {"status": "canceled"})
    customer.refresh_from_db()
    assert customer.subscription_status == "active"
    assert customer.subscription_plan == "Team"


def test_canceled_subscription_rejects_changes(api_client, active_sub, customer, seat_plan):
    api_client.delete(f"{URL}/{active_sub.pk}")

    resp = api_client.patch(f"{URL}/{active_sub.pk}", {"seats": 3, "plan": str(seat_plan.pk)}, format="json")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Canceled subscriptions cannot be changed"

    active_sub.refresh_from_db()
    assert active_sub.seats == 1
    assert active_sub.plan_id != seat_plan.pk
    customer.refresh_from_db()
    assert customer.subscription_plan == "Pro"
    assert customer.subscription_status == "canceled"
    with pytest.raises(IllegalTransition):
        update_subscription(active_sub, {"notes": "late note"})


@pytest.fixture
def unguarded(monkeypatch):
    """Skip the application-level check so only the unique index stands in the way."""
    monkeypatch.setattr(subscriptions, "_ensure_no_other_active", lambda *args, **kwargs: None)


def test_unique_index_conflict_on_reactivation_is_a_409(api_client, tenant, customer, plan, active_sub, unguarded):
    update_subscription(active_sub, {"status": "paused"})
    other = create_subscription(tenant, customer_id=customer.pk, plan_id=plan.pk, status="active").subscription

    resp = api_client.patch(f"{URL}/{active_sub.pk}", {"status": "active"}, format="json")
    assert resp.status_code == 409
    assert resp.json()["existing_subscription_number"] == other.number
    active_sub.refresh_from_db()
    assert active_sub.status == "paused"


def test_unique_index_conflict_on_creation_is_a_409(api_client, customer, plan, active_sub, unguarded):
    resp = _create(api_client, customer=str(customer.pk), plan=str(plan.pk), status="active")
    assert resp.status_code == 409
    assert resp.json()["existing_subscription_number"] == active_sub.number
    assert Subscription.objects.filter(customer=customer).count() == 1


# ---- Activity trail ----

def test_activity_timeline_endpoints(api_client, active_sub):
    for seats in range(2, 25):
        update_subscription(active_sub, {"seats": seats})

    detail = api_client.get(f"{URL}/{active_sub.pk}").json()
    assert len(detail["activities"]) == 20
    assert detail["activities"][0]["description"] == "Seats increased from 23 to 24"

    full = api_client.get(f"{URL}/{active_sub.pk}/activities").json()
    assert len(full) == 24
    assert full[-1]["activity_type"] == "created"


def test_activity_is_append_only(active_sub):
    entry = SubscriptionActivity.objects.filter(subscription=active_sub).first()
    with pytest.raises(ActivityImmutable):
        entry.save()
    with pytest.raises(ActivityImmutable):
        entry.delete()
    with pytest.raises(ActivityImmutable):
        SubscriptionActivity.objects.filter(subscription=active_sub).update(description="x")
    with pytest.raises(ActivityImmutable):
        SubscriptionActivity.objects.filter(subscription=active_sub).delete()


def test_activity_metadata_is_redacted(active_sub):
    entry = activity.record(active_sub, "notes_updated", "x", metadata={"token": "abc", "nested": {"card": "4242"}})
    assert entry.metadata == {"token": "***", "nested": {"card": "***"}}


def test_recalculate_service_keeps_coupon_without_redeeming(tenant, customer, plan, make_coupon):
    coupon = make_coupon(code="SAVE20")
    sub = create_subscription(tenant, customer_id=customer.pk, plan_id=plan.pk, coupon_code="SAVE20",
                              status="active").subscription
    recalculate(sub)
    coupon.refresh_from_db()
    assert coupon.redemption_count == 1
    assert sub.mrr == 7920


def test_list_requires_tenant(user, tenant):
    from rest_framework.test import APIClient

    client = APIClient()
    client.force_authenticate(user=user)
    assert client.get(URL).status_code == 403

    client.credentials(HTTP_X_TENANT_ID="no-such-org")
    resp = client.get(URL)
    assert resp.status_code == 404
    assert resp.json()["error"] == "Organization not found"
