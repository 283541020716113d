import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from billing.models import Coupon, Plan, Price
from crm.models import Customer
from platformapp.models import Tenant


@pytest.fixture
def tenant(db):
    return Tenant.objects.create(slug="acme", name="Acme Ops")


@pytest.fixture
def other_tenant(db):
    return Tenant.objects.create(slug="globex", name="Globex")


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(username="ops", password="x")


@pytest.fixture
def api_client(user, tenant):
    client = APIClient()
    client.force_authenticate(user=user)
    client.credentials(HTTP_X_TENANT_ID=str(tenant.pk))
    return client


@pytest.fixture
def customer(tenant):
    return Customer.objects.create(tenant=tenant, name="Initech", email="billing@initech.test",
                                   billing_address="1 Main St")


@pytest.fixture
def plan(tenant):
    plan = Plan.objects.create(tenant=tenant, code="pro", name="Pro", pricing_model=Plan.PricingModel.PER_SEAT)
    Price.objects.create(plan=plan, interval=Price.Interval.MONTHLY, amount=9900)
    Price.objects.create(plan=plan, interval=Price.Interval.YEARLY, amount=118800)
    return plan


@pytest.fixture
def seat_plan(tenant):
    plan = Plan.objects.create(tenant=tenant, code="team", name="Team", pricing_model=Plan.PricingModel.PER_SEAT)
    Price.objects.create(plan=plan, interval=Price.Interval.MONTHLY, amount=5000, per_seat_amount=1000)
    return plan


@pytest.fixture
def make_coupon(tenant):
    def _make(code="SAVE20", discount_type=Coupon.DiscountType.PERCENTAGE, discount_value=20, **kwargs):
        return Coupon.objects.create(tenant=tenant, code=code, discount_type=discount_type,
                                     discount_value=discount_value, **kwargs)
    return _make
