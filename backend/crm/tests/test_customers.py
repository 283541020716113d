import pytest

from crm.models import Customer

pytestmark = pytest.mark.django_db

URL = "/api/v1/crm/customer/"


def test_create_customer_with_account_discount(api_client, tenant):
    resp = api_client.post(URL, {
        "name": "Hooli", "email": "ap@hooli.test",
        "discount_type": "percentage", "discount_value": 15, "discount_notes": "Partner rate",
    }, format="json")
    assert resp.status_code == 201, resp.content
    customer = Customer.objects.get(pk=resp.json()["id"])
    assert customer.tenant == tenant
    assert customer.discount_value == 15


def test_percentage_discount_is_capped(api_client):
    resp = api_client.post(URL, {"name": "Hooli", "discount_type": "percentage", "discount_value": 120},
                           format="json")
    assert resp.status_code == 400
    assert resp.json()["error"] == "discount_value: Percentage discount cannot exceed 100"


def test_subscription_labels_are_read_only(api_client, customer):
    resp = api_client.patch(f"{URL}{customer.pk}/", {"subscription_status": "active"}, format="json")
    assert resp.status_code == 200
    customer.refresh_from_db()
    assert customer.subscription_status is None


def test_customers_are_tenant_scoped(api_client, customer, other_tenant):
    Customer.objects.create(tenant=other_tenant, name="Elsewhere")
    names = [c["name"] for c in api_client.get(URL).json()["results"]]
    assert names == ["Initech"]
