from django.db import models
from common.models import BaseModel


class Customer(BaseModel):
    """
    Billing customer (an organization buying the vendor's plans). Private.

    Carries at most one account discount (the `discount_*` columns) and the
    denormalized subscription labels shown in customer lists.
    """
    class DiscountType(models.TextChoices):
        PERCENTAGE = "percentage", "Percentage"
        FIXED_AMOUNT = "fixed_amount", "Fixed amount"

    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="customers")

    # identity
    type = models.CharField(max_length=20, default="company")  # person|company
    name = models.CharField(max_length=200)
    domain = models.CharField(max_length=200, blank=True, null=True)

    # contact / billing
    email = models.EmailField(blank=True, null=True)
    phone = models.CharField(max_length=32, blank=True, null=True)
    billing_address = models.TextField(blank=True, null=True)

    # lifecycle
    status = models.CharField(max_length=24, default="active")  # active|inactive|churned
    tags = models.JSONField(default=list, blank=True)

    # account discount
    discount_type = models.CharField(max_length=20, choices=DiscountType.choices, blank=True, null=True)
    discount_value = models.PositiveIntegerField(default=0)  # percent, or minor units
    discount_is_recurring = models.BooleanField(default=True)
    discount_notes = models.TextField(blank=True, null=True)

    # denormalized from billing
    subscription_plan = models.CharField(max_length=100, blank=True, null=True)
    subscription_status = models.CharField(max_length=20, blank=True, null=True)

    meta_json = models.JSONField(default=dict, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "email"]),
            models.Index(fields=["tenant", "status"]),
            models.Index(fields=["tenant", "-created_at"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(discount_type="percentage") | models.Q(discount_value__lte=100),
                name="customer_discount_percentage_range",
            ),
        ]

    def __str__(self):
        return self.name


class Opportunity(BaseModel):
    """
    Deal / opportunity. Subscriptions may point at the deal that produced them.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="opportunities")
    customer = models.ForeignKey("crm.Customer", on_delete=models.SET_NULL, null=True, blank=True, related_name="opportunities")

    name = models.CharField(max_length=200)
    amount = models.BigIntegerField(default=0)  # minor units
    currency = models.CharField(max_length=3, default="USD")
    stage = models.CharField(max_length=32, default="new")  # new|qualified|proposal|won|lost
    probability = models.PositiveIntegerField(default=0)  # 0..100
    expected_close = models.DateField(blank=True, null=True)
    owner_user_id = models.CharField(max_length=64, blank=True, null=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "stage"]),
            models.Index(fields=["tenant", "-created_at"]),
        ]

    def __str__(self):
        return self.name
