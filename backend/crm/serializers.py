from rest_framework import serializers
from .models import Customer, Opportunity


# ---- List serializers (fast) ----
class CustomerListSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = ("id", "name", "email", "status", "subscription_plan", "subscription_status",
                  "created_at", "updated_at")


# ---- Detail serializers (write/read) ----
class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = "__all__"
        read_only_fields = ("tenant", "subscription_plan", "subscription_status", "created_at", "updated_at")

    def validate(self, attrs):
        kind = attrs.get("discount_type", getattr(self.instance, "discount_type", None))
        value = attrs.get("discount_value", getattr(self.instance, "discount_value", 0))
        if kind == Customer.DiscountType.PERCENTAGE and value > 100:
            raise serializers.ValidationError({"discount_value": "Percentage discount cannot exceed 100"})
        if not kind:
            attrs["discount_value"] = 0
        return attrs


class OpportunitySerializer(serializers.ModelSerializer):
    class Meta:
        model = Opportunity
        fields = "__all__"
        read_only_fields = ("tenant", "created_at", "updated_at")

    def validate_customer(self, customer):
        tenant = self.context.get("tenant")
        if customer is not None and tenant is not None and customer.tenant_id != tenant.id:
            raise serializers.ValidationError("Customer not found")
        return customer
