from django.utils import timezone
from rest_framework import serializers

from common.exceptions import InvalidRequest

from . import activity
from .conf import billing_setting
from .coupons import generate_code, validate_plan_ids
from .models import Coupon, Plan, Price, Subscription, SubscriptionActivity, normalize_code


class PriceSerializer(serializers.ModelSerializer):
    class Meta:
        model = Price
        fields = ("id", "plan", "pricing_type", "interval", "currency", "amount", "per_seat_amount",
                  "created_at", "updated_at")
        read_only_fields = ("pricing_type", "created_at", "updated_at")

    def validate_plan(self, plan):
        tenant = self.context.get("tenant")
        if tenant is not None and plan.tenant_id != tenant.id:
            raise serializers.ValidationError("Plan not found")
        return plan


class PlanSerializer(serializers.ModelSerializer):
    prices = PriceSerializer(many=True, read_only=True)

    class Meta:
        model = Plan
        fields = ("id", "code", "name", "description", "status", "pricing_model", "features_json",
                  "prices", "created_at", "updated_at")
        read_only_fields = ("created_at", "updated_at")

    def validate_code(self, code):
        tenant = self.context.get("tenant")
        qs = Plan.objects.filter(tenant=tenant, code=code)
        if self.instance is not None:
            qs = qs.exclude(pk=self.instance.pk)
        if tenant is not None and qs.exists():
            raise serializers.ValidationError("Plan code already exists")
        return code


# ---- Coupons ----

class CouponSerializer(serializers.ModelSerializer):
    code = serializers.CharField(max_length=50, required=False, allow_blank=True)
    actual_status = serializers.SerializerMethodField()

    class Meta:
        model = Coupon
        fields = ("id", "code", "description", "discount_type", "discount_value", "applicable_plan_ids",
                  "max_redemptions", "redemption_count", "status", "actual_status", "expires_at",
                  "created_at", "updated_at")
        read_only_fields = ("redemption_count", "created_at", "updated_at")

    def get_actual_status(self, obj):
        return obj.actual_status(timezone.now())

    def validate_code(self, code):
        code = normalize_code(code)
        if not code:
            return code
        tenant = self.context.get("tenant")
        qs = Coupon.objects.filter(tenant=tenant, code=code)
        if self.instance is not None:
            qs = qs.exclude(pk=self.instance.pk)
        if qs.exists():
            raise InvalidRequest("Coupon code already exists", field="code")
        return code

    def validate_applicable_plan_ids(self, value):
        if not isinstance(value, list):
            raise serializers.ValidationError("Must be a list of plan ids")
        return validate_plan_ids(self.context.get("tenant"), value)

    def validate(self, attrs):
        kind = attrs.get("discount_type", getattr(self.instance, "discount_type", None))
        value = attrs.get("discount_value", getattr(self.instance, "discount_value", 0))
        if kind == Coupon.DiscountType.PERCENTAGE and value > 100:
            raise InvalidRequest("Percentage discount must be between 0 and 100", field="discount_value")
        max_redemptions = attrs.get("max_redemptions", getattr(self.instance, "max_redemptions", None))
        used = getattr(self.instance, "redemption_count", 0)
        if max_redemptions is not None and max_redemptions < used:
            raise InvalidRequest(f"Max redemptions cannot be below the {used} already used",
                                 field="max_redemptions")
        return attrs

    def create(self, validated_data):
        if not validated_data.get("code"):
            validated_data["code"] = generate_code(validated_data["tenant"])
        return super().create(validated_data)

    def update(self, instance, validated_data):
        if "code" in validated_data and not validated_data["code"]:
            validated_data.pop("code")
        return super().update(instance, validated_data)


class CouponValidateSerializer(serializers.Serializer):
    code = serializers.CharField(required=False, allow_blank=True)
    plan = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def validate_code(self, code):
        code = normalize_code(code)
        if not code:
            raise InvalidRequest("Coupon code is required", field="code")
        return code

    def validate(self, attrs):
        if not attrs.get("code"):
            raise InvalidRequest("Coupon code is required", field="code")
        return attrs


class CouponSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Coupon
        fields = ("id", "code", "discount_type", "discount_value", "expires_at")


# ---- Subscriptions ----

class SubscriptionActivitySerializer(serializers.ModelSerializer):
    class Meta:
        model = SubscriptionActivity
        fields = ("id", "activity_type", "description", "actor_user_id", "metadata", "created_at")
        read_only_fields = fields


class SubscriptionSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    plan_name = serializers.CharField(source="plan.name", read_only=True)
    coupon_code = serializers.CharField(source="coupon.code", read_only=True, default=None)

    class Meta:
        model = Subscription
        fields = ("id", "number", "customer", "customer_name", "plan", "plan_name", "status",
                  "billing_cycle", "seats", "mrr", "current_period_start", "current_period_end",
                  "coupon", "coupon_code", "linked_deal", "notes", "canceled_at", "created_at", "updated_at")
        read_only_fields = fields


class SubscriptionDetailSerializer(SubscriptionSerializer):
    activities = serializers.SerializerMethodField()

    class Meta(SubscriptionSerializer.Meta):
        fields = SubscriptionSerializer.Meta.fields + ("activities",)
        read_only_fields = fields

    def get_activities(self, obj):
        entries = activity.timeline(obj, billing_setting("ACTIVITY_TIMELINE_LIMIT"))
        return SubscriptionActivitySerializer(entries, many=True).data


class SubscriptionCreateSerializer(serializers.Serializer):
    customer = serializers.CharField()
    plan = serializers.CharField()
    billing_cycle = serializers.ChoiceField(choices=Subscription.BillingCycle.choices,
                                            default=Subscription.BillingCycle.MONTHLY)
    seats = serializers.IntegerField(default=1, min_value=1)
    coupon = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    coupon_code = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    linked_deal = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    status = serializers.ChoiceField(
        choices=[Subscription.Status.DRAFT, Subscription.Status.ACTIVE, Subscription.Status.TRIAL],
        default=Subscription.Status.DRAFT,
    )
    tax = serializers.IntegerField(default=0, min_value=0)


class SubscriptionUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Subscription.Status.choices, required=False)
    seats = serializers.IntegerField(required=False, min_value=1)
    plan = serializers.CharField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
