from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.filters import SearchFilter, OrderingFilter
from rest_framework.response import Response
from django_filters.rest_framework import DjangoFilterBackend

from common.mixins import TenantScopedModelViewSet
from common.permissions import PrivateTenantOnly
from invoicing.documents import render_document
from invoicing.serializers import InvoiceSerializer

from . import activity, coupons
from .models import Coupon, Plan, Price, Subscription
from .serializers import (
    CouponSerializer, CouponSummarySerializer, CouponValidateSerializer,
    PlanSerializer, PriceSerializer,
    SubscriptionActivitySerializer, SubscriptionCreateSerializer, SubscriptionDetailSerializer,
    SubscriptionSerializer, SubscriptionUpdateSerializer,
)
from .subscriptions import cancel_subscription, create_subscription, recalculate as recalculate_mrr, update_subscription


def _idempotency_key(request) -> str | None:
    return request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")


# ---------- Catalog ----------

class PlanViewSet(TenantScopedModelViewSet):
    queryset = Plan.objects.prefetch_related("prices")
    serializer_class = PlanSerializer
    permission_classes = [PrivateTenantOnly]
    filter_backends = [DjangoFilterBackend, SearchFilter]
    filterset_fields = {"code": ["exact"], "status": ["exact"], "pricing_model": ["exact"]}
    search_fields = ["name", "code"]
    default_ordering = ("name",)


class PriceViewSet(TenantScopedModelViewSet):
    queryset = Price.objects.select_related("plan")
    serializer_class = PriceSerializer
    permission_classes = [PrivateTenantOnly]
    tenant_field = "plan__tenant"
    filter_backends = [DjangoFilterBackend]
    filterset_fields = {"plan": ["exact"], "plan__code": ["exact"], "interval": ["exact"]}
    default_ordering = ("created_at",)

    def perform_create(self, serializer):
        serializer.save()


# ---------- Coupons ----------

class CouponViewSet(TenantScopedModelViewSet):
    """
    Coupon CRUD. DELETE only disables the coupon; redemption history stays.
    `actual_status=expired` lists active coupons that are past expiry or used up.
    """
    queryset = Coupon.objects.all()
    serializer_class = CouponSerializer
    permission_classes = [PrivateTenantOnly]
    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]
    filterset_fields = {"status": ["exact"], "discount_type": ["exact"]}
    search_fields = ["code", "description"]
    ordering_fields = ["created_at", "code", "expires_at", "redemption_count"]

    def get_queryset(self):
        qs = super().get_queryset()
        actual = self.request.query_params.get("actual_status")
        if actual == "expired":
            qs = qs.expired(timezone.now())
        elif actual == Coupon.Status.ACTIVE:
            qs = qs.redeemable(timezone.now())
        elif actual == Coupon.Status.DISABLED:
            qs = qs.filter(status=Coupon.Status.DISABLED)
        return qs

    def destroy(self, request, *args, **kwargs):
        coupon = self.get_object()
        coupon.status = Coupon.Status.DISABLED
        coupon.save(update_fields=["status", "updated_at"])
        return Response({"message": "Coupon disabled successfully"})

    @action(detail=False, methods=["POST"], url_path="validate")
    def validate_code(self, request):
        """
        Body: { code, plan? }. Always 200 with {valid, coupon?, error?, reason?};
        only a missing code is a 400.
        """
        body = CouponValidateSerializer(data=request.data)
        body.is_valid(raise_exception=True)
        plan_id = body.validated_data.get("plan") or None
        check = coupons.validate(coupons.find_coupon(self.get_tenant(), body.validated_data["code"]), plan_id)
        if check.valid:
            return Response({"valid": True, "coupon": CouponSummarySerializer(check.coupon).data})
        return Response({"valid": False, "error": check.error, "reason": check.reason})


# ---------- Subscriptions ----------

class SubscriptionViewSet(TenantScopedModelViewSet):
    """
    POST creates a draft subscription plus its first invoice (or, with
    status=active|trial, a legacy subscription without invoice).
    PUT/PATCH apply status/seats/plan/notes changes; DELETE cancels.
    """
    queryset = Subscription.objects.select_related("customer", "plan", "coupon")
    permission_classes = [PrivateTenantOnly]
    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]
    filterset_fields = {
        "status": ["exact", "in"],
        "customer": ["exact"],
        "plan": ["exact"],
        "plan__code": ["exact"],
        "billing_cycle": ["exact"],
    }
    search_fields = ["number", "notes", "customer__name"]
    ordering_fields = ["created_at", "mrr", "current_period_end", "number"]

    def get_serializer_class(self):
        if self.action == "retrieve":
            return SubscriptionDetailSerializer
        if self.action == "create":
            return SubscriptionCreateSerializer
        if self.action in ("update", "partial_update"):
            return SubscriptionUpdateSerializer
        return SubscriptionSerializer

    def create(self, request, *args, **kwargs):
        body = self.get_serializer(data=request.data)
        body.is_valid(raise_exception=True)
        data = body.validated_data
        result = create_subscription(
            self.get_tenant(),
            customer_id=data["customer"],
            plan_id=data["plan"],
            billing_cycle=data["billing_cycle"],
            seats=data["seats"],
            coupon_id=data.get("coupon") or None,
            coupon_code=data.get("coupon_code") or None,
            linked_deal_id=data.get("linked_deal") or None,
            notes=data.get("notes") or None,
            status=data["status"],
            tax=data["tax"],
            request_key=_idempotency_key(request),
            actor=request.user,
        )
        payload = {"subscription": SubscriptionSerializer(result.subscription).data}
        if result.invoice is not None:
            if result.created:
                render = render_document(result.invoice)
                payload["document"] = {"rendered": render.ok, "error": render.error}
            payload["invoice"] = InvoiceSerializer(result.invoice).data
        return Response(payload, status=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK)

    def update(self, request, *args, **kwargs):
        subscription = self.get_object()
        body = SubscriptionUpdateSerializer(data=request.data)
        body.is_valid(raise_exception=True)
        changes = update_subscription(subscription, body.validated_data, actor=request.user)
        return Response({
            "changes": changes,
            "message": "Subscription updated successfully" if changes else "No changes applied",
            "subscription": SubscriptionSerializer(subscription).data,
        })

    def destroy(self, request, *args, **kwargs):
        cancel_subscription(self.get_object(), actor=request.user)
        return Response({"message": "Subscription canceled successfully"})

    @action(detail=True, methods=["POST"], url_path="recalculate")
    def recalculate(self, request, pk=None):
        subscription = recalculate_mrr(self.get_object(), actor=request.user)
        return Response({"subscription": SubscriptionSerializer(subscription).data})

    @action(detail=True, methods=["GET"], url_path="activities")
    def activities(self, request, pk=None):
        entries = activity.timeline(self.get_object(), limit=0)
        return Response(SubscriptionActivitySerializer(entries, many=True).data)
