from rest_framework.filters import SearchFilter, OrderingFilter
from django_filters.rest_framework import DjangoFilterBackend

from common.mixins import TenantScopedModelViewSet
from common.permissions import PrivateTenantOnly  # auth + X-Tenant-ID required for all methods

from .models import Customer, Opportunity
from .serializers import CustomerSerializer, CustomerListSerializer, OpportunitySerializer


class CustomerViewSet(TenantScopedModelViewSet):
    permission_classes = [PrivateTenantOnly]
    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]
    filterset_fields = {
        "status": ["exact"],
        "subscription_status": ["exact"],
        "discount_type": ["exact", "isnull"],
    }
    search_fields = ["name", "email", "domain"]
    ordering_fields = ["created_at", "updated_at", "name"]

    queryset = Customer.objects.all()

    def get_serializer_class(self):
        return CustomerListSerializer if self.action == "list" else CustomerSerializer


class OpportunityViewSet(TenantScopedModelViewSet):
    permission_classes = [PrivateTenantOnly]
    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]
    filterset_fields = {"stage": ["exact"], "customer": ["exact"]}
    search_fields = ["name"]
    ordering_fields = ["created_at", "updated_at", "amount", "expected_close", "probability"]

    queryset = Opportunity.objects.select_related("customer")
    serializer_class = OpportunitySerializer
