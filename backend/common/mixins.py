from __future__ import annotations

from typing import Iterable, Optional

from rest_framework.exceptions import PermissionDenied
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import SAFE_METHODS
from rest_framework.viewsets import ModelViewSet

from common.exceptions import EntityNotFound
from platformapp.models import Tenant
from platformapp.selectors import tenant_from_identifier


# -----------------------------
# Pagination
# -----------------------------
class DefaultPagination(PageNumberPagination):
    page_size = 25
    page_size_query_param = "page_size"
    max_page_size = 200


# -----------------------------
# Base tenant-scoped MVSet
# -----------------------------
class TenantScopedModelViewSet(ModelViewSet):
    """
    Multi-tenant base ViewSet:

    - Reads tenant from `X-Tenant-ID` header or `?tenant=` query param (id or slug).
    - Unknown tenant -> 404 "Organization not found".
    - Missing tenant: reads return an empty set, writes are forbidden.
    - Scopes the queryset by `<tenant_field>` and injects the tenant on create.

    Override:
      - `tenant_field` (default "tenant"; may span relations, e.g. "plan__tenant")
      - `default_ordering` (sequence)
    """
    pagination_class = DefaultPagination

    tenant_header = "HTTP_X_TENANT_ID"
    tenant_query_param = "tenant"
    tenant_field = "tenant"

    default_ordering: Iterable[str] = ("-created_at",)

    # ---- Tenant helpers ----
    def get_tenant_id(self) -> Optional[str]:
        req = self.request
        tid = req.META.get(self.tenant_header) or req.query_params.get(self.tenant_query_param)
        return str(tid) if tid else None

    def get_tenant(self) -> Tenant:
        cached = getattr(self, "_tenant", None)
        if cached is not None:
            return cached
        tenant_id = self.get_tenant_id()
        if not tenant_id:
            raise PermissionDenied("Missing tenant context")
        tenant = tenant_from_identifier(tenant_id)
        if tenant is None:
            raise EntityNotFound("Organization not found")
        self._tenant = tenant
        return tenant

    def get_serializer_context(self):
        ctx = super().get_serializer_context()
        if getattr(self, "request", None) is not None and self.get_tenant_id():
            ctx["tenant"] = self.get_tenant()
        return ctx

    # ---- Queryset plumbing ----
    def get_queryset(self):
        qs = super().get_queryset()
        if not self.get_tenant_id():
            if self.request.method in SAFE_METHODS:
                return qs.none()
            raise PermissionDenied("Missing tenant context")
        qs = qs.filter(**{self.tenant_field: self.get_tenant()})
        return qs.order_by(*self.default_ordering) if self.default_ordering else qs

    def perform_create(self, serializer):
        serializer.save(tenant=self.get_tenant())
