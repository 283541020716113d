from rest_framework.permissions import BasePermission


class PrivateTenantOnly(BasePermission):
    """
    All requests must be authenticated AND carry a tenant
    (`X-Tenant-ID` header, or `?tenant=` for links such as PDF downloads).
    """
    def has_permission(self, request, view):
        tenant = request.headers.get("X-Tenant-ID") or request.query_params.get("tenant")
        return bool(request.user and request.user.is_authenticated and tenant)
