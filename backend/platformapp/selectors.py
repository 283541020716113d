import uuid
from typing import Optional

from django.db.models import Q

from .models import Tenant


def tenant_from_identifier(value) -> Optional[Tenant]:
    """Look a tenant up by primary key or slug (`X-Tenant-ID` accepts either)."""
    if not value:
        return None
    lookup = Q(slug=str(value))
    try:
        lookup |= Q(pk=uuid.UUID(str(value)))
    except ValueError:
        pass
    return Tenant.objects.filter(lookup).first()
