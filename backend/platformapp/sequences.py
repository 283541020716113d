from __future__ import annotations

from django.db import transaction
from django.db.models import F

from platformapp.models import Tenant, TenantSequence


def next_value(tenant: Tenant, key: str, start: int = 1) -> int:
    """
    Hand out the next number of `key` for `tenant`; the first call returns `start`.

    The sequence row is locked for the rest of the caller's transaction, so two
    concurrent writers never see the same value.
    """
    with transaction.atomic():
        seq, _ = TenantSequence.objects.select_for_update().get_or_create(
            tenant=tenant, key=key, defaults={"last_value": start - 1}
        )
        TenantSequence.objects.filter(pk=seq.pk).update(last_value=F("last_value") + 1)
        seq.refresh_from_db(fields=["last_value"])
        return seq.last_value
