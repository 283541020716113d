from django.db import models
from common.models import BaseModel


class Tenant(BaseModel):
    slug = models.SlugField(max_length=100, unique=True)
    name = models.CharField(max_length=200)
    status = models.CharField(max_length=20, default="active")
    region = models.CharField(max_length=50, blank=True, null=True)

    def __str__(self):
        return self.slug


class TenantSequence(models.Model):
    """
    Per-tenant named counter backing human display numbers (SUB-1000, INV-ACME-1001).
    Always advanced through `platformapp.sequences.next_value`, under a row lock.
    """
    id = models.BigAutoField(primary_key=True)
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="sequences")
    key = models.CharField(max_length=40)          # e.g. "subscription", "invoice"
    last_value = models.BigIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["tenant", "key"], name="uniq_sequence_per_tenant"),
        ]

    def __str__(self):
        return f"{self.tenant_id}:{self.key}={self.last_value}"
