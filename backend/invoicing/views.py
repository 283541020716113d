from datetime import datetime

from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.files.storage import default_storage
from django.http import FileResponse
from django.utils.dateparse import parse_datetime, parse_date
from django.utils.timezone import make_aware

from rest_framework import status
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.filters import SearchFilter, OrderingFilter
from django_filters.rest_framework import DjangoFilterBackend

from common.exceptions import EntityNotFound, InvalidRequest
from common.mixins import TenantScopedModelViewSet
from common.permissions import PrivateTenantOnly
from crm.models import Customer

from .documents import render_document
from .models import Invoice
from .serializers import InvoiceSerializer, StandaloneInvoiceSerializer
from . import services


class InvoiceViewSet(TenantScopedModelViewSet):
    """
    Private, tenant-scoped. Invoices are never edited or deleted through the
    API; status changes go through the finalize/pay/cancel actions.

    Filters:
    - status (exact, comma list via status__in), customer, subscription, currency
    - q: searches number, billing fields
    - min_total/max_total (minor units)
    - start/end (issued_at), due_before/due_after
    """
    queryset = Invoice.objects.select_related("subscription", "tenant").prefetch_related("line_items")
    serializer_class = InvoiceSerializer
    permission_classes = [PrivateTenantOnly]
    http_method_names = ["get", "post", "head", "options"]

    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]
    filterset_fields = {
        "status": ["exact", "in"],
        "currency": ["exact"],
        "customer": ["exact"],
        "subscription": ["exact"],
    }
    search_fields = ["number", "billing_name", "billing_email", "notes"]
    ordering_fields = ["issued_at", "due_date", "total", "status", "number"]
    default_ordering = ("-issued_at",)

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params

        def _int(key):
            try:
                return int(params[key]) if params.get(key) else None
            except ValueError:
                return None

        min_total, max_total = _int("min_total"), _int("max_total")
        if min_total is not None:
            qs = qs.filter(total__gte=min_total)
        if max_total is not None:
            qs = qs.filter(total__lte=max_total)

        def _dt(key):
            raw = params.get(key)
            if not raw:
                return None
            # accept full ISO or YYYY-MM-DD
            dt = parse_datetime(raw)
            if dt:
                return make_aware(dt) if dt.tzinfo is None else dt
            d = parse_date(raw)
            if d:
                return make_aware(datetime(d.year, d.month, d.day))
            return None

        start, end = _dt("start"), _dt("end")
        if start:
            qs = qs.filter(issued_at__gte=start)
        if end:
            qs = qs.filter(issued_at__lte=end)
        due_before, due_after = _dt("due_before"), _dt("due_after")
        if due_before:
            qs = qs.filter(due_date__lte=due_before)
        if due_after:
            qs = qs.filter(due_date__gte=due_after)
        return qs

    def create(self, request, *args, **kwargs):
        body = StandaloneInvoiceSerializer(data=request.data)
        body.is_valid(raise_exception=True)
        data = body.validated_data
        if not data.get("customer"):
            raise InvalidRequest("Customer organization ID is required", field="customer")
        try:
            customer = Customer.objects.get(tenant=self.get_tenant(), pk=data["customer"])
        except (Customer.DoesNotExist, DjangoValidationError, ValueError):
            raise EntityNotFound("Customer not found")

        invoice = services.create_standalone_invoice(
            self.get_tenant(), customer, data.get("line_items") or [],
            tax=data["tax"], issued_at=data.get("issued_at"), due_date=data.get("due_date"),
            notes=data.get("notes") or None,
        )
        render = render_document(invoice)
        return Response(
            {"invoice": InvoiceSerializer(invoice).data, "document": {"rendered": render.ok, "error": render.error}},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["POST"], url_path="finalize")
    def finalize(self, request, pk=None):
        invoice = services.finalize_invoice(self.get_object())
        return Response({"invoice": InvoiceSerializer(invoice).data, "message": "Invoice finalized"})

    @action(detail=True, methods=["POST"], url_path="pay")
    def pay(self, request, pk=None):
        invoice = services.mark_invoice_paid(self.get_object(), actor=request.user)
        return Response({"invoice": InvoiceSerializer(invoice).data, "message": "Invoice marked as paid"})

    @action(detail=True, methods=["POST"], url_path="cancel")
    def cancel(self, request, pk=None):
        invoice = services.cancel_invoice(self.get_object())
        return Response({"invoice": InvoiceSerializer(invoice).data, "message": "Invoice canceled"})

    @action(detail=True, methods=["POST"], url_path="render")
    def regenerate(self, request, pk=None):
        """Regenerate the PDF (e.g. after an earlier render failure)."""
        invoice = self.get_object()
        result = render_document(invoice)
        return Response({"rendered": result.ok, "pdf_path": invoice.pdf_path, "error": result.error})

    @action(detail=True, methods=["GET"], url_path="pdf")
    def pdf(self, request, pk=None):
        invoice = self.get_object()
        if not invoice.pdf_path:
            raise EntityNotFound("PDF not available for this invoice")
        if not default_storage.exists(invoice.pdf_path):
            raise EntityNotFound("PDF file not found on server")
        return FileResponse(
            default_storage.open(invoice.pdf_path, "rb"),
            as_attachment=True,
            filename=f"{invoice.number}.pdf",
            content_type="application/pdf",
        )
