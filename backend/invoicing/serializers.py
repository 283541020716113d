from rest_framework import serializers
from .models import Invoice, InvoiceLineItem


class InvoiceLineItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceLineItem
        fields = ("position", "description", "quantity", "unit_price", "total")
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    """Read shape. Money fields are integer minor units."""
    line_items = InvoiceLineItemSerializer(many=True, read_only=True)
    subscription_number = serializers.CharField(source="subscription.number", read_only=True, default=None)

    class Meta:
        model = Invoice
        fields = ("id", "number", "status", "customer", "subscription", "subscription_number",
                  "subtotal", "tax", "total", "currency", "issued_at", "due_date", "paid_at", "canceled_at",
                  "pdf_path", "notes", "billing_name", "billing_email", "billing_address",
                  "line_items", "created_at", "updated_at")
        read_only_fields = fields


class LineItemInputSerializer(serializers.Serializer):
    description = serializers.CharField(max_length=255)
    quantity = serializers.IntegerField(min_value=1, default=1)
    unit_price = serializers.IntegerField()


class StandaloneInvoiceSerializer(serializers.Serializer):
    """
    Write: manual invoice without subscription. Totals are derived from the
    line items; tax is an input (default 0), never computed.
    """
    customer = serializers.CharField(required=False, allow_blank=True)
    line_items = LineItemInputSerializer(many=True, required=False)
    tax = serializers.IntegerField(min_value=0, default=0)
    issued_at = serializers.DateTimeField(required=False)
    due_date = serializers.DateTimeField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
