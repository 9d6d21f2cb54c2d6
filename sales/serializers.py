from rest_framework import serializers

from inventory.models import MAX_QUANTITY
from sales.models import Customer, Invoice, InvoiceItem


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = ["id", "name", "email", "phone", "address", "tax_id", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate(self, attrs):
        # Form clients send "" for optional contact fields; store those as null.
        for field_name in ("email", "phone", "tax_id"):
            if self.initial_data.get(field_name, None) == "":
                attrs[field_name] = None
        return attrs


class InvoiceItemSerializer(serializers.ModelSerializer):
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = InvoiceItem
        fields = ["id", "product", "product_sku", "product_name", "quantity", "unit_price", "subtotal"]
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    items = InvoiceItemSerializer(many=True, read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "customer",
            "customer_name",
            "user",
            "status",
            "subtotal",
            "tax",
            "total",
            "due_date",
            "notes",
            "paid_at",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class InvoiceLineInputSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1, max_value=MAX_QUANTITY)
    unit_price_override = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True, min_value=0)


class InvoiceCreateSerializer(serializers.Serializer):
    customer_id = serializers.UUIDField()
    lines = InvoiceLineInputSerializer(many=True, allow_empty=False)
    due_date = serializers.DateField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True)


class InvoiceStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Invoice.Status.choices)


class MarkOverdueSerializer(serializers.Serializer):
    as_of = serializers.DateField(required=False, allow_null=True)
