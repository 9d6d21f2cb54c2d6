from rest_framework import serializers

from inventory.models import MAX_QUANTITY, Product, StockMovement, StockRecord
from inventory.services import StockLevel, compute_stock_level, stock_percentage


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = [
            "id",
            "sku",
            "name",
            "description",
            "category",
            "price",
            "cost",
            "image_url",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "is_active", "created_at", "updated_at"]
        # duplicates surface as unique_violation from the catalog service
        extra_kwargs = {"sku": {"validators": []}}

    def validate(self, attrs):
        for field_name in ("price", "cost"):
            value = attrs.get(field_name)
            if value is not None and value < 0:
                raise serializers.ValidationError({field_name: "Must be non-negative."})
        return attrs


class StockRecordSerializer(serializers.ModelSerializer):
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)
    level = serializers.SerializerMethodField()
    percentage = serializers.SerializerMethodField()

    class Meta:
        model = StockRecord
        fields = [
            "id",
            "product",
            "product_sku",
            "product_name",
            "quantity",
            "min_stock",
            "max_stock",
            "location",
            "level",
            "percentage",
            "last_restock_date",
            "version",
            "updated_at",
        ]
        read_only_fields = fields

    def get_level(self, obj):
        level = getattr(obj, "level", None) or compute_stock_level(obj.quantity, obj.min_stock, obj.max_stock)
        return StockLevel(level).value

    def get_percentage(self, obj):
        return str(stock_percentage(obj.quantity, obj.max_stock))


class StockThresholdSerializer(serializers.Serializer):
    min_stock = serializers.IntegerField(required=False, min_value=0, max_value=MAX_QUANTITY)
    max_stock = serializers.IntegerField(required=False, min_value=0, max_value=MAX_QUANTITY)
    location = serializers.CharField(required=False, allow_blank=True, max_length=255)


class StockMovementSerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True)
    product_sku = serializers.CharField(source="product.sku", read_only=True)

    class Meta:
        model = StockMovement
        fields = [
            "id",
            "product",
            "product_sku",
            "kind",
            "quantity",
            "reference",
            "notes",
            "actor",
            "actor_username",
            "created_at",
        ]
        read_only_fields = fields


class StockMovementCreateSerializer(serializers.Serializer):
    """Request body for a movement. Sign rules are enforced by the ledger service."""

    product_id = serializers.UUIDField()
    kind = serializers.ChoiceField(choices=StockMovement.Kind.choices)
    quantity = serializers.IntegerField(min_value=-MAX_QUANTITY, max_value=MAX_QUANTITY)
    reference = serializers.CharField(required=False, allow_blank=True, max_length=128)
    notes = serializers.CharField(required=False, allow_blank=True)
