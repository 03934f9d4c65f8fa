from rest_framework import serializers

from inventory.models import Movement, Product


class ProductSerializer(serializers.ModelSerializer):
    is_low_stock = serializers.BooleanField(read_only=True)

    class Meta:
        model = Product
        fields = [
            "id",
            "code",
            "barcode",
            "name",
            "category",
            "subcategory",
            "description",
            "price",
            "cost",
            "quantity",
            "min_stock",
            "is_low_stock",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class MovementSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = Movement
        fields = [
            "id",
            "product",
            "product_name",
            "sequence",
            "type",
            "quantity",
            "reason",
            "previous_quantity",
            "new_quantity",
            "unit_price",
            "total_value",
            "source_ref_type",
            "source_ref_id",
            "created_at",
        ]
        read_only_fields = fields


class MovementCreateSerializer(serializers.Serializer):
    """Shape of a movement request; quantity and reason rules are enforced by the ledger."""

    product_id = serializers.UUIDField()
    type = serializers.ChoiceField(choices=Movement.Type.choices)
    quantity = serializers.IntegerField()
    reason = serializers.CharField(allow_blank=True, trim_whitespace=False)


class MovementBatchItemSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    quantity = serializers.IntegerField()
    type = serializers.ChoiceField(choices=Movement.Type.choices, required=False)
    reason = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)


class MovementBatchSerializer(serializers.Serializer):
    items = MovementBatchItemSerializer(many=True, allow_empty=False)


class StockAlertSerializer(serializers.Serializer):
    product_id = serializers.UUIDField(source="product.id")
    product_name = serializers.CharField(source="product.name")
    current_stock = serializers.IntegerField()
    min_stock = serializers.IntegerField()
    difference = serializers.IntegerField()
    severity = serializers.CharField()
