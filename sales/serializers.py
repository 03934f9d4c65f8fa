from rest_framework import serializers

from sales.models import CreditSale, CreditSaleLineItem, Customer, Payment


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = ["id", "name", "tax_id", "phone", "email", "address", "outstanding_balance", "created_at", "updated_at"]
        read_only_fields = fields


class CustomerCreateSerializer(serializers.Serializer):
    """Required-field rules live in the ledger so they answer with the ledger's error codes."""

    name = serializers.CharField(required=False, allow_blank=True, default="")
    tax_id = serializers.CharField(required=False, allow_blank=True, default="")
    phone = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    email = serializers.EmailField(required=False, allow_blank=True, allow_null=True)
    address = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class CreditSaleLineItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = CreditSaleLineItem
        fields = [
            "id",
            "line_number",
            "product",
            "product_name",
            "quantity",
            "unit_price",
            "subtotal",
            "paid",
            "paid_at",
            "payment",
        ]
        read_only_fields = fields


class CreditSaleSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    is_settled = serializers.BooleanField(read_only=True)
    lines = CreditSaleLineItemSerializer(many=True, read_only=True)

    class Meta:
        model = CreditSale
        fields = [
            "id",
            "customer",
            "customer_name",
            "date",
            "total",
            "outstanding_balance",
            "is_settled",
            "lines",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class SaleLineInputSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    quantity = serializers.IntegerField()


class CreditSaleCreateSerializer(serializers.Serializer):
    customer_id = serializers.UUIDField(required=False)
    customer = CustomerCreateSerializer(required=False)
    date = serializers.DateTimeField(required=False)
    lines = SaleLineInputSerializer(many=True)

    def validate(self, attrs):
        has_id = attrs.get("customer_id") is not None
        has_new = attrs.get("customer") is not None
        if has_id == has_new:
            raise serializers.ValidationError({"customer": "Provide either customer_id or customer, not both."})
        return attrs


class MarkPaidSerializer(serializers.Serializer):
    line_item_ids = serializers.ListField(child=serializers.UUIDField(), allow_empty=True)


class PaymentSerializer(serializers.ModelSerializer):
    line_item_ids = serializers.PrimaryKeyRelatedField(source="settled_lines", many=True, read_only=True)

    class Meta:
        model = Payment
        fields = ["id", "customer", "sale", "amount", "line_item_ids", "created_at"]
        read_only_fields = fields
