import uuid

from django.db import models
from django.db.models import F, Q


class Product(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=64, blank=True, default="")
    barcode = models.CharField(max_length=128, null=True, blank=True)
    name = models.CharField(max_length=255)
    category = models.CharField(max_length=128, blank=True, default="")
    subcategory = models.CharField(max_length=128, blank=True, default="")
    description = models.TextField(blank=True, default="")
    price = models.DecimalField(max_digits=12, decimal_places=2)
    cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    quantity = models.PositiveIntegerField(default=0)
    min_stock = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["barcode"], name="product_barcode_idx"),
            models.Index(fields=["category", "is_active"], name="product_category_active_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gte=0), name="product_quantity_non_negative"),
        ]

    def __str__(self):
        return self.name

    @property
    def is_low_stock(self):
        return self.quantity <= self.min_stock


class Movement(models.Model):
    """One immutable stock journal entry; rows are only ever inserted."""

    class Type(models.TextChoices):
        ENTRADA = "entrada", "Entrada"
        SALIDA = "salida", "Salida"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="movements")
    sequence = models.PositiveIntegerField()
    type = models.CharField(max_length=16, choices=Type.choices)
    quantity = models.PositiveIntegerField()
    reason = models.CharField(max_length=255)
    previous_quantity = models.PositiveIntegerField()
    new_quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_value = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    source_ref_type = models.CharField(max_length=64, null=True, blank=True)
    source_ref_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "sequence"]
        indexes = [
            models.Index(fields=["product", "created_at"], name="movement_product_created_idx"),
            models.Index(fields=["source_ref_type", "source_ref_id"], name="movement_source_ref_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["product", "sequence"], name="uniq_movement_product_sequence"),
            models.CheckConstraint(condition=Q(quantity__gt=0), name="movement_quantity_positive"),
            models.CheckConstraint(
                condition=(
                    Q(type="entrada", new_quantity=F("previous_quantity") + F("quantity"))
                    | Q(type="salida", new_quantity=F("previous_quantity") - F("quantity"))
                ),
                name="movement_quantity_arithmetic",
            ),
        ]

    def __str__(self):
        return f"{self.type} {self.quantity} x {self.product_id}"
