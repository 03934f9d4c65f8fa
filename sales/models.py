import uuid

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from inventory.models import Product


class Customer(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    tax_id = models.CharField(max_length=64, blank=True, default="")
    phone = models.CharField(max_length=64, null=True, blank=True)
    email = models.EmailField(null=True, blank=True)
    address = models.CharField(max_length=255, null=True, blank=True)
    outstanding_balance = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["name"], name="customer_name_idx"),
            models.Index(fields=["tax_id"], name="customer_tax_id_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(outstanding_balance__gte=0), name="customer_balance_non_negative"),
        ]

    def __str__(self):
        return self.name


class CreditSale(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="credit_sales")
    date = models.DateTimeField(default=timezone.now)
    total = models.DecimalField(max_digits=12, decimal_places=2)
    outstanding_balance = models.DecimalField(max_digits=12, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["customer", "date"], name="creditsale_customer_date_idx"),
            models.Index(fields=["customer", "outstanding_balance"], name="creditsale_customer_open_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(outstanding_balance__gte=0), name="creditsale_balance_non_negative"),
            models.CheckConstraint(condition=Q(outstanding_balance__lte=F("total")), name="creditsale_balance_within_total"),
        ]

    @property
    def is_settled(self):
        return self.outstanding_balance <= 0


class Payment(models.Model):
    """Append-only record of one settlement batch."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="payments")
    sale = models.ForeignKey(CreditSale, on_delete=models.PROTECT, related_name="payments")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["customer", "created_at"], name="payment_customer_created_idx"),
            models.Index(fields=["sale", "created_at"], name="payment_sale_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="payment_amount_positive"),
        ]


class CreditSaleLineItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sale = models.ForeignKey(CreditSale, on_delete=models.PROTECT, related_name="lines")
    line_number = models.PositiveIntegerField(default=1)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="credit_sale_lines")
    product_name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    paid = models.BooleanField(default=False)
    paid_at = models.DateTimeField(null=True, blank=True)
    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, null=True, blank=True, related_name="settled_lines")

    class Meta:
        ordering = ["sale", "line_number"]
        indexes = [
            models.Index(fields=["sale", "paid"], name="creditline_sale_paid_idx"),
            models.Index(fields=["product"], name="creditline_product_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gt=0), name="creditline_quantity_positive"),
            models.CheckConstraint(
                condition=Q(paid=False, paid_at__isnull=True) | Q(paid=True, paid_at__isnull=False),
                name="creditline_paid_at_matches_paid",
            ),
        ]
