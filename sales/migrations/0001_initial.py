import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models
from django.db.models import F, Q


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("inventory", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Customer",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("tax_id", models.CharField(blank=True, default="", max_length=64)),
                ("phone", models.CharField(blank=True, max_length=64, null=True)),
                ("email", models.EmailField(blank=True, max_length=254, null=True)),
                ("address", models.CharField(blank=True, max_length=255, null=True)),
                ("outstanding_balance", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["name"], name="customer_name_idx"),
                    models.Index(fields=["tax_id"], name="customer_tax_id_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=Q(outstanding_balance__gte=0), name="customer_balance_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditSale",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("date", models.DateTimeField(default=django.utils.timezone.now)),
                ("total", models.DecimalField(decimal_places=2, max_digits=12)),
                ("outstanding_balance", models.DecimalField(decimal_places=2, max_digits=12)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="credit_sales",
                        to="sales.customer",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["customer", "date"], name="creditsale_customer_date_idx"),
                    models.Index(fields=["customer", "outstanding_balance"], name="creditsale_customer_open_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=Q(outstanding_balance__gte=0), name="creditsale_balance_non_negative"),
                    models.CheckConstraint(condition=Q(outstanding_balance__lte=F("total")), name="creditsale_balance_within_total"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="sales.customer",
                    ),
                ),
                (
                    "sale",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="sales.creditsale",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["customer", "created_at"], name="payment_customer_created_idx"),
                    models.Index(fields=["sale", "created_at"], name="payment_sale_created_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=Q(amount__gt=0), name="payment_amount_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditSaleLineItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("line_number", models.PositiveIntegerField(default=1)),
                ("product_name", models.CharField(max_length=255)),
                ("quantity", models.PositiveIntegerField()),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("subtotal", models.DecimalField(decimal_places=2, max_digits=12)),
                ("paid", models.BooleanField(default=False)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payment",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="settled_lines",
                        to="sales.payment",
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="credit_sale_lines",
                        to="inventory.product",
                    ),
                ),
                (
                    "sale",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="lines",
                        to="sales.creditsale",
                    ),
                ),
            ],
            options={
                "ordering": ["sale", "line_number"],
                "indexes": [
                    models.Index(fields=["sale", "paid"], name="creditline_sale_paid_idx"),
                    models.Index(fields=["product"], name="creditline_product_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=Q(quantity__gt=0), name="creditline_quantity_positive"),
                    models.CheckConstraint(
                        condition=Q(paid=False, paid_at__isnull=True) | Q(paid=True, paid_at__isnull=False),
                        name="creditline_paid_at_matches_paid",
                    ),
                ],
            },
        ),
    ]
