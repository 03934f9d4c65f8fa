import uuid

import django.db.models.deletion
from django.db import migrations, models
from django.db.models import F, Q


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Product",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(blank=True, default="", max_length=64)),
                ("barcode", models.CharField(blank=True, max_length=128, null=True)),
                ("name", models.CharField(max_length=255)),
                ("category", models.CharField(blank=True, default="", max_length=128)),
                ("subcategory", models.CharField(blank=True, default="", max_length=128)),
                ("description", models.TextField(blank=True, default="")),
                ("price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("cost", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("quantity", models.PositiveIntegerField(default=0)),
                ("min_stock", models.PositiveIntegerField(default=0)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["barcode"], name="product_barcode_idx"),
                    models.Index(fields=["category", "is_active"], name="product_category_active_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=Q(quantity__gte=0), name="product_quantity_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Movement",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("sequence", models.PositiveIntegerField()),
                ("type", models.CharField(choices=[("entrada", "Entrada"), ("salida", "Salida")], max_length=16)),
                ("quantity", models.PositiveIntegerField()),
                ("reason", models.CharField(max_length=255)),
                ("previous_quantity", models.PositiveIntegerField()),
                ("new_quantity", models.PositiveIntegerField()),
                ("unit_price", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("total_value", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("source_ref_type", models.CharField(blank=True, max_length=64, null=True)),
                ("source_ref_id", models.UUIDField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="movements",
                        to="inventory.product",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "sequence"],
                "indexes": [
                    models.Index(fields=["product", "created_at"], name="movement_product_created_idx"),
                    models.Index(fields=["source_ref_type", "source_ref_id"], name="movement_source_ref_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["product", "sequence"], name="uniq_movement_product_sequence"),
                    models.CheckConstraint(condition=Q(quantity__gt=0), name="movement_quantity_positive"),
                    models.CheckConstraint(
                        condition=(
                            Q(type="entrada", new_quantity=F("previous_quantity") + F("quantity"))
                            | Q(type="salida", new_quantity=F("previous_quantity") - F("quantity"))
                        ),
                        name="movement_quantity_arithmetic",
                    ),
                ],
            },
        ),
    ]
