from dataclasses import dataclass
from decimal import Decimal

from django.db.models import Count, DecimalField, ExpressionWrapper, F, Sum

from common.errors import ProductNotFound
from common.utils import to_money
from inventory.ledger import parse_product_id
from inventory.models import Movement, Product


class Severity:
    LOW = "low"
    CRITICAL = "critical"


@dataclass(frozen=True)
class StockAlert:
    product: Product
    current_stock: int
    min_stock: int
    difference: int
    severity: str


def get_movements_for_product(product_id):
    """Journal of one product, newest first."""
    product_id = parse_product_id(product_id)
    if not Product.objects.filter(id=product_id).exists():
        raise ProductNotFound(details={"product_id": str(product_id)})
    return Movement.objects.filter(product_id=product_id).select_related("product").order_by("-created_at", "-sequence")


def list_movements(*, product_id=None, movement_type=None):
    qs = Movement.objects.select_related("product").order_by("-created_at", "-sequence")
    if product_id:
        qs = qs.filter(product_id=parse_product_id(product_id))
    if movement_type:
        qs = qs.filter(type=movement_type)
    return qs


def low_stock_alerts(products=None):
    """
    Products at or below their minimum stock, most urgent first.

    ``products`` may be any iterable of products; by default every active
    product is checked.
    """
    if products is None:
        products = Product.objects.filter(is_active=True).order_by("name")

    alerts = []
    for product in products:
        if product.quantity > product.min_stock:
            continue
        alerts.append(
            StockAlert(
                product=product,
                current_stock=product.quantity,
                min_stock=product.min_stock,
                difference=product.min_stock - product.quantity,
                severity=Severity.CRITICAL if product.quantity == 0 else Severity.LOW,
            )
        )
    alerts.sort(key=lambda alert: (alert.severity != Severity.CRITICAL, -alert.difference, alert.product.name))
    return alerts


def inventory_totals():
    money = DecimalField(max_digits=18, decimal_places=2)
    totals = Product.objects.filter(is_active=True).aggregate(
        products=Count("id"),
        units=Sum("quantity"),
        value=Sum(ExpressionWrapper(F("quantity") * F("price"), output_field=money)),
        cost=Sum(ExpressionWrapper(F("quantity") * F("cost"), output_field=money)),
    )
    return {
        "products": totals["products"] or 0,
        "units": totals["units"] or 0,
        "total_value": to_money(totals["value"] or Decimal("0")),
        "total_cost": to_money(totals["cost"] or Decimal("0")),
    }


def verify_stock_journal():
    """
    Check every product's journal against its current quantity.

    Returns a list of mismatch dicts; an empty list means the journal is
    continuous and agrees with ``Product.quantity``.
    """
    mismatches = []
    last_by_product = {}
    for movement in Movement.objects.order_by("product_id", "sequence").iterator():
        previous = last_by_product.get(movement.product_id)
        if previous is not None and movement.previous_quantity != previous.new_quantity:
            mismatches.append(
                {
                    "kind": "journal_gap",
                    "entity": "movement",
                    "entity_id": str(movement.id),
                    "expected": previous.new_quantity,
                    "actual": movement.previous_quantity,
                }
            )
        last_by_product[movement.product_id] = movement

    for product in Product.objects.order_by("name").iterator():
        if product.quantity < 0:
            mismatches.append(
                {"kind": "negative_stock", "entity": "product", "entity_id": str(product.id), "expected": 0, "actual": product.quantity}
            )
        last = last_by_product.get(product.id)
        if last is not None and last.new_quantity != product.quantity:
            mismatches.append(
                {
                    "kind": "stock_journal_mismatch",
                    "entity": "product",
                    "entity_id": str(product.id),
                    "expected": last.new_quantity,
                    "actual": product.quantity,
                }
            )
    return mismatches
