"""
Stock ledger: the only code path that changes ``Product.quantity``.

Every change is journaled as a ``Movement`` inside the same database
transaction as the quantity update. Product rows are locked with
``SELECT ... FOR UPDATE`` in primary-key order before the stock check, so
concurrent sales of the same product are serialized and cannot overdraw.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from django.db.models import Max
from django.utils import timezone

from common.errors import EmptyReason, InsufficientStock, InvalidQuantity, LedgerValidationError, MissingField, ProductNotFound
from common.transactions import ledger_transaction
from common.utils import emit_outbox, to_money
from inventory.catalog import invalidate_products_on_commit
from inventory.models import Movement, Product

logger = logging.getLogger(__name__)

QUICK_SALE_REASON = "Venta rápida"


@dataclass(frozen=True)
class MovementRequest:
    product_id: Any
    quantity: int
    type: str = Movement.Type.SALIDA
    reason: str = QUICK_SALE_REASON


def parse_product_id(value):
    if value in (None, ""):
        raise MissingField("product_id is required.", details={"field": "product_id"})
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ProductNotFound(details={"product_id": str(value)})


def _validate_request(request: MovementRequest) -> MovementRequest:
    product_id = parse_product_id(request.product_id)

    if request.type not in Movement.Type.values:
        raise LedgerValidationError(
            "Movement type must be 'entrada' or 'salida'.",
            details={"type": str(request.type)},
        )

    quantity = request.quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantity(details={"product_id": str(product_id), "quantity": str(quantity)})

    reason = request.reason.strip() if isinstance(request.reason, str) else ""
    if not reason:
        raise EmptyReason(details={"product_id": str(product_id)})

    return MovementRequest(product_id=product_id, quantity=quantity, type=request.type, reason=reason)


def _coerce_item(item) -> MovementRequest:
    if isinstance(item, MovementRequest):
        return item
    if isinstance(item, Mapping):
        return MovementRequest(
            product_id=item.get("product_id"),
            quantity=item.get("quantity"),
            type=item.get("type") or Movement.Type.SALIDA,
            reason=item["reason"] if item.get("reason") is not None else QUICK_SALE_REASON,
        )
    raise LedgerValidationError("Unsupported movement item.", details={"item": repr(item)})


def lock_products(product_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Product]:
    """Lock the given products in a stable order; the caller must be inside a transaction."""
    wanted = sorted(set(product_ids), key=str)
    products = {product.id: product for product in Product.objects.select_for_update().filter(id__in=wanted).order_by("id")}
    missing = [str(product_id) for product_id in wanted if product_id not in products]
    if missing:
        raise ProductNotFound(details={"product_ids": missing})
    return products


def _next_sequences(product_ids):
    rows = Movement.objects.filter(product_id__in=product_ids).values("product_id").annotate(last=Max("sequence"))
    last_by_product = {row["product_id"]: row["last"] or 0 for row in rows}
    return {product_id: last_by_product.get(product_id, 0) + 1 for product_id in product_ids}


def apply_movements(requests, *, source_ref_type=None, source_ref_id=None) -> list[Movement]:
    """
    Validate, stock-check and journal a list of movements.

    Must run inside a ledger transaction. Nothing is written until every
    request has passed validation and the stock check against the locked
    rows, so a rejected request leaves both the journal and the stock
    untouched.
    """
    normalized = [_validate_request(_coerce_item(request)) for request in requests]
    if not normalized:
        raise LedgerValidationError("At least one movement is required.", details={"items": []})

    products = lock_products(request.product_id for request in normalized)
    sequences = _next_sequences(list(products))

    running = {product_id: product.quantity for product_id, product in products.items()}
    planned = []
    for request in normalized:
        product = products[request.product_id]
        previous = running[product.id]
        if request.type == Movement.Type.ENTRADA:
            new = previous + request.quantity
        else:
            new = previous - request.quantity
        if new < 0:
            logger.warning(
                "stock_movement_rejected insufficient stock",
                extra={"product_id": str(product.id), "quantity": request.quantity},
            )
            raise InsufficientStock(
                f"Insufficient stock for {product.name}. Available: {previous}, requested: {request.quantity}.",
                details={
                    "product_id": str(product.id),
                    "product_name": product.name,
                    "available": previous,
                    "requested": request.quantity,
                },
            )
        running[product.id] = new
        planned.append((request, product, previous, new))

    movements = []
    for request, product, previous, new in planned:
        sequence = sequences[product.id]
        sequences[product.id] = sequence + 1
        movement = Movement.objects.create(
            product=product,
            sequence=sequence,
            type=request.type,
            quantity=request.quantity,
            reason=request.reason,
            previous_quantity=previous,
            new_quantity=new,
            unit_price=product.price,
            total_value=to_money(product.price * request.quantity),
            source_ref_type=source_ref_type,
            source_ref_id=source_ref_id,
        )
        movements.append(movement)

    now = timezone.now()
    for product_id, quantity in running.items():
        if quantity != products[product_id].quantity:
            Product.objects.filter(id=product_id).update(quantity=quantity, updated_at=now)
            products[product_id].quantity = quantity

    for movement in movements:
        emit_outbox(
            entity="movement",
            entity_id=movement.id,
            op="upsert",
            payload={
                "id": movement.id,
                "product_id": movement.product_id,
                "type": movement.type,
                "quantity": movement.quantity,
                "reason": movement.reason,
                "previous_quantity": movement.previous_quantity,
                "new_quantity": movement.new_quantity,
            },
        )
    for product_id, product in products.items():
        emit_outbox(
            entity="product_stock",
            entity_id=product_id,
            op="upsert",
            payload={"id": product_id, "quantity": product.quantity},
        )

    invalidate_products_on_commit(products)

    for movement in movements:
        logger.info(
            "stock_movement_recorded",
            extra={
                "movement_id": str(movement.id),
                "product_id": str(movement.product_id),
                "quantity": movement.quantity,
            },
        )
    return movements


@ledger_transaction
def record_movement(product_id, movement_type, quantity, reason, *, source_ref_type=None, source_ref_id=None) -> Movement:
    request = MovementRequest(product_id=product_id, quantity=quantity, type=movement_type, reason=reason)
    (movement,) = apply_movements([request], source_ref_type=source_ref_type, source_ref_id=source_ref_id)
    return movement


@ledger_transaction
def record_movement_batch(items, *, source_ref_type=None, source_ref_id=None) -> list[Movement]:
    """Apply every item or none of them."""
    return apply_movements(list(items), source_ref_type=source_ref_type, source_ref_id=source_ref_id)


@ledger_transaction
def purge_movements() -> int:
    """Administrative purge of the whole journal; stock quantities are kept."""
    deleted, _ = Movement.objects.all().delete()
    emit_outbox(entity="movement", entity_id=None, op="purge", payload={"deleted": deleted})
    logger.info("stock_movements_purged", extra={"details": {"deleted": deleted}})
    return deleted
