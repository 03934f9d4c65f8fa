"""
Credit ("fiado") account ledger.

Owns customers, credit sales, their line items and payments. Every public
operation is one ledger transaction. Rows are locked in a fixed order
(customer, then sale, then line items, then products) so that sale
creation, payment marking and customer deletion cannot deadlock each
other.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from django.db.models import F
from django.utils import timezone

from common.errors import (
    CustomerNotFound,
    InsufficientStock,
    InvalidQuantity,
    LedgerValidationError,
    MissingField,
    SaleNotFound,
)
from common.transactions import ledger_transaction
from common.utils import emit_outbox, to_money
from inventory.ledger import MovementRequest, apply_movements, lock_products, parse_product_id
from inventory.models import Movement
from sales.models import CreditSale, CreditSaleLineItem, Customer, Payment

logger = logging.getLogger(__name__)

CREDIT_SALE_REF_TYPE = "sales.credit_sale"


def credit_sale_reason(customer_name):
    return f"FIADO A {customer_name}"


@dataclass(frozen=True)
class SaleLine:
    product_id: Any
    quantity: int


@dataclass(frozen=True)
class NewCustomer:
    name: str
    tax_id: str = ""
    phone: str | None = None
    email: str | None = None
    address: str | None = None


@dataclass
class Settlement:
    sale: CreditSale
    amount_settled: Decimal
    payment: Payment | None = None
    settled_line_ids: list[uuid.UUID] = field(default_factory=list)


@dataclass(frozen=True)
class CustomerDeletion:
    customer_id: uuid.UUID
    sales_deleted: int
    line_items_deleted: int
    payments_deleted: int


def _parse_uuid(value):
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _clean(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _lock_customer(customer_id) -> Customer:
    parsed = _parse_uuid(customer_id)
    customer = Customer.objects.select_for_update().filter(id=parsed).first() if parsed else None
    if customer is None:
        raise CustomerNotFound(details={"customer_id": str(customer_id)})
    return customer


def _insert_customer(data: NewCustomer, *, require_tax_id: bool) -> Customer:
    name = _clean(data.name)
    tax_id = _clean(data.tax_id)
    missing = []
    if not name:
        missing.append("name")
    if require_tax_id and not tax_id:
        missing.append("tax_id")
    if missing:
        raise MissingField("Customer name and tax id are required.", details={"missing_fields": missing})

    customer = Customer.objects.create(
        name=name,
        tax_id=tax_id or "",
        phone=_clean(data.phone),
        email=_clean(data.email),
        address=_clean(data.address),
        outstanding_balance=Decimal("0.00"),
    )
    emit_outbox(
        entity="customer",
        entity_id=customer.id,
        op="upsert",
        payload={"id": customer.id, "name": customer.name, "tax_id": customer.tax_id, "outstanding_balance": customer.outstanding_balance},
    )
    logger.info("customer_created", extra={"customer_id": str(customer.id)})
    return customer


def _coerce_line(line) -> SaleLine:
    if isinstance(line, SaleLine):
        candidate = line
    elif isinstance(line, Mapping):
        candidate = SaleLine(product_id=line.get("product_id"), quantity=line.get("quantity"))
    else:
        raise LedgerValidationError("Unsupported sale line.", details={"line": repr(line)})

    if candidate.product_id in (None, ""):
        raise MissingField("product_id is required on every line.", details={"field": "product_id"})
    quantity = candidate.quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantity(details={"product_id": str(candidate.product_id), "quantity": str(quantity)})
    return candidate


@ledger_transaction
def create_customer(name, tax_id, phone=None, email=None, address=None) -> Customer:
    return _insert_customer(
        NewCustomer(name=name, tax_id=tax_id, phone=phone, email=email, address=address),
        require_tax_id=True,
    )


@ledger_transaction
def create_credit_sale(customer, lines, *, date=None) -> CreditSale:
    """
    Sell on credit: deduct stock, record the sale and raise the customer's balance.

    ``customer`` is either an existing customer id or a ``NewCustomer``
    created as part of the same transaction. Either every line is
    deducted and the sale recorded, or nothing changes.
    """
    sale_lines = [_coerce_line(line) for line in lines]
    if not sale_lines:
        raise LedgerValidationError("A credit sale needs at least one line.", details={"lines": []})

    if isinstance(customer, NewCustomer):
        customer_row = _insert_customer(customer, require_tax_id=False)
    else:
        customer_row = _lock_customer(customer)

    product_ids = [parse_product_id(line.product_id) for line in sale_lines]
    products = lock_products(product_ids)

    requested = Counter()
    for product_id, line in zip(product_ids, sale_lines):
        requested[product_id] += line.quantity
    for product_id, quantity in requested.items():
        product = products[product_id]
        if quantity > product.quantity:
            logger.warning(
                "credit_sale_rejected insufficient stock",
                extra={"customer_id": str(customer_row.id), "product_id": str(product_id), "quantity": quantity},
            )
            raise InsufficientStock(
                f"Insufficient stock for {product.name}. Available: {product.quantity}, requested: {quantity}.",
                details={
                    "product_id": str(product_id),
                    "product_name": product.name,
                    "available": product.quantity,
                    "requested": quantity,
                },
            )

    priced = []
    total = Decimal("0.00")
    for product_id, line in zip(product_ids, sale_lines):
        product = products[product_id]
        subtotal = to_money(product.price * line.quantity)
        priced.append((product, line.quantity, product.price, subtotal))
        total += subtotal
    total = to_money(total)

    sale_id = uuid.uuid4()
    reason = credit_sale_reason(customer_row.name)
    apply_movements(
        [
            MovementRequest(product_id=product_id, quantity=line.quantity, type=Movement.Type.SALIDA, reason=reason)
            for product_id, line in zip(product_ids, sale_lines)
        ],
        source_ref_type=CREDIT_SALE_REF_TYPE,
        source_ref_id=sale_id,
    )

    sale = CreditSale.objects.create(
        id=sale_id,
        customer=customer_row,
        date=date or timezone.now(),
        total=total,
        outstanding_balance=total,
    )
    CreditSaleLineItem.objects.bulk_create(
        [
            CreditSaleLineItem(
                sale=sale,
                line_number=index,
                product=product,
                product_name=product.name,
                quantity=quantity,
                unit_price=unit_price,
                subtotal=subtotal,
                paid=False,
            )
            for index, (product, quantity, unit_price, subtotal) in enumerate(priced, start=1)
        ]
    )

    Customer.objects.filter(id=customer_row.id).update(
        outstanding_balance=F("outstanding_balance") + total,
        updated_at=timezone.now(),
    )
    customer_row.refresh_from_db(fields=["outstanding_balance", "updated_at"])

    emit_outbox(
        entity="credit_sale",
        entity_id=sale.id,
        op="upsert",
        payload={
            "id": sale.id,
            "customer_id": customer_row.id,
            "total": sale.total,
            "outstanding_balance": sale.outstanding_balance,
            "line_count": len(priced),
        },
    )
    emit_outbox(
        entity="customer",
        entity_id=customer_row.id,
        op="upsert",
        payload={"id": customer_row.id, "outstanding_balance": customer_row.outstanding_balance},
    )
    logger.info(
        "credit_sale_created",
        extra={"sale_id": str(sale.id), "customer_id": str(customer_row.id), "amount": str(total)},
    )
    return CreditSale.objects.select_related("customer").prefetch_related("lines").get(id=sale.id)


@ledger_transaction
def mark_line_items_paid(sale_id, line_item_ids) -> Settlement:
    """
    Settle the given line items of a sale.

    Unknown, foreign or already paid ids are skipped, so re-submitting the
    same ids is a no-op. One ``Payment`` is written only when something new
    was settled.
    """
    parsed_sale_id = _parse_uuid(sale_id)
    customer_id = (
        CreditSale.objects.filter(id=parsed_sale_id).values_list("customer_id", flat=True).first()
        if parsed_sale_id
        else None
    )
    if customer_id is None:
        raise SaleNotFound(details={"sale_id": str(sale_id)})

    try:
        customer = _lock_customer(customer_id)
    except CustomerNotFound as exc:
        # customer and sale were deleted together after the unlocked read
        raise SaleNotFound(details={"sale_id": str(sale_id)}) from exc
    sale = CreditSale.objects.select_for_update().filter(id=parsed_sale_id).first()
    if sale is None:
        raise SaleNotFound(details={"sale_id": str(sale_id)})

    wanted = {parsed for parsed in (_parse_uuid(value) for value in line_item_ids or []) if parsed}
    lines = list(
        CreditSaleLineItem.objects.select_for_update()
        .filter(sale=sale, id__in=wanted, paid=False)
        .order_by("line_number")
    )
    amount = to_money(sum((line.subtotal for line in lines), Decimal("0.00")))

    if not lines:
        logger.info("credit_payment_noop", extra={"sale_id": str(sale.id), "details": {"requested": len(wanted)}})
        return Settlement(sale=sale, amount_settled=Decimal("0.00"))

    now = timezone.now()
    payment = Payment.objects.create(customer=customer, sale=sale, amount=amount)
    settled_ids = [line.id for line in lines]
    CreditSaleLineItem.objects.filter(id__in=settled_ids).update(paid=True, paid_at=now, payment=payment)
    CreditSale.objects.filter(id=sale.id).update(outstanding_balance=F("outstanding_balance") - amount, updated_at=now)
    Customer.objects.filter(id=customer.id).update(outstanding_balance=F("outstanding_balance") - amount, updated_at=now)
    sale.refresh_from_db(fields=["outstanding_balance", "updated_at"])
    customer.refresh_from_db(fields=["outstanding_balance", "updated_at"])

    emit_outbox(
        entity="payment",
        entity_id=payment.id,
        op="upsert",
        payload={
            "id": payment.id,
            "sale_id": sale.id,
            "customer_id": customer.id,
            "amount": amount,
            "line_item_ids": settled_ids,
        },
    )
    emit_outbox(
        entity="credit_sale",
        entity_id=sale.id,
        op="upsert",
        payload={"id": sale.id, "outstanding_balance": sale.outstanding_balance},
    )
    emit_outbox(
        entity="customer",
        entity_id=customer.id,
        op="upsert",
        payload={"id": customer.id, "outstanding_balance": customer.outstanding_balance},
    )
    logger.info(
        "credit_payment_recorded",
        extra={"payment_id": str(payment.id), "sale_id": str(sale.id), "customer_id": str(customer.id), "amount": str(amount)},
    )
    return Settlement(sale=sale, amount_settled=amount, payment=payment, settled_line_ids=settled_ids)


@ledger_transaction
def delete_customer(customer_id) -> CustomerDeletion:
    """Remove a customer with all of its sales, line items and payments, or nothing at all."""
    customer = _lock_customer(customer_id)
    if customer.outstanding_balance > 0:
        logger.warning(
            "customer_deleted_with_balance",
            extra={"customer_id": str(customer.id), "amount": str(customer.outstanding_balance)},
        )

    sale_ids = list(CreditSale.objects.select_for_update().filter(customer=customer).values_list("id", flat=True))
    line_items_deleted, _ = CreditSaleLineItem.objects.filter(sale_id__in=sale_ids).delete()
    payments_deleted, _ = Payment.objects.filter(customer=customer).delete()
    sales_deleted, _ = CreditSale.objects.filter(id__in=sale_ids).delete()
    deleted_id = customer.id
    customer.delete()

    emit_outbox(entity="customer", entity_id=deleted_id, op="delete", payload={"id": deleted_id, "sale_ids": sale_ids})
    logger.info(
        "customer_deleted",
        extra={
            "customer_id": str(deleted_id),
            "details": {"sales": sales_deleted, "line_items": line_items_deleted, "payments": payments_deleted},
        },
    )
    return CustomerDeletion(
        customer_id=deleted_id,
        sales_deleted=sales_deleted,
        line_items_deleted=line_items_deleted,
        payments_deleted=payments_deleted,
    )
