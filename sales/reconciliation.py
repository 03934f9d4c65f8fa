"""
Read side of the credit ledger and the cross-aggregate consistency check.

Nothing here writes. ``verify_invariants`` is what the reconciliation
endpoint and the ``verify_ledger`` command run.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal

from django.db.models import Prefetch, Q, Sum

from common.errors import ConsistencyError, CustomerNotFound, LedgerValidationError
from inventory.services import verify_stock_journal
from sales.models import CreditSale, CreditSaleLineItem, Customer

logger = logging.getLogger(__name__)

BALANCE_FILTERS = ("owing", "settled")


@dataclass(frozen=True)
class Mismatch:
    kind: str
    entity: str
    entity_id: str
    expected: object
    actual: object


@dataclass
class InvariantReport:
    mismatches: list[Mismatch] = field(default_factory=list)

    @property
    def ok(self):
        return not self.mismatches

    def as_dict(self):
        return {
            "ok": self.ok,
            "mismatches": [
                {**asdict(mismatch), "expected": str(mismatch.expected), "actual": str(mismatch.actual)}
                for mismatch in self.mismatches
            ],
        }

    def raise_for_mismatches(self):
        if not self.ok:
            raise ConsistencyError(
                f"{len(self.mismatches)} ledger invariant violation(s) found.",
                details=self.as_dict(),
            )


def _get_customer(customer_id):
    try:
        parsed = customer_id if isinstance(customer_id, uuid.UUID) else uuid.UUID(str(customer_id))
    except (TypeError, ValueError):
        raise CustomerNotFound(details={"customer_id": str(customer_id)})
    customer = Customer.objects.filter(id=parsed).first()
    if customer is None:
        raise CustomerNotFound(details={"customer_id": str(customer_id)})
    return customer


def _sales_with_lines(customer):
    return (
        CreditSale.objects.filter(customer=customer)
        .select_related("customer")
        .prefetch_related(Prefetch("lines", queryset=CreditSaleLineItem.objects.order_by("line_number")))
        .order_by("-date", "-created_at")
    )


def get_open_sales_for_customer(customer_id):
    customer = _get_customer(customer_id)
    return _sales_with_lines(customer).filter(outstanding_balance__gt=0)


def get_full_history_for_customer(customer_id):
    customer = _get_customer(customer_id)
    return _sales_with_lines(customer)


def list_customers(balance=None, search=None):
    qs = Customer.objects.order_by("name")
    if balance not in (None, ""):
        if balance not in BALANCE_FILTERS:
            raise LedgerValidationError(
                "balance must be 'owing' or 'settled'.",
                details={"balance": balance},
            )
        qs = qs.filter(outstanding_balance__gt=0) if balance == "owing" else qs.filter(outstanding_balance=0)
    if search:
        qs = qs.filter(Q(name__icontains=search) | Q(tax_id__icontains=search))
    return qs


def verify_invariants():
    """
    Recompute every stored aggregate from its parts.

    Checks sale totals against their lines, sale balances against unpaid
    lines, customer balances against their sales and the stock journal
    against product quantities.
    """
    zero = Decimal("0.00")
    mismatches = []

    sales = CreditSale.objects.annotate(
        lines_total=Sum("lines__subtotal"),
        unpaid_total=Sum("lines__subtotal", filter=Q(lines__paid=False)),
    ).order_by("created_at")
    for sale in sales.iterator():
        lines_total = sale.lines_total or zero
        unpaid_total = sale.unpaid_total or zero
        if sale.total != lines_total:
            mismatches.append(Mismatch("sale_total", "credit_sale", str(sale.id), lines_total, sale.total))
        if sale.outstanding_balance != unpaid_total:
            mismatches.append(Mismatch("sale_outstanding", "credit_sale", str(sale.id), unpaid_total, sale.outstanding_balance))

    customers = Customer.objects.annotate(sales_outstanding=Sum("credit_sales__outstanding_balance")).order_by("name")
    for customer in customers.iterator():
        expected = customer.sales_outstanding or zero
        if customer.outstanding_balance != expected:
            mismatches.append(
                Mismatch("customer_outstanding", "customer", str(customer.id), expected, customer.outstanding_balance)
            )

    for row in verify_stock_journal():
        mismatches.append(Mismatch(**row))

    report = InvariantReport(mismatches=mismatches)
    if report.ok:
        logger.info("ledger_invariants_verified")
    else:
        logger.error("ledger_invariants_violated", extra={"details": report.as_dict()})
    return report
