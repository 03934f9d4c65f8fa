import uuid

from django.db import transaction
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from sales.ledger import NewCustomer, create_credit_sale, create_customer, delete_customer, mark_line_items_paid
from sales.models import CreditSale, Payment
from sales.reconciliation import (
    get_full_history_for_customer,
    get_open_sales_for_customer,
    list_customers,
    verify_invariants,
)
from sales.serializers import (
    CreditSaleCreateSerializer,
    CreditSaleSerializer,
    CustomerCreateSerializer,
    CustomerSerializer,
    MarkPaidSerializer,
    PaymentSerializer,
)


def _uuid_param(request, name):
    value = request.query_params.get(name)
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError({name: "Must be a valid UUID."})


class CustomerViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    mixins.DestroyModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = CustomerSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "credit.view",
        "retrieve": "credit.view",
        "create": "customer.create",
        "destroy": "customer.delete",
        "open_sales": "credit.view",
        "history": "credit.view",
    }

    def get_queryset(self):
        return list_customers(
            balance=self.request.query_params.get("balance"),
            search=self.request.query_params.get("search"),
        )

    def get_serializer_class(self):
        if self.action == "create":
            return CustomerCreateSerializer
        return CustomerSerializer

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        with transaction.atomic():
            customer = create_customer(**serializer.validated_data)
            after_snapshot = CustomerSerializer(customer).data
            create_audit_log_from_request(
                request,
                action="customer.create",
                entity="customer",
                entity_id=customer.id,
                after_snapshot=after_snapshot,
            )
        return Response(after_snapshot, status=status.HTTP_201_CREATED)

    def destroy(self, request, pk=None):
        with transaction.atomic():
            result = delete_customer(pk)
            create_audit_log_from_request(
                request,
                action="customer.delete",
                entity="customer",
                entity_id=result.customer_id,
                before_snapshot={
                    "sales_deleted": result.sales_deleted,
                    "line_items_deleted": result.line_items_deleted,
                    "payments_deleted": result.payments_deleted,
                },
            )
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["get"], url_path="open-sales")
    def open_sales(self, request, pk=None):
        return Response(CreditSaleSerializer(get_open_sales_for_customer(pk), many=True).data)

    @action(detail=True, methods=["get"], url_path="history")
    def history(self, request, pk=None):
        return Response(CreditSaleSerializer(get_full_history_for_customer(pk), many=True).data)


class CreditSaleViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, mixins.CreateModelMixin, viewsets.GenericViewSet):
    queryset = CreditSale.objects.select_related("customer").prefetch_related("lines")
    serializer_class = CreditSaleSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "credit.view",
        "retrieve": "credit.view",
        "create": "credit.sale.create",
        "pay": "credit.payment.mark",
    }

    def get_queryset(self):
        qs = super().get_queryset().order_by("-date", "-created_at")
        customer_id = _uuid_param(self.request, "customer_id")
        state = self.request.query_params.get("status")
        if customer_id:
            qs = qs.filter(customer_id=customer_id)
        if state == "open":
            qs = qs.filter(outstanding_balance__gt=0)
        elif state == "settled":
            qs = qs.filter(outstanding_balance=0)
        return qs

    def get_serializer_class(self):
        if self.action == "create":
            return CreditSaleCreateSerializer
        if self.action == "pay":
            return MarkPaidSerializer
        return CreditSaleSerializer

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        customer = data.get("customer_id")
        if customer is None:
            customer = NewCustomer(**data["customer"])

        with transaction.atomic():
            sale = create_credit_sale(customer, data["lines"], date=data.get("date"))
            after_snapshot = CreditSaleSerializer(sale).data
            create_audit_log_from_request(
                request,
                action="credit_sale.create",
                entity="credit_sale",
                entity_id=sale.id,
                after_snapshot=after_snapshot,
            )
        return Response(after_snapshot, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="pay")
    def pay(self, request, pk=None):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        with transaction.atomic():
            settlement = mark_line_items_paid(pk, serializer.validated_data["line_item_ids"])
            if settlement.payment is not None:
                create_audit_log_from_request(
                    request,
                    action="credit_sale.pay",
                    entity="credit_sale",
                    entity_id=settlement.sale.id,
                    after_snapshot={
                        "payment_id": str(settlement.payment.id),
                        "amount": str(settlement.amount_settled),
                        "line_item_ids": [str(line_id) for line_id in settlement.settled_line_ids],
                    },
                )
        sale = CreditSale.objects.select_related("customer").prefetch_related("lines").get(id=settlement.sale.id)
        return Response(
            {
                "amount_settled": str(settlement.amount_settled),
                "payment_id": str(settlement.payment.id) if settlement.payment else None,
                "settled_line_ids": [str(line_id) for line_id in settlement.settled_line_ids],
                "sale": CreditSaleSerializer(sale).data,
            }
        )


class PaymentViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Payment.objects.prefetch_related("settled_lines")
    serializer_class = PaymentSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "credit.view", "retrieve": "credit.view"}

    def get_queryset(self):
        qs = super().get_queryset().order_by("-created_at")
        customer_id = _uuid_param(self.request, "customer_id")
        sale_id = _uuid_param(self.request, "sale_id")
        if customer_id:
            qs = qs.filter(customer_id=customer_id)
        if sale_id:
            qs = qs.filter(sale_id=sale_id)
        return qs


class ReconciliationView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "ledger.reconcile"}

    def get(self, request):
        return Response(verify_invariants().as_dict())
