from django.db import transaction
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from inventory.catalog import get_product
from inventory.ledger import purge_movements, record_movement, record_movement_batch
from inventory.models import Product
from inventory.serializers import (
    MovementBatchSerializer,
    MovementCreateSerializer,
    MovementSerializer,
    ProductSerializer,
    StockAlertSerializer,
)
from inventory.services import get_movements_for_product, inventory_totals, list_movements, low_stock_alerts


class ProductViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Product.objects.all()
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "snapshot": "inventory.view",
        "movements": "inventory.view",
        "low_stock": "inventory.view",
        "totals": "inventory.view",
    }

    def get_queryset(self):
        qs = super().get_queryset().order_by("name")
        category = self.request.query_params.get("category")
        search = self.request.query_params.get("search")
        if self.request.query_params.get("include_inactive") not in {"1", "true"}:
            qs = qs.filter(is_active=True)
        if category:
            qs = qs.filter(category=category)
        if search:
            qs = qs.filter(name__icontains=search)
        return qs

    @action(detail=True, methods=["get"], url_path="snapshot")
    def snapshot(self, request, pk=None):
        return Response(get_product(pk))

    @action(detail=True, methods=["get"], url_path="movements")
    def movements(self, request, pk=None):
        qs = get_movements_for_product(pk)
        page = self.paginate_queryset(qs)
        if page is not None:
            return self.get_paginated_response(MovementSerializer(page, many=True).data)
        return Response(MovementSerializer(qs, many=True).data)

    @action(detail=False, methods=["get"], url_path="low-stock")
    def low_stock(self, request):
        alerts = low_stock_alerts()
        return Response({"count": len(alerts), "results": StockAlertSerializer(alerts, many=True).data})

    @action(detail=False, methods=["get"], url_path="totals")
    def totals(self, request):
        return Response(inventory_totals())


class MovementViewSet(mixins.ListModelMixin, mixins.CreateModelMixin, viewsets.GenericViewSet):
    serializer_class = MovementSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "create": "stock.move",
        "batch": "stock.move",
        "purge": "stock.purge",
    }

    def get_queryset(self):
        return list_movements(
            product_id=self.request.query_params.get("product_id"),
            movement_type=self.request.query_params.get("type"),
        )

    def get_serializer_class(self):
        if self.action == "create":
            return MovementCreateSerializer
        if self.action == "batch":
            return MovementBatchSerializer
        return MovementSerializer

    def _audit(self, *, action, movement):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity="movement",
            entity_id=movement.id,
            after_snapshot=MovementSerializer(movement).data,
        )

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        with transaction.atomic():
            movement = record_movement(data["product_id"], data["type"], data["quantity"], data["reason"])
            self._audit(action="movement.create", movement=movement)
        return Response(MovementSerializer(movement).data, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"], url_path="batch")
    def batch(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        with transaction.atomic():
            movements = record_movement_batch(serializer.validated_data["items"])
            for movement in movements:
                self._audit(action="movement.batch", movement=movement)
        return Response({"movements": MovementSerializer(movements, many=True).data}, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"], url_path="purge")
    def purge(self, request):
        with transaction.atomic():
            deleted = purge_movements()
            create_audit_log_from_request(request, action="movement.purge", entity="movement", after_snapshot={"deleted": deleted})
        return Response({"deleted": deleted})
