from django.db import transaction
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import AuditedMutationMixin, create_audit_log_from_request
from common.pagination import LedgerPagination
from common.permissions import RoleCapabilityPermission
from common.store import parse_uuid, unique_field
from inventory.models import Product, StockMovement, StockRecord
from inventory.serializers import (
    ProductSerializer,
    StockMovementCreateSerializer,
    StockMovementSerializer,
    StockRecordSerializer,
    StockThresholdSerializer,
)
from inventory.services import apply_movement, create_product, deactivate_product, stock_records_with_levels, update_thresholds

UUID_LOOKUP = r"[0-9a-fA-F-]{36}"


def query_flag(value):
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


class ProductViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Product.objects.all().order_by("name")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "catalog.view",
        "retrieve": "catalog.view",
        "create": "catalog.manage",
        "update": "catalog.manage",
        "partial_update": "catalog.manage",
        "destroy": "catalog.manage",
    }
    lookup_value_regex = UUID_LOOKUP
    audit_entity = "product"

    def get_queryset(self):
        qs = super().get_queryset()
        if self.action == "list" and not query_flag(self.request.query_params.get("include_inactive")):
            qs = qs.filter(is_active=True)
        category = self.request.query_params.get("category")
        if category:
            qs = qs.filter(category=category)
        return qs

    def perform_create(self, serializer):
        with transaction.atomic():
            product = create_product(**serializer.validated_data)
            serializer.instance = product
            self._audit(action="product.create", instance=product, after_snapshot=self.get_serializer(product).data)

    def perform_update(self, serializer):
        with unique_field("sku", serializer.validated_data.get("sku")), transaction.atomic():
            super().perform_update(serializer)

    def destroy(self, request, *args, **kwargs):
        product = self.get_object()
        before_snapshot = self.get_serializer(product).data
        with transaction.atomic():
            product = deactivate_product(product.id)
            self._audit(
                action="product.deactivate",
                instance=product,
                before_snapshot=before_snapshot,
                after_snapshot=self.get_serializer(product).data,
            )
        return Response(status=status.HTTP_204_NO_CONTENT)


class StockRecordViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockRecord.objects.select_related("product")
    serializer_class = StockRecordSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "stock.view", "retrieve": "stock.view", "thresholds": "stock.thresholds"}
    lookup_value_regex = UUID_LOOKUP

    def list(self, request, *args, **kwargs):
        rows = stock_records_with_levels(request.query_params.get("level") or None)
        page = self.paginate_queryset(rows)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return Response(self.get_serializer(rows, many=True).data)

    @action(detail=True, methods=["post"], url_path="thresholds")
    def thresholds(self, request, pk=None):
        record = self.get_object()
        serializer = StockThresholdSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        before_snapshot = self.get_serializer(record).data
        with transaction.atomic():
            record = update_thresholds(record.product_id, **serializer.validated_data)
            payload = self.get_serializer(record).data
            create_audit_log_from_request(
                request,
                action="stock.thresholds",
                entity="stock_record",
                entity_id=record.id,
                before_snapshot=before_snapshot,
                after_snapshot=payload,
            )
        return Response(payload)


class StockMovementViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, mixins.CreateModelMixin, viewsets.GenericViewSet):
    queryset = StockMovement.objects.select_related("product", "actor").order_by("-created_at")
    serializer_class = StockMovementSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "stock.view", "retrieve": "stock.view", "create": "stock.move"}
    pagination_class = LedgerPagination
    lookup_value_regex = UUID_LOOKUP

    def get_queryset(self):
        qs = super().get_queryset()
        product_id = self.request.query_params.get("product_id")
        kind = self.request.query_params.get("kind")
        if product_id:
            product_uuid = parse_uuid(product_id)
            qs = qs.filter(product_id=product_uuid) if product_uuid else qs.none()
        if kind:
            qs = qs.filter(kind=kind)
        return qs

    def create(self, request, *args, **kwargs):
        serializer = StockMovementCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        with transaction.atomic():
            result = apply_movement(
                data["product_id"],
                data["kind"],
                data["quantity"],
                request.user.id,
                data.get("notes", ""),
                reference=data.get("reference"),
            )
            payload = {
                "movement": StockMovementSerializer(result.movement).data,
                "stock": StockRecordSerializer(result.record).data,
            }
            create_audit_log_from_request(
                request,
                action="stock.movement",
                entity="stock_record",
                entity_id=result.record.id,
                after_snapshot=payload,
            )
        return Response(payload, status=status.HTTP_201_CREATED)
