from django.db import transaction
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import AuditedMutationMixin, create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from common.store import parse_uuid
from sales.models import Customer, Invoice
from sales.serializers import (
    CustomerSerializer,
    InvoiceCreateSerializer,
    InvoiceSerializer,
    InvoiceStatusSerializer,
    MarkOverdueSerializer,
)
from sales.services import LineSelection, create_invoice, delete_customer, mark_overdue_invoices, transition_status

UUID_LOOKUP = r"[0-9a-fA-F-]{36}"


class CustomerViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Customer.objects.all().order_by("name")
    serializer_class = CustomerSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "customers.view",
        "retrieve": "customers.view",
        "create": "customers.manage",
        "update": "customers.manage",
        "partial_update": "customers.manage",
        "destroy": "customers.manage",
    }
    lookup_value_regex = UUID_LOOKUP
    audit_entity = "customer"

    def get_queryset(self):
        qs = super().get_queryset()
        search = self.request.query_params.get("search")
        if search:
            qs = qs.filter(name__icontains=search)
        return qs

    def destroy(self, request, *args, **kwargs):
        customer = self.get_object()
        before_snapshot = self.get_serializer(customer).data
        with transaction.atomic():
            delete_customer(customer.id)
            create_audit_log_from_request(
                request,
                action="customer.delete",
                entity="customer",
                entity_id=before_snapshot["id"],
                before_snapshot=before_snapshot,
            )
        return Response(status=status.HTTP_204_NO_CONTENT)


class InvoiceViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, mixins.CreateModelMixin, viewsets.GenericViewSet):
    queryset = Invoice.objects.select_related("customer").prefetch_related("items__product").order_by("-created_at")
    serializer_class = InvoiceSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "invoices.view",
        "retrieve": "invoices.view",
        "create": "invoices.create",
        "set_status": "invoices.status",
        "mark_overdue": "invoices.mark_overdue",
    }
    lookup_value_regex = UUID_LOOKUP

    def get_queryset(self):
        qs = super().get_queryset()
        status_filter = self.request.query_params.get("status")
        customer_id = self.request.query_params.get("customer_id")
        if status_filter:
            qs = qs.filter(status=status_filter)
        if customer_id:
            customer_uuid = parse_uuid(customer_id)
            qs = qs.filter(customer_id=customer_uuid) if customer_uuid else qs.none()
        return qs

    def create(self, request, *args, **kwargs):
        serializer = InvoiceCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        lines = [LineSelection(line["product_id"], line["quantity"], line.get("unit_price_override")) for line in data["lines"]]
        with transaction.atomic():
            invoice = create_invoice(
                data["customer_id"],
                lines,
                request.user.id,
                due_date=data.get("due_date"),
                notes=data.get("notes", ""),
            )
            payload = InvoiceSerializer(invoice).data
            create_audit_log_from_request(
                request,
                action="invoice.create",
                entity="invoice",
                entity_id=invoice.id,
                after_snapshot=payload,
            )
        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="status")
    def set_status(self, request, pk=None):
        invoice = self.get_object()
        serializer = InvoiceStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        previous_status = invoice.status
        with transaction.atomic():
            invoice = transition_status(invoice.id, serializer.validated_data["status"])
            payload = InvoiceSerializer(invoice).data
            create_audit_log_from_request(
                request,
                action="invoice.status",
                entity="invoice",
                entity_id=invoice.id,
                before_snapshot={"status": previous_status},
                after_snapshot={"status": invoice.status, "paid_at": payload["paid_at"]},
            )
        return Response(payload)

    @action(detail=False, methods=["post"], url_path="mark-overdue")
    def mark_overdue(self, request):
        serializer = MarkOverdueSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        as_of = serializer.validated_data.get("as_of")

        with transaction.atomic():
            updated = mark_overdue_invoices(as_of)
            create_audit_log_from_request(
                request,
                action="invoice.mark_overdue",
                entity="invoice",
                after_snapshot={"as_of": as_of, "updated": updated},
            )
        return Response({"updated": updated})
