from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.utils import timezone

from inventory.models import Product, StockMovement
from inventory.services import apply_movement, create_product
from sales.models import Customer, Invoice
from sales.services import LineSelection, create_invoice

DEMO_USERS = [
    ("admin", "admin@example.com", "admin1234", "admin"),
    ("seller", "seller@example.com", "seller1234", "seller"),
    ("warehouse", "warehouse@example.com", "warehouse1234", "warehouse"),
    ("accountant", "accountant@example.com", "accountant1234", "accountant"),
]

DEMO_PRODUCTS = [
    ("SKU-LAPTOP-001", "Laptop 14in", Product.Category.ELECTRONICS, Decimal("100.00"), Decimal("70.00"), 40),
    ("SKU-SHIRT-001", "Cotton Shirt", Product.Category.APPAREL, Decimal("50.00"), Decimal("20.00"), 8),
    ("SKU-COFFEE-001", "Ground Coffee 500g", Product.Category.FOOD, Decimal("7.50"), Decimal("4.10"), 95),
]


class Command(BaseCommand):
    help = "Seed demo users, catalog, stock and one invoice for local development."

    def handle(self, *args, **options):
        User = get_user_model()

        users = {}
        for username, email, password, role in DEMO_USERS:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={"email": email, "role": role, "is_staff": role == "admin", "is_active": True},
            )
            if created:
                user.set_password(password)
                user.save(update_fields=["password"])
            users[role] = user

        products = []
        for sku, name, category, price, cost, opening_qty in DEMO_PRODUCTS:
            product = Product.objects.filter(sku=sku).first()
            if product is None:
                product = create_product(sku=sku, name=name, category=category, price=price, cost=cost)
                apply_movement(
                    product.id,
                    StockMovement.Kind.ENTRY,
                    opening_qty,
                    users["warehouse"].id,
                    "Opening balance",
                    reference="seed",
                )
            products.append(product)

        customer, _ = Customer.objects.get_or_create(
            email="customer@example.com",
            defaults={"name": "Demo Customer", "phone": "+201000000001"},
        )

        if not Invoice.objects.filter(customer=customer).exists():
            invoice = create_invoice(
                customer.id,
                [LineSelection(products[0].id, 2), LineSelection(products[1].id, 1)],
                users["seller"].id,
                due_date=timezone.localdate() + timedelta(days=30),
            )
            self.stdout.write(f"Created invoice {invoice.invoice_number} total={invoice.total}.")

        self.stdout.write(self.style.SUCCESS("Demo data ready."))
