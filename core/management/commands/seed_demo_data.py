from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from inventory.ledger import record_movement
from inventory.models import Movement, Product
from sales.ledger import create_credit_sale, create_customer
from sales.models import Customer

DEMO_PRODUCTS = [
    {"code": "BEB-001", "name": "Agua mineral 500ml", "category": "Bebidas", "price": Decimal("1.50"), "cost": Decimal("0.80"), "min_stock": 10, "stock": 48},
    {"code": "BEB-002", "name": "Gaseosa cola 1.5l", "category": "Bebidas", "price": Decimal("3.20"), "cost": Decimal("2.10"), "min_stock": 8, "stock": 24},
    {"code": "ALM-001", "name": "Yerba mate 1kg", "category": "Almacen", "price": Decimal("6.75"), "cost": Decimal("4.90"), "min_stock": 5, "stock": 4},
    {"code": "ALM-002", "name": "Azucar 1kg", "category": "Almacen", "price": Decimal("2.10"), "cost": Decimal("1.40"), "min_stock": 6, "stock": 0},
]


class Command(BaseCommand):
    help = "Seed demo users, products, stock and a credit sale for local development."

    def handle(self, *args, **options):
        User = get_user_model()

        for username, role, password, is_superuser in [
            ("admin", User.Role.ADMIN, "admin1234", True),
            ("supervisor", User.Role.SUPERVISOR, "supervisor1234", False),
            ("cashier", User.Role.CASHIER, "cashier1234", False),
        ]:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={
                    "email": f"{username}@example.com",
                    "role": role,
                    "is_staff": is_superuser,
                    "is_superuser": is_superuser,
                    "is_active": True,
                },
            )
            if created:
                user.set_password(password)
                user.save(update_fields=["password"])

        products = {}
        for entry in DEMO_PRODUCTS:
            product, created = Product.objects.get_or_create(
                code=entry["code"],
                defaults={
                    "name": entry["name"],
                    "category": entry["category"],
                    "price": entry["price"],
                    "cost": entry["cost"],
                    "min_stock": entry["min_stock"],
                    "quantity": 0,
                },
            )
            if created and entry["stock"]:
                record_movement(product.id, Movement.Type.ENTRADA, entry["stock"], "Stock inicial")
            products[entry["code"]] = product

        if not Customer.objects.filter(tax_id="20-12345678-9").exists():
            customer = create_customer("Juan Perez", "20-12345678-9", phone="+54 11 5555-0000")
            create_credit_sale(
                customer.id,
                [
                    {"product_id": products["BEB-001"].id, "quantity": 2},
                    {"product_id": products["BEB-002"].id, "quantity": 1},
                ],
            )

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: admin/admin1234, supervisor/supervisor1234, cashier/cashier1234")
