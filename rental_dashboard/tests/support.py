import os
import sys
import unittest
from datetime import datetime
from decimal import Decimal
from pathlib import Path


os.environ.setdefault("RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)

REPO_DIR = Path(__file__).resolve().parents[2]
if str(REPO_DIR) not in sys.path:
    sys.path.insert(0, str(REPO_DIR))

from rental_dashboard.db.base import Base
from rental_dashboard.db.session import SessionLocal, engine
from rental_dashboard.models.rental_models import AppUser, Asset, Order, OrderItem, Product, Profile


SIGNATURE = "data:image/png;base64,iVBORw0KGgo="


class DatabaseTestCase(unittest.TestCase):
    def setUp(self):
        Base.metadata.create_all(engine)
        self.db = SessionLocal()
        self._order_seq = 0

    def tearDown(self):
        self.db.close()
        Base.metadata.drop_all(engine)

    def add_user(self, email="dono@locadora.com.br", business_name="Locadora Sol", cnpj="12.345.678/0001-90"):
        user = AppUser(Email=email, IsActive=True)
        user.Profile = Profile(BusinessName=business_name, BusinessCnpj=cnpj, BusinessCity="Curitiba")
        self.db.add(user)
        self.db.commit()
        return user

    def add_product(self, name="Câmera Sony A7", total=5, price="100.00", kind="trackable", owner_id=None, replacement=None):
        product = Product(
            OwnerID=owner_id,
            Name=name,
            Kind=kind,
            TotalQuantity=total,
            DailyPrice=Decimal(price),
            ReplacementValue=Decimal(replacement) if replacement is not None else None,
        )
        self.db.add(product)
        self.db.commit()
        return product

    def add_asset(self, product, serial):
        asset = Asset(ProductID=product.ProductID, SerialNumber=serial)
        self.db.add(asset)
        self.db.commit()
        return asset

    def add_order(self, start, end, lines, status="reserved", owner_id=None, customer="João Lima", total=None):
        """``lines`` holds ``(product, quantity)`` pairs."""
        self._order_seq += 1
        order = Order(
            OrderNumber=f"LOC-{self._order_seq:03d}",
            OwnerID=owner_id,
            ContractToken=f"token-{self._order_seq}",
            CustomerName=customer,
            StartDate=start,
            EndDate=end,
            Status=status,
            TotalAmount=Decimal(total) if total is not None else Decimal("0"),
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        for product, quantity in lines:
            order.Items.append(OrderItem(ProductID=product.ProductID, Quantity=quantity, UnitPrice=product.DailyPrice))
        self.db.add(order)
        self.db.commit()
        return order
