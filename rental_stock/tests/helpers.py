import os
import unittest
from datetime import date, timedelta
from decimal import Decimal

os.environ.setdefault("RENTAL_STOCK_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("RENTAL_STOCK_CREATE_SCHEMA", "false")

from rental_stock.db.base import Base
from rental_stock.db.session import SessionLocalStock, engine_stock
from rental_stock.models.stock_models import Sale
from rental_stock.services.equipment_service import create_equipment, create_order

ISSUE_DATE = date(2024, 3, 1)
PLANNED_RETURN = ISSUE_DATE + timedelta(days=7)


def sale_builder(quantity, unit_price="10.00"):
    def build(line):
        return Sale(
            EquipmentID=line.EquipmentID,
            Quantity=quantity,
            UnitPrice=Decimal(unit_price),
            TotalAmount=Decimal(unit_price) * quantity,
            Status="pending",
        )

    return build


class StockTestCase(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine_stock)
        Base.metadata.create_all(bind=engine_stock)
        self.db = SessionLocalStock()

    def tearDown(self):
        self.db.close()

    def make_line(self, total_stock=10, name="Scaffold frame", daily_rate=12.5, **kwargs):
        return create_equipment(self.db, name=name, total_stock=total_stock, daily_rate=daily_rate, **kwargs)

    def make_order(self, number=None):
        return create_order(self.db, order_number=number)
