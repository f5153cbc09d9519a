import unittest
from decimal import Decimal
from typing import Any, Dict, Optional

import mongomock
from fastapi.testclient import TestClient

import accounts
import catalog
import salesmen
from auth import WholesalerActor, create_access_token
from connections import auto_approve
from database import ensure_indexes, get_db
from main import app
from schemas import RequestedBy, Role, SalesmanPermissions

PASSWORD = "secret123"

EXAMPLE_PRODUCT = {
    "name": "Basmati Rice 5kg",
    "description": "Long grain rice",
    "category": "Food & Beverages",
    "brand": "Harvest",
    "sku": "RICE-5KG",
    "moq": 10,
    "stock_quantity": 100,
    "pricing_tiers": [
        {"min_quantity": 10, "max_quantity": 49, "price_per_unit": Decimal("9.00")},
        {"min_quantity": 50, "max_quantity": None, "price_per_unit": Decimal("8.00")},
    ],
    "base_price": Decimal("10.00"),
    "gst_percentage": Decimal("18"),
}


class MarketplaceTestCase(unittest.TestCase):
    """Runs the API against an in-memory Mongo and offers seeding shortcuts."""

    def setUp(self):
        self.mongo = mongomock.MongoClient(tz_aware=True)
        self.db = self.mongo["marketplace_test"]
        ensure_indexes(self.db)
        app.dependency_overrides[get_db] = lambda: self.db
        self.client = TestClient(app)
        self._seq = 0

    def tearDown(self):
        app.dependency_overrides.clear()
        self.mongo.close()

    # ---------- Seeding ----------

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def make_wholesaler(self, **overrides: Any) -> Dict[str, Any]:
        n = self._next()
        data = {
            "business_name": f"Wholesaler {n}",
            "owner_name": f"Owner {n}",
            "email": f"wholesaler{n}@example.com",
            "phone": f"98000000{n:02d}",
            "city": "Pune",
            "state": "Maharashtra",
            **overrides,
        }
        return accounts.create_wholesaler(self.db, data, PASSWORD)

    def make_retailer(self, **overrides: Any) -> Dict[str, Any]:
        n = self._next()
        data = {
            "business_name": f"Retailer {n}",
            "owner_name": f"Shopkeeper {n}",
            "email": f"retailer{n}@example.com",
            "phone": f"97000000{n:02d}",
            "business_address": f"{n} Market Road",
            "city": "Pune",
            **overrides,
        }
        return accounts.create_retailer(self.db, data, PASSWORD)

    def make_salesman(self, wholesaler: Dict[str, Any], **permissions: bool) -> Dict[str, Any]:
        n = self._next()
        return salesmen.create_salesman(
            self.db, str(wholesaler["_id"]), f"Salesman {n}", f"96000000{n:02d}",
            permissions=SalesmanPermissions(**permissions),
        )

    def make_product(self, wholesaler: Dict[str, Any], **overrides: Any) -> Dict[str, Any]:
        actor = WholesalerActor(id=str(wholesaler["_id"]))
        return catalog.create_product(self.db, actor, {**EXAMPLE_PRODUCT, **overrides})

    def connect(self, wholesaler: Dict[str, Any], retailer: Dict[str, Any]) -> Dict[str, Any]:
        return auto_approve(self.db, str(wholesaler["_id"]), str(retailer["_id"]), RequestedBy.WHOLESALER)

    # ---------- Requests ----------

    def auth_headers(self, doc: Dict[str, Any], role: Role) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(str(doc['_id']), role.value)}"}

    def as_wholesaler(self, doc: Dict[str, Any]) -> Dict[str, str]:
        return self.auth_headers(doc, Role.WHOLESALER)

    def as_retailer(self, doc: Dict[str, Any]) -> Dict[str, str]:
        return self.auth_headers(doc, Role.RETAILER)

    def as_salesman(self, doc: Dict[str, Any]) -> Dict[str, str]:
        return self.auth_headers(doc, Role.SALESMAN)

    def stock_of(self, product: Dict[str, Any]) -> int:
        return self.db["product"].find_one({"_id": product["_id"]})["stock_quantity"]

    def add_to_cart(self, retailer: Dict[str, Any], product: Dict[str, Any], quantity: int,
                    salesman: Optional[Dict[str, Any]] = None):
        body = {"product_id": str(product["_id"]), "quantity": quantity}
        if salesman:
            return self.client.post(f"/api/salesmen/cart/{retailer['_id']}/add", json=body,
                                    headers=self.as_salesman(salesman))
        return self.client.post("/api/cart/add", json=body, headers=self.as_retailer(retailer))
