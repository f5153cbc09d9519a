import re
import unittest
from datetime import datetime, timezone
from decimal import Decimal
from unittest import mock

import orders
from auth import RetailerActor
from errors import InsufficientStock, PartialPlacement

from tests.utils import MarketplaceTestCase


class PlaceOrderTestCase(MarketplaceTestCase):
    def setUp(self):
        super().setUp()
        self.wholesaler = self.make_wholesaler(payment_terms="net_30")
        self.retailer = self.make_retailer()
        self.connect(self.wholesaler, self.retailer)
        self.product = self.make_product(self.wholesaler)
        self.headers = self.as_retailer(self.retailer)

    def place(self, headers=None, **body):
        return self.client.post("/api/orders/place", json=body, headers=headers or self.headers)

    # ---------- Placement ----------

    def test_empty_cart(self):
        resp = self.place()
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["kind"], "empty_cart")

    def test_place_decrements_stock_and_matches_cart(self):
        second = self.make_product(self.wholesaler, name="Wheat Flour", gst_percentage="5")
        self.add_to_cart(self.retailer, self.product, 10)
        self.add_to_cart(self.retailer, second, 50)
        cart = self.client.get("/api/cart", headers=self.headers).json()

        resp = self.place(notes="Deliver before noon")
        self.assertEqual(resp.status_code, 201)
        placed = resp.json()
        self.assertEqual(len(placed), 1)
        order = placed[0]

        self.assertEqual(self.stock_of(self.product), 90)
        self.assertEqual(self.stock_of(second), 50)
        self.assertEqual(Decimal(order["subtotal"]), Decimal(cart["total"]))
        self.assertEqual(Decimal(order["total_amount"]), Decimal(cart["grand_total"]))
        self.assertEqual(Decimal(order["total_amount"]),
                         Decimal(order["subtotal"]) + Decimal(order["gst_amount"]))
        self.assertEqual(order["status"], "pending")
        self.assertEqual(order["payment_status"], "pending")
        self.assertEqual(order["payment_terms"], "net_30")
        self.assertIsNotNone(order["payment_due_date"])
        self.assertEqual(order["delivery_address"], self.retailer["business_address"])
        self.assertEqual(order["notes"], "Deliver before noon")

        # placed lines leave the cart
        cart = self.client.get("/api/cart", headers=self.headers).json()
        self.assertEqual(cart["items"], [])

    def test_order_item_snapshots(self):
        self.add_to_cart(self.retailer, self.product, 10)
        item = self.place().json()[0]["items"][0]
        self.assertEqual(item["product_name"], "Basmati Rice 5kg")
        self.assertEqual(Decimal(item["unit_price"]), Decimal("9.00"))
        self.assertEqual(Decimal(item["total_price"]), Decimal("106.20"))
        self.assertEqual(Decimal(item["gst_amount"]), Decimal("16.20"))

    def test_one_order_per_wholesaler(self):
        other = self.make_wholesaler()
        self.connect(other, self.retailer)
        foreign = self.make_product(other, name="Sugar")
        self.add_to_cart(self.retailer, self.product, 10)
        self.add_to_cart(self.retailer, foreign, 20)
        cart = self.client.get("/api/cart", headers=self.headers).json()

        placed = self.place().json()
        self.assertEqual(len(placed), 2)
        self.assertEqual({o["wholesaler_id"] for o in placed},
                         {str(self.wholesaler["_id"]), str(other["_id"])})
        self.assertEqual(sum(Decimal(o["subtotal"]) for o in placed), Decimal(cart["total"]))
        self.assertEqual(sum(Decimal(o["total_amount"]) for o in placed), Decimal(cart["grand_total"]))

    def test_connection_revalidated_at_checkout(self):
        self.add_to_cart(self.retailer, self.product, 10)
        self.db["connection"].delete_many({})
        resp = self.place()
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["kind"], "not_connected")
        self.assertEqual(self.stock_of(self.product), 100)

    def test_inactive_product_blocks_checkout(self):
        self.add_to_cart(self.retailer, self.product, 10)
        self.db["product"].update_one({"_id": self.product["_id"]}, {"$set": {"is_active": False}})
        resp = self.place()
        self.assertEqual(resp.json()["kind"], "product_unavailable")
        self.assertEqual(self.stock_of(self.product), 100)

    def test_two_checkouts_against_limited_stock(self):
        rival = self.make_retailer()
        self.connect(self.wholesaler, rival)
        self.add_to_cart(self.retailer, self.product, 60)
        self.add_to_cart(rival, self.product, 60)

        first = self.place()
        second = self.place(headers=self.as_retailer(rival))
        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 400)
        self.assertEqual(second.json()["kind"], "insufficient_stock")
        self.assertEqual(self.stock_of(self.product), 40)

    def test_reservation_race_releases_partition(self):
        second = self.make_product(self.wholesaler, name="Wheat Flour")
        self.add_to_cart(self.retailer, self.product, 10)
        self.add_to_cart(self.retailer, second, 10)
        real_reserve = orders._reserve

        def reserve(db, product_id, quantity):
            # stock of the second line vanishes between validation and reservation
            if product_id == str(second["_id"]):
                return False
            return real_reserve(db, product_id, quantity)

        with mock.patch.object(orders, "_reserve", side_effect=reserve):
            with self.assertRaises(InsufficientStock):
                orders.place_order(self.db, RetailerActor(id=str(self.retailer["_id"])))
        self.assertEqual(self.stock_of(self.product), 100)
        self.assertEqual(self.db["order"].count_documents({}), 0)

    def test_partial_placement_reports_placed_orders(self):
        other = self.make_wholesaler()
        self.connect(other, self.retailer)
        foreign = self.make_product(other, name="Sugar")
        self.add_to_cart(self.retailer, self.product, 10)
        self.add_to_cart(self.retailer, foreign, 10)
        real_reserve = orders._reserve

        def reserve(db, product_id, quantity):
            if product_id == str(foreign["_id"]):
                return False
            return real_reserve(db, product_id, quantity)

        with mock.patch.object(orders, "_reserve", side_effect=reserve):
            with self.assertRaises(PartialPlacement) as ctx:
                orders.place_order(self.db, RetailerActor(id=str(self.retailer["_id"])))

        self.assertEqual(len(ctx.exception.extra["placed"]), 1)
        self.assertEqual(ctx.exception.extra["cause"], "insufficient_stock")
        self.assertEqual(self.stock_of(self.product), 90)
        self.assertEqual(self.stock_of(foreign), 100)
        # the unplaced line stays in the cart
        cart = self.db["cart"].find_one({"retailer_id": str(self.retailer["_id"])})
        self.assertEqual([i["product_id"] for i in cart["items"]], [str(foreign["_id"])])

    # ---------- Order numbers ----------

    def test_order_number_format_and_sequence(self):
        day = datetime(2024, 3, 7, tzinfo=timezone.utc)
        first = orders.generate_order_number(self.db, day)
        second = orders.generate_order_number(self.db, day)
        self.assertEqual(first, "ORD2403070001")
        self.assertEqual(second, "ORD2403070002")
        self.assertEqual(orders.generate_order_number(self.db, datetime(2024, 3, 8, tzinfo=timezone.utc)),
                         "ORD2403080001")

    def test_order_number_collision_retries(self):
        self.add_to_cart(self.retailer, self.product, 10)
        today = datetime.now(timezone.utc).strftime("%y%m%d")
        self.db["order"].insert_one({"order_number": f"ORD{today}0001"})
        order = self.place().json()[0]
        self.assertEqual(order["order_number"], f"ORD{today}0002")
        self.assertRegex(order["order_number"], re.compile(r"^ORD\d{6}\d{4}$"))


class OrderLifecycleTestCase(MarketplaceTestCase):
    def setUp(self):
        super().setUp()
        self.wholesaler = self.make_wholesaler()
        self.retailer = self.make_retailer()
        self.connect(self.wholesaler, self.retailer)
        self.product = self.make_product(self.wholesaler)
        self.add_to_cart(self.retailer, self.product, 10)
        self.order = self.client.post("/api/orders/place", json={},
                                      headers=self.as_retailer(self.retailer)).json()[0]
        self.url = f"/api/orders/{self.order['id']}"

    def set_status(self, status, headers=None):
        return self.client.put(f"{self.url}/status", json={"status": status},
                               headers=headers or self.as_wholesaler(self.wholesaler))

    # ---------- Cancellation ----------

    def test_place_then_cancel_restores_stock(self):
        self.assertEqual(self.stock_of(self.product), 90)
        resp = self.client.put(f"{self.url}/cancel", headers=self.as_retailer(self.retailer))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "cancelled")
        self.assertEqual(self.stock_of(self.product), 100)

        # a second cancel must not restore stock again
        resp = self.client.put(f"{self.url}/cancel", headers=self.as_retailer(self.retailer))
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(self.stock_of(self.product), 100)

    def test_cancel_non_pending_fails(self):
        self.set_status("confirmed")
        resp = self.client.put(f"{self.url}/cancel", headers=self.as_retailer(self.retailer))
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["kind"], "invalid_state_transition")
        self.assertEqual(self.stock_of(self.product), 90)

    def test_only_own_retailer_cancels(self):
        other = self.make_retailer()
        resp = self.client.put(f"{self.url}/cancel", headers=self.as_retailer(other))
        self.assertEqual(resp.status_code, 403)
        resp = self.client.put(f"{self.url}/cancel", headers=self.as_wholesaler(self.wholesaler))
        self.assertEqual(resp.status_code, 403)

    # ---------- Fulfillment ----------

    def test_status_moves_forward_only(self):
        self.assertEqual(self.set_status("processing").json()["status"], "processing")
        resp = self.set_status("confirmed")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(self.set_status("delivered").json()["status"], "delivered")
        self.assertEqual(self.set_status("shipped").status_code, 409)
        self.assertEqual(self.stock_of(self.product), 90)

    def test_status_cannot_cancel(self):
        resp = self.set_status("cancelled")
        self.assertEqual(resp.status_code, 409)

    def test_only_owning_wholesaler_updates_status(self):
        salesman = self.make_salesman(self.wholesaler)
        resp = self.set_status("confirmed", self.as_salesman(salesman))
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["kind"], "forbidden")
        self.assertEqual(self.set_status("confirmed", self.as_wholesaler(self.make_wholesaler())).status_code, 403)
        self.assertEqual(self.set_status("confirmed", self.as_retailer(self.retailer)).status_code, 403)
        self.assertEqual(self.db["order"].find_one({})["status"], "pending")

        self.assertEqual(self.set_status("confirmed").json()["status"], "confirmed")

    def test_payment_update(self):
        resp = self.client.put(f"{self.url}/payment", json={"payment_status": "paid", "payment_terms": "net_60"},
                               headers=self.as_wholesaler(self.wholesaler))
        body = resp.json()
        self.assertEqual(body["payment_status"], "paid")
        self.assertEqual(body["payment_terms"], "net_60")

    # ---------- Listings ----------

    def test_listings_and_visibility(self):
        mine = self.client.get("/api/orders/my-orders", headers=self.as_retailer(self.retailer)).json()
        self.assertEqual([o["id"] for o in mine], [self.order["id"]])
        received = self.client.get("/api/orders/received-orders",
                                   headers=self.as_wholesaler(self.wholesaler)).json()
        self.assertEqual(received[0]["retailer"]["business_name"], self.retailer["business_name"])

        outsider = self.make_retailer()
        self.assertEqual(self.client.get(self.url, headers=self.as_retailer(outsider)).status_code, 403)
        salesman = self.make_salesman(self.wholesaler)
        self.assertEqual(self.client.get(self.url, headers=self.as_salesman(salesman)).status_code, 200)


class SalesmanOrderTestCase(MarketplaceTestCase):
    def setUp(self):
        super().setUp()
        self.wholesaler = self.make_wholesaler()
        self.retailer = self.make_retailer()
        self.salesman = self.make_salesman(self.wholesaler)
        self.product = self.make_product(self.wholesaler)
        self.url = f"/api/salesmen/place-order/{self.retailer['_id']}"

    def test_not_connected(self):
        resp = self.client.post(self.url, json={}, headers=self.as_salesman(self.salesman))
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["kind"], "not_connected")

    def test_places_on_behalf_of_retailer(self):
        self.connect(self.wholesaler, self.retailer)
        self.add_to_cart(self.retailer, self.product, 10, salesman=self.salesman)
        resp = self.client.post(self.url, json={"notes": "Call on arrival"}, headers=self.as_salesman(self.salesman))
        self.assertEqual(resp.status_code, 201)
        order = resp.json()[0]
        self.assertEqual(order["placed_by_salesman"], str(self.salesman["_id"]))
        self.assertEqual(order["retailer_id"], str(self.retailer["_id"]))
        self.assertTrue(order["notes"].startswith("[Order placed by Salesman: "))
        self.assertTrue(order["notes"].endswith("Call on arrival"))
        self.assertEqual(self.stock_of(self.product), 90)

        mine = self.client.get("/api/salesmen/my-orders", headers=self.as_salesman(self.salesman)).json()
        self.assertEqual([o["id"] for o in mine], [order["id"]])

    def test_empty_salesman_cart(self):
        self.connect(self.wholesaler, self.retailer)
        resp = self.client.post(self.url, json={}, headers=self.as_salesman(self.salesman))
        self.assertEqual(resp.json()["kind"], "empty_cart")


if __name__ == "__main__":
    unittest.main()
