import unittest
from unittest import mock

from config import get_settings

from tests.utils import MarketplaceTestCase


class SalesmanManagementTestCase(MarketplaceTestCase):
    def setUp(self):
        super().setUp()
        self.wholesaler = self.make_wholesaler()
        self.headers = self.as_wholesaler(self.wholesaler)

    def create(self, **body):
        payload = {"name": "Vikram", "phone": "9000011111", **body}
        return self.client.post("/api/salesmen/create", json=payload, headers=self.headers)

    def test_create_with_default_permissions(self):
        resp = self.create()
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertNotIn("password", body)
        self.assertTrue(body["requires_password_setup"])
        self.assertEqual(body["permissions"], {
            "can_add_products": True,
            "can_delete_products": False,
            "can_add_brands": True,
            "can_add_retailers": True,
            "can_delete_retailers": False,
            "can_view_all_retailers": True,
            "can_place_orders": True,
        })

        # temporary password is the phone number
        resp = self.client.post("/api/auth/login",
                                json={"email": "9000011111", "password": "9000011111", "user_type": "salesman"})
        self.assertTrue(resp.json()["requires_password_setup"])

    def test_duplicate_phone(self):
        self.create()
        self.assertEqual(self.create().status_code, 409)

    def test_update_merges_permissions(self):
        salesman = self.create().json()
        resp = self.client.put(f"/api/salesmen/{salesman['id']}",
                               json={"permissions": {"can_delete_products": True}}, headers=self.headers)
        permissions = resp.json()["permissions"]
        self.assertTrue(permissions["can_delete_products"])
        self.assertTrue(permissions["can_add_products"])

    def test_deactivated_salesman_loses_access(self):
        salesman = self.make_salesman(self.wholesaler)
        self.client.put(f"/api/salesmen/{salesman['_id']}", json={"is_active": False}, headers=self.headers)
        resp = self.client.get("/api/salesmen/profile", headers=self.as_salesman(salesman))
        self.assertEqual(resp.status_code, 404)

    def test_other_wholesaler_cannot_touch(self):
        salesman = self.make_salesman(self.wholesaler)
        other = self.as_wholesaler(self.make_wholesaler())
        self.assertEqual(self.client.delete(f"/api/salesmen/{salesman['_id']}", headers=other).status_code, 404)
        self.assertEqual(self.client.delete(f"/api/salesmen/{salesman['_id']}", headers=self.headers).status_code,
                         200)
        listed = self.client.get("/api/salesmen/my-salesmen", headers=self.headers).json()
        self.assertEqual(listed, [])

    def test_legacy_document_without_permissions(self):
        salesman = self.make_salesman(self.wholesaler)
        self.db["salesman"].update_one({"_id": salesman["_id"]}, {"$unset": {"permissions": ""}})
        resp = self.client.get("/api/salesmen/my-permissions", headers=self.as_salesman(salesman))
        self.assertTrue(resp.json()["can_place_orders"])
        self.assertFalse(resp.json()["can_delete_products"])


class SalesmanRetailersTestCase(MarketplaceTestCase):
    def setUp(self):
        super().setUp()
        self.wholesaler = self.make_wholesaler()
        self.salesman = self.make_salesman(self.wholesaler)
        self.headers = self.as_salesman(self.salesman)

    def add(self, salesman_headers=None, **overrides):
        payload = {"business_name": "Lane Mart", "owner_name": "Meena", "phone": "9555500000", **overrides}
        return self.client.post("/api/salesmen/add-retailer", json=payload, headers=salesman_headers or self.headers)

    def test_added_retailer_is_connected(self):
        resp = self.add()
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["connection_status"], "approved")
        retailer = self.db["retailer"].find_one({"phone": "9555500000"})
        self.assertTrue(retailer["requires_password_setup"])

        rows = self.client.get("/api/salesmen/my-retailers", headers=self.headers).json()
        self.assertEqual(len(rows), 1)
        self.assertTrue(rows[0]["added_by_me"])

    def test_pending_when_approval_required(self):
        with mock.patch.object(get_settings(), "salesman_retailers_require_approval", True):
            resp = self.add()
        self.assertEqual(resp.json()["connection_status"], "pending")
        pending = self.client.get("/api/salesmen/pending-retailers",
                                  headers=self.as_wholesaler(self.wholesaler)).json()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0]["salesman_name"], self.salesman["name"])

    def test_existing_retailer_is_linked_once(self):
        retailer = self.make_retailer(phone="9555500000")
        resp = self.add()
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["retailer"]["id"], str(retailer["_id"]))
        self.assertEqual(self.add().status_code, 409)

    def test_requires_permission(self):
        blocked = self.make_salesman(self.wholesaler, can_add_retailers=False)
        self.assertEqual(self.add(self.as_salesman(blocked)).status_code, 403)

    def test_restricted_view_only_shows_own_retailers(self):
        self.connect(self.wholesaler, self.make_retailer())
        self.add()
        restricted = self.make_salesman(self.wholesaler, can_view_all_retailers=False)

        everyone = self.client.get("/api/salesmen/my-retailers", headers=self.headers).json()
        self.assertEqual(len(everyone), 2)
        own = self.client.get("/api/salesmen/my-retailers", headers=self.as_salesman(restricted)).json()
        self.assertEqual(own, [])


if __name__ == "__main__":
    unittest.main()
