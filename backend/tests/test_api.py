import unittest
from decimal import Decimal

from fastapi.testclient import TestClient

from tests import TempDatabaseTestCase

import main

D = Decimal


class BillApiTests(TempDatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client = TestClient(main.app)

    def create_bill(self, **overrides):
        payload = {
            "title": "Team dinner",
            "payer_display_name": "Alice",
            "tax_percentage": 10,
            "service_percentage": 5,
            "tip_amount": "20.00",
            "items": [
                {"name": "Item A", "quantity": 1, "unit_price": "30.00", "total_price": "30.00"},
                {"name": "Item B", "quantity": 1, "unit_price": "20.00", "total_price": "20.00"},
            ],
        }
        payload.update(overrides)
        resp = self.client.post("/bills", json=payload)
        self.assertEqual(resp.status_code, 201, resp.text)
        data = resp.json()
        return data["bill"], data["session_token"]

    def join(self, bill_id: str, name: str):
        resp = self.client.post(f"/bills/{bill_id}/participants", json={"display_name": name})
        self.assertEqual(resp.status_code, 201, resp.text)
        data = resp.json()
        return data["participant"], data["session_token"]

    def claim(self, bill_id: str, item_id: str, participant_id: str, token: str):
        return self.client.post(
            f"/bills/{bill_id}/items/{item_id}/claim",
            json={"participant_id": participant_id},
            headers={"X-Session-Token": token},
        )

    def test_split_and_finalize_flow(self) -> None:
        bill, payer_token = self.create_bill()
        bill_id = bill["id"]
        self.assertEqual(bill["status"], "OPEN")
        payer = bill["participants"][0]
        self.assertTrue(payer["is_payer"])
        bob, bob_token = self.join(bill_id, "Bob")
        item_a = bill["items"][0]["id"]

        self.assertEqual(self.claim(bill_id, item_a, payer["id"], payer_token).status_code, 201)
        self.assertEqual(self.claim(bill_id, item_a, bob["id"], bob_token).status_code, 201)

        resp = self.client.get(f"/bills/{bill_id}/totals")
        self.assertEqual(resp.status_code, 200)
        provisional = resp.json()
        self.assertFalse(provisional["is_final"])
        alice_total, bob_total = provisional["totals"]
        self.assertIsInstance(alice_total["total"], str)
        self.assertEqual(D(alice_total["subtotal"]), D("35"))
        self.assertEqual(D(alice_total["tax_share"]), D("3.5"))
        self.assertEqual(D(alice_total["service_share"]), D("1.75"))
        self.assertEqual(D(alice_total["tip_share"]), D("14"))
        self.assertEqual(D(alice_total["total"]), D("54.25"))
        self.assertEqual(D(bob_total["total"]), D("23.25"))

        resp = self.client.post(f"/bills/{bill_id}/finalize", headers={"X-Session-Token": payer_token})
        self.assertEqual(resp.status_code, 200, resp.text)
        finalized = resp.json()
        self.assertEqual(finalized["bill"]["status"], "FINALIZED")
        self.assertEqual(D(finalized["bill"]["total_amount"]), D("77.50"))
        self.assertEqual(
            [D(t["total"]) for t in finalized["totals"]],
            [D(t["total"]) for t in provisional["totals"]],
        )

        frozen = self.client.get(f"/bills/{bill_id}/totals").json()
        self.assertTrue(frozen["is_final"])
        self.assertEqual([t["total"] for t in frozen["totals"]], [t["total"] for t in finalized["totals"]])

        resp = self.client.get(f"/bills/{bill_id}/final-totals")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["totals"]), 2)

        resp = self.client.post(f"/bills/{bill_id}/finalize", headers={"X-Session-Token": payer_token})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"], "Bill already finalized")

        resp = self.claim(bill_id, bill["items"][1]["id"], bob["id"], bob_token)
        self.assertEqual(resp.status_code, 400)

    def test_only_payer_can_finalize(self) -> None:
        bill, _ = self.create_bill()
        _, bob_token = self.join(bill["id"], "Bob")

        resp = self.client.post(f"/bills/{bill['id']}/finalize", headers={"X-Session-Token": bob_token})
        self.assertEqual(resp.status_code, 403)
        resp = self.client.post(f"/bills/{bill['id']}/finalize")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self.client.get(f"/bills/{bill['id']}").json()["bill"]["status"], "OPEN")

    def test_final_totals_unavailable_before_finalize(self) -> None:
        bill, _ = self.create_bill()
        self.assertEqual(self.client.get(f"/bills/{bill['id']}/final-totals").status_code, 400)

    def test_unknown_bill(self) -> None:
        self.assertEqual(self.client.get("/bills/nope").status_code, 404)
        self.assertEqual(self.client.get("/bills/nope/totals").status_code, 404)
        self.assertEqual(self.client.post("/bills/nope/finalize").status_code, 404)
        self.assertEqual(self.client.get("/bills", params={"code": "NOPE123"}).status_code, 404)

    def test_draft_bill_opens_on_first_item(self) -> None:
        bill, token = self.create_bill(items=[])
        self.assertEqual(bill["status"], "DRAFT")

        resp = self.client.post(
            f"/bills/{bill['id']}/items",
            json={"name": "Soup", "quantity": 2, "unit_price": "4.50", "total_price": "9.00"},
            headers={"X-Session-Token": token},
        )
        self.assertEqual(resp.status_code, 201, resp.text)
        self.assertEqual(resp.json()["item"]["total_price"], "9.00")
        self.assertEqual(self.client.get(f"/bills/{bill['id']}").json()["bill"]["status"], "OPEN")

    def test_item_edits_are_payer_only(self) -> None:
        bill, token = self.create_bill()
        _, bob_token = self.join(bill["id"], "Bob")
        item_id = bill["items"][0]["id"]

        resp = self.client.patch(
            f"/bills/{bill['id']}/items/{item_id}",
            json={"total_price": "1.00"},
            headers={"X-Session-Token": bob_token},
        )
        self.assertEqual(resp.status_code, 403)

        resp = self.client.patch(
            f"/bills/{bill['id']}/items/{item_id}",
            json={"total_price": "33.00"},
            headers={"X-Session-Token": token},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["item"]["total_price"], "33.00")

        resp = self.client.delete(f"/bills/{bill['id']}/items/{item_id}", headers={"X-Session-Token": token})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(self.client.get(f"/bills/{bill['id']}").json()["bill"]["items"]), 1)

    def test_update_settings(self) -> None:
        bill, token = self.create_bill()
        resp = self.client.patch(
            f"/bills/{bill['id']}",
            json={"tax_percentage": "8.5", "tip_amount": "0"},
            headers={"X-Session-Token": token},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        updated = resp.json()["bill"]
        self.assertEqual(updated["tax_percentage"], "8.5")
        self.assertEqual(D(updated["tip_amount"]), D("0"))
        self.assertEqual(D(updated["service_percentage"]), D("5"))

    def test_validation_errors(self) -> None:
        resp = self.client.post("/bills", json={"title": "X", "payer_display_name": "A", "tax_percentage": 150})
        self.assertEqual(resp.status_code, 422)
        resp = self.client.post(
            "/bills",
            json={
                "title": "X",
                "payer_display_name": "A",
                "items": [{"name": "Bad", "quantity": 0, "unit_price": "1", "total_price": "1"}],
            },
        )
        self.assertEqual(resp.status_code, 422)
        resp = self.client.post(
            "/bills",
            json={
                "title": "X",
                "payer_display_name": "A",
                "items": [{"name": "Bad", "quantity": 1, "unit_price": "1", "total_price": "-1"}],
            },
        )
        self.assertEqual(resp.status_code, 422)

    def test_claim_twice_is_idempotent(self) -> None:
        bill, _ = self.create_bill()
        bob, bob_token = self.join(bill["id"], "Bob")
        item_id = bill["items"][0]["id"]

        first = self.claim(bill["id"], item_id, bob["id"], bob_token).json()
        second = self.claim(bill["id"], item_id, bob["id"], bob_token).json()
        self.assertTrue(first["created"])
        self.assertFalse(second["created"])

        state = self.client.get(f"/bills/{bill['id']}").json()["bill"]
        self.assertEqual(state["items"][0]["claimed_by"], [bob["id"]])

        resp = self.client.post(
            f"/bills/{bill['id']}/items/{item_id}/unclaim",
            json={"participant_id": bob["id"]},
            headers={"X-Session-Token": bob_token},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["removed"])

    def test_compact_totals_round_for_display(self) -> None:
        bill, token = self.create_bill(
            tax_percentage=0,
            service_percentage=0,
            tip_amount="0",
            items=[{"name": "Cake", "quantity": 1, "unit_price": "10.00", "total_price": "10.00"}],
        )
        item_id = bill["items"][0]["id"]
        payer_id = bill["participants"][0]["id"]
        bob, bob_token = self.join(bill["id"], "Bob")
        carol, carol_token = self.join(bill["id"], "Carol")
        self.claim(bill["id"], item_id, payer_id, token)
        self.claim(bill["id"], item_id, bob["id"], bob_token)
        self.claim(bill["id"], item_id, carol["id"], carol_token)

        compact = self.client.get(f"/bills/{bill['id']}/totals", params={"format": "compact"}).json()
        self.assertEqual([t["subtotal"] for t in compact["totals"]], ["3.33", "3.33", "3.33"])
        full = self.client.get(f"/bills/{bill['id']}/totals").json()
        self.assertTrue(full["totals"][0]["subtotal"].startswith("3.3333333333"))

    def test_lookup_by_code_and_participants(self) -> None:
        bill, _ = self.create_bill()
        self.join(bill["id"], "Bob")

        resp = self.client.get("/bills", params={"code": bill["code"]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["bill"]["id"], bill["id"])

        names = [p["display_name"] for p in self.client.get(f"/bills/{bill['id']}/participants").json()["participants"]]
        self.assertEqual(names, ["Alice", "Bob"])
        self.assertNotIn("session_token", resp.json()["bill"]["participants"][0])

    def test_health(self) -> None:
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")


if __name__ == "__main__":
    unittest.main()
