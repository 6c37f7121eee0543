import json

from fastapi.testclient import TestClient

import main


def run_demo() -> None:
    client = TestClient(main.app)

    create_resp = client.post(
        "/bills",
        json={
            "title": "Smoke Demo",
            "payer_display_name": "Alice",
            "tax_percentage": "10",
            "service_percentage": "5",
            "tip_amount": "20.00",
            "items": [
                {"name": "Item A", "quantity": 1, "unit_price": "30.00", "total_price": "30.00"},
                {"name": "Item B", "quantity": 1, "unit_price": "20.00", "total_price": "20.00"},
            ],
        },
    )
    create_resp.raise_for_status()
    created = create_resp.json()
    bill = created["bill"]
    bill_id = bill["id"]
    payer_token = created["session_token"]
    payer_id = bill["participants"][0]["id"]
    item_a = bill["items"][0]["id"]

    join_resp = client.post(f"/bills/{bill_id}/participants", json={"display_name": "Bob"})
    join_resp.raise_for_status()
    bob_id = join_resp.json()["participant"]["id"]
    bob_token = join_resp.json()["session_token"]

    for participant_id, token in ((payer_id, payer_token), (bob_id, bob_token)):
        client.post(
            f"/bills/{bill_id}/items/{item_a}/claim",
            json={"participant_id": participant_id},
            headers={"X-Session-Token": token},
        ).raise_for_status()

    totals_resp = client.get(f"/bills/{bill_id}/totals?format=compact")
    totals_resp.raise_for_status()

    finalize_resp = client.post(f"/bills/{bill_id}/finalize", headers={"X-Session-Token": payer_token})
    finalize_resp.raise_for_status()
    finalized = finalize_resp.json()

    print("=== Smoke Demo OK ===")
    print("Bill ID:", bill_id, "code:", bill["code"])
    print("Provisional totals (compact):")
    print(json.dumps(totals_resp.json(), indent=2))
    print("Status:", finalized["bill"]["status"], "grand total:", finalized["bill"]["total_amount"])


if __name__ == "__main__":
    run_demo()
