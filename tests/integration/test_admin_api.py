import pytest

from conftest import BUYER


@pytest.fixture
def outbox(monkeypatch):
    sent = []
    monkeypatch.setattr("backend.notifications.service.send_all", lambda notes: sent.extend(notes) or len(notes))
    return sent


def test_admin_routes_require_operator(client):
    assert client.get("/api/v1/admin/orders").status_code == 401

def test_list_paid_orders(authenticated_admin_client, store):
    store.add_order("o1", status="paid")
    store.add_order("o2", status="stored")

    r = authenticated_admin_client.get("/api/v1/admin/orders")

    assert r.status_code == 200
    assert [o["id"] for o in r.json()["items"]] == ["o1"]
    assert authenticated_admin_client.get("/api/v1/admin/orders", params={"status": "lost"}).status_code == 400

def test_ship_order(authenticated_admin_client, store, outbox):
    store.add_profile(BUYER["id"], email=BUYER["email"])
    store.add_order("o1", status="paid")

    r = authenticated_admin_client.post("/api/v1/admin/orders/o1/ship",
                                        json={"tracking_number": "RM1", "tracking_carrier": "Royal Mail"})

    assert r.status_code == 200
    assert r.json()["order"]["status"] == "shipped"
    assert [n.kind for n in outbox] == ["tracking"]

    again = authenticated_admin_client.post("/api/v1/admin/orders/o1/ship", json={"tracking_number": "RM1"})
    assert again.status_code == 200
    assert len(outbox) == 1

def test_ship_stored_order_is_a_conflict(authenticated_admin_client, store, outbox):
    store.add_order("o1", status="stored")
    r = authenticated_admin_client.post("/api/v1/admin/orders/o1/ship", json={"tracking_number": "RM1"})
    assert r.status_code == 409
    assert store.orders["o1"]["status"] == "stored"

def test_ship_unknown_order(authenticated_admin_client, store):
    r = authenticated_admin_client.post("/api/v1/admin/orders/ghost/ship", json={"tracking_number": "RM1"})
    assert r.status_code == 404

def test_settlement_ledger_and_retry(authenticated_admin_client, store, fake_stripe):
    metadata = {
        "orderId": "o1", "shippingMethod": "ship_now",
        "card_0_id": "c1", "card_0_owner": "s1", "card_0_stripe_account": "acct_1", "card_0_amount": "8.50",
    }
    store.add_order("o1", status="paid", payment_intent_id="pi_1")
    fake_stripe.sessions_by_pi["pi_1"] = {"id": "cs_1", "metadata": metadata}
    fake_stripe.failing_destinations.add("acct_1")

    first = authenticated_admin_client.post("/api/v1/admin/orders/o1/settle")
    assert first.status_code == 200
    assert first.json()["failed"][0]["card_id"] == "c1"

    failed = authenticated_admin_client.get("/api/v1/admin/settlements", params={"status": "failed"}).json()["items"]
    assert [e["card_id"] for e in failed] == ["c1"]

    fake_stripe.failing_destinations.clear()
    second = authenticated_admin_client.post("/api/v1/admin/orders/o1/settle")
    assert second.json()["succeeded"][0]["status"] == "succeeded"
    assert store.ledger_status("o1") == {"c1": "succeeded"}

def test_retry_without_payment_is_a_conflict(authenticated_admin_client, store, fake_stripe):
    store.add_order("o1", status="pending")
    assert authenticated_admin_client.post("/api/v1/admin/orders/o1/settle").status_code == 409
    assert authenticated_admin_client.post("/api/v1/admin/orders/ghost/settle").status_code == 404

def test_settlement_status_filter_is_validated(authenticated_admin_client, store):
    assert authenticated_admin_client.get("/api/v1/admin/settlements", params={"status": "lost"}).status_code == 400

def test_health(client):
    assert client.get("/health").json() == {"ok": True}
    cfg = client.get("/health/config").json()
    assert cfg["rate_limit"]["enabled"] is False
    assert set(cfg) == {"supabase", "stripe", "stripe_webhook", "email", "rate_limit"}
