import asyncio
import threading

import pytest
from fastapi import HTTPException

from conftest import BUYER, payment_succeeded_event, session_completed_event
from backend.orders import service as orders_service
from backend.payments import service as payments_service
from backend.payments import webhook
from backend.settlement.service import LedgerUnavailable


@pytest.fixture
def market(store):
    """Deux vendeurs connectés, un acheteur, deux cartes en vente."""
    store.add_profile(BUYER["id"], email=BUYER["email"])
    store.add_profile("s1", email="s1@example.com", account="acct_1", payouts=True)
    store.add_profile("s2", email="s2@example.com", account="acct_2", payouts=True)
    store.add_card("c1", "s1", 10.00)
    store.add_card("c2", "s2", 20.00)
    return store

def _checkout(fake_stripe, method="ship_now", pi="pi_1"):
    address = None if method == "store" else "1 Test Street"
    res = payments_service.start_purchase_checkout(dict(BUYER), ["c1", "c2"], method, address)
    session = fake_stripe.pay(res["session_id"], pi)
    return res["order_id"], session

def _kinds(result):
    return sorted(n.kind for n in result.notifications)


@pytest.mark.asyncio
async def test_ship_now_purchase_settles_and_marks_sold(market, fake_stripe):
    order_id, _ = _checkout(fake_stripe)

    result = await webhook.process_event(payment_succeeded_event("pi_1"))

    assert result.status == "ok"
    assert market.orders[order_id]["status"] == "paid"
    assert market.orders[order_id]["payment_intent_id"] == "pi_1"
    assert market.cards["c1"]["status"] == "sold" and market.cards["c2"]["status"] == "sold"
    assert market.ledger_status(order_id) == {"c1": "succeeded", "c2": "succeeded"}
    assert sorted(c["amount"] for c in fake_stripe.transfer_calls) == [850, 1700]
    assert _kinds(result) == ["sale.admin", "sale.buyer", "sale.seller", "sale.seller"]

@pytest.mark.asyncio
async def test_replayed_payment_event_is_a_noop(market, fake_stripe):
    order_id, _ = _checkout(fake_stripe)
    await webhook.process_event(payment_succeeded_event("pi_1", "evt_1"))

    replay = await webhook.process_event(payment_succeeded_event("pi_1", "evt_1"))

    assert replay.status == "ok"
    assert replay.detail["changed"] is False
    assert replay.notifications == []
    assert len(fake_stripe.transfer_calls) == 2
    assert market.orders[order_id]["status"] == "paid"

@pytest.mark.asyncio
async def test_concurrent_duplicates_transfer_once_per_card(market, fake_stripe):
    _checkout(fake_stripe)

    results = await asyncio.gather(
        webhook.process_event(payment_succeeded_event("pi_1", "evt_a")),
        webhook.process_event(payment_succeeded_event("pi_1", "evt_b")),
    )

    assert len(fake_stripe.transfers) == 2
    assert sum(len(r.notifications) for r in results) == 4

@pytest.mark.asyncio
async def test_store_calls_run_off_the_event_loop(market, fake_stripe, monkeypatch):
    _checkout(fake_stripe)
    loop_thread = threading.get_ident()
    seen = {}

    def tracked(name, fn):
        def _call(*args, **kwargs):
            seen.setdefault(name, set()).add(threading.get_ident())
            return fn(*args, **kwargs)
        return _call

    for target, fn in (
        ("backend.orders.repository.get_order", market.get_order),
        ("backend.orders.repository.update_order_fields", market.update_order_fields),
        ("backend.orders.repository.transition_status", market.transition_status),
        ("backend.cards.repository.update_status", market.update_status),
        ("backend.cards.repository.get_cards_map", market.get_cards_map),
        ("backend.settlement.repository.record_retained", market.record_retained),
    ):
        monkeypatch.setattr(target, tracked(target, fn))

    await webhook.process_event(payment_succeeded_event("pi_1"))

    assert len(seen) == 6
    assert all(loop_thread not in threads for threads in seen.values())

@pytest.mark.asyncio
async def test_session_completed_then_payment(market, fake_stripe):
    order_id, session = _checkout(fake_stripe)

    first = await webhook.process_event(session_completed_event(session))
    assert first.detail == {"order_id": order_id, "changed": True}
    assert market.orders[order_id]["stripe_session_id"] == session["id"]

    second = await webhook.process_event(payment_succeeded_event("pi_1"))
    assert second.detail["changed"] is False
    assert market.cards["c1"]["status"] == "sold"
    assert len(second.notifications) == 4

@pytest.mark.asyncio
async def test_store_path_keeps_cards_in_storage(market, fake_stripe):
    order_id, session = _checkout(fake_stripe, method="store")
    assert market.orders[order_id]["shipping_cost"] == "0.00"

    await webhook.process_event(payment_succeeded_event("pi_1"))
    assert market.orders[order_id]["status"] == "stored"
    assert market.cards["c1"]["status"] == "stored"
    assert market.ledger_status(order_id) == {"c1": "succeeded", "c2": "succeeded"}

    # checkout.session.completed en retard: jamais de retour à 'paid'
    late = await webhook.process_event(session_completed_event(session))
    assert late.detail["changed"] is False
    assert market.orders[order_id]["status"] == "stored"

@pytest.mark.asyncio
async def test_session_completed_then_store(market, fake_stripe):
    order_id, session = _checkout(fake_stripe, method="store")
    await webhook.process_event(session_completed_event(session))
    assert market.orders[order_id]["status"] == "paid"

    await webhook.process_event(payment_succeeded_event("pi_1"))
    assert market.orders[order_id]["status"] == "stored"

@pytest.mark.asyncio
async def test_ineligible_seller_item_is_retained(market, fake_stripe):
    market.profiles["s2"]["stripe_payouts_enabled"] = False
    order_id, session = _checkout(fake_stripe)
    assert "card_1_id" not in session["metadata"]

    result = await webhook.process_event(payment_succeeded_event("pi_1"))

    assert market.ledger_status(order_id) == {"c1": "succeeded", "c2": "retained"}
    assert [c["destination"] for c in fake_stripe.transfer_calls] == ["acct_1"]
    seller_mails = {n.to: n.html for n in result.notifications if n.kind == "sale.seller"}
    assert "£8.50" in seller_mails["s1@example.com"]
    assert "Connect your Stripe account" in seller_mails["s2@example.com"]

@pytest.mark.asyncio
async def test_partial_settlement_alerts_operator(market, fake_stripe):
    order_id, _ = _checkout(fake_stripe)
    fake_stripe.failing_destinations.add("acct_2")

    result = await webhook.process_event(payment_succeeded_event("pi_1"))

    assert result.status == "ok"
    assert market.orders[order_id]["status"] == "paid"
    assert market.ledger_status(order_id) == {"c1": "succeeded", "c2": "failed"}
    assert "settlement.alert" in _kinds(result)

@pytest.mark.asyncio
async def test_ledger_outage_propagates_before_any_status_change(market, fake_stripe, monkeypatch):
    order_id, _ = _checkout(fake_stripe)

    def down(**kwargs):
        raise ConnectionError("db down")

    monkeypatch.setattr("backend.settlement.repository.claim", down)

    with pytest.raises(LedgerUnavailable):
        await webhook.process_event(payment_succeeded_event("pi_1"))
    assert market.orders[order_id]["status"] == "pending"
    assert market.cards["c1"]["status"] == "live"

@pytest.fixture
def stored_orders(market):
    for card_id in ("c1", "c2"):
        market.cards[card_id]["status"] = "stored"
    market.add_order("o1", ["c1"], status="stored", shipping_method="store")
    market.add_order("o2", ["c2"], status="stored", shipping_method="store")
    return market

@pytest.mark.asyncio
async def test_shipping_order_consolidates_stored_orders(stored_orders, fake_stripe):
    res = payments_service.start_shipping_checkout(dict(BUYER), ["o1", "o2"], None, "1st_class", "1 Test Street")
    assert res["shipping_cost"] == "5.00" and res["card_count"] == 2
    fake_stripe.pay(res["session_id"], "pi_ship")

    result = await webhook.process_event(payment_succeeded_event("pi_ship"))

    ship = stored_orders.orders[res["order_id"]]
    assert ship["status"] == "paid" and ship["order_type"] == "shipping"
    assert stored_orders.cards["c1"]["status"] == "sold"
    assert stored_orders.cards["c2"]["status"] == "sold"
    # les commandes stockées ne changent pas et aucun virement n'est émis
    assert stored_orders.orders["o1"]["status"] == "stored"
    assert stored_orders.orders["o2"]["status"] == "stored"
    assert fake_stripe.transfer_calls == []
    assert _kinds(result) == ["shipping.admin", "shipping.buyer"]

@pytest.mark.asyncio
async def test_shipping_subset_only_ships_selected_cards(stored_orders, fake_stripe):
    res = payments_service.start_shipping_checkout(dict(BUYER), ["o1", "o2"], ["c2"], "2nd_class", "1 Test Street")
    assert res["shipping_cost"] == "2.00"
    fake_stripe.pay(res["session_id"], "pi_ship")

    await webhook.process_event(payment_succeeded_event("pi_ship"))

    assert stored_orders.cards["c1"]["status"] == "stored"
    assert stored_orders.cards["c2"]["status"] == "sold"

@pytest.mark.asyncio
async def test_shipped_cards_cannot_be_shipped_again(stored_orders, fake_stripe):
    first = payments_service.start_shipping_checkout(dict(BUYER), ["o1", "o2"], ["c2"], "2nd_class", "1 Test Street")
    fake_stripe.pay(first["session_id"], "pi_ship")
    await webhook.process_event(payment_succeeded_event("pi_ship"))

    # o2 est toujours 'stored' mais sa seule carte est partie
    with pytest.raises(HTTPException) as exc:
        payments_service.start_shipping_checkout(dict(BUYER), ["o2"], None, "2nd_class", "1 Test Street")
    assert exc.value.status_code == 409
    with pytest.raises(HTTPException) as exc:
        payments_service.start_shipping_checkout(dict(BUYER), ["o1", "o2"], ["c2"], "2nd_class", "1 Test Street")
    assert exc.value.status_code == 409

    second = payments_service.start_shipping_checkout(dict(BUYER), ["o1", "o2"], None, "2nd_class", "1 Test Street")
    assert second["card_count"] == 1 and second["shipping_cost"] == "2.00"
    assert stored_orders.orders[second["order_id"]]["related_card_ids"] == ["c1"]
    assert [o["id"] for o in orders_service.list_stored_orders(BUYER["id"])] == ["o1"]

@pytest.mark.asyncio
async def test_shipping_session_completed_marks_shipping_order(stored_orders, fake_stripe):
    res = payments_service.start_shipping_checkout(dict(BUYER), ["o1"], None, "special_delivery", "1 Test Street")
    session = fake_stripe.pay(res["session_id"], "pi_ship")

    result = await webhook.process_event(session_completed_event(session))

    assert result.detail["order_id"] == res["order_id"]
    assert stored_orders.orders[res["order_id"]]["status"] == "paid"
    assert stored_orders.orders["o1"]["status"] == "stored"

@pytest.mark.asyncio
async def test_account_updated_syncs_payouts(store):
    store.add_profile("s9", account="acct_9", payouts=False)
    event = {"id": "evt", "type": "account.updated", "data": {"object": {"id": "acct_9", "payouts_enabled": True}}}

    result = await webhook.process_event(event)

    assert result.status == "ok"
    assert store.profiles["s9"]["stripe_payouts_enabled"] is True

@pytest.mark.asyncio
async def test_unknown_event_is_ignored(store):
    result = await webhook.process_event({"id": "evt", "type": "charge.refunded", "data": {"object": {}}})
    assert result.as_response() == {"status": "ignored", "type": "charge.refunded", "reason": "unhandled event type"}

@pytest.mark.asyncio
async def test_payment_without_session_is_ignored(store, fake_stripe):
    result = await webhook.process_event(payment_succeeded_event("pi_unknown"))
    assert result.status == "ignored"
    assert result.detail["reason"] == "no checkout session"

@pytest.mark.asyncio
async def test_missing_order_is_ignored(store, fake_stripe):
    session = {"id": "cs_x", "metadata": {"orderId": "ghost"}}
    result = await webhook.process_event(session_completed_event(session))
    assert result.status == "ignored"
    assert result.detail["reason"] == "order not found"

@pytest.mark.asyncio
async def test_unpaid_session_is_ignored(market, fake_stripe):
    order_id, session = _checkout(fake_stripe)
    event = {"id": "evt", "type": "checkout.session.completed", "data": {"object": dict(session, payment_status="unpaid")}}
    result = await webhook.process_event(event)
    assert result.status == "ignored"
    assert market.orders[order_id]["status"] == "pending"
