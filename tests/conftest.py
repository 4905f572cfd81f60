import os

# Pas de Redis en tests: le rate limiting est désactivé au démarrage de l'app
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")

import threading
from copy import deepcopy
from typing import Any, Dict, Generator, Iterable, List, Optional

import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

from backend.app import app as fastapi_app
from backend.utils.security import require_user, require_admin

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)

@pytest.fixture(scope="session")
def app():
    return fastapi_app

@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c

BUYER = {
    "id": "buyer-1",
    "email": "buyer@example.com",
    "role": "user",
    "metadata": {"full_name": "Test Buyer"},
    "token": "fake-token",
}

ADMIN = {"id": "admin-user-id", "email": "admin@example.com", "role": "admin"}

# Simuler un utilisateur authentifié pour les endpoints protégés
@pytest.fixture(autouse=True)
def _override_require_user(app):
    app.dependency_overrides[require_user] = lambda: dict(BUYER)
    try:
        yield
    finally:
        app.dependency_overrides.pop(require_user, None)

@pytest.fixture
def authenticated_admin_client(app, client):
    app.dependency_overrides[require_admin] = lambda: dict(ADMIN)
    yield client
    app.dependency_overrides.pop(require_admin, None)

# Aucun accès réseau: clients Supabase simulés, pas d'attente entre deux emails
@pytest.fixture(scope="function", autouse=True)
def mock_db_dependency(monkeypatch):
    monkeypatch.setattr("backend.infra.supabase_client.get_supabase", lambda: MagicMock())
    monkeypatch.setattr("backend.infra.supabase_client.get_service_supabase", lambda: MagicMock())
    monkeypatch.setattr("backend.notifications.service.EMAIL_SEND_INTERVAL", 0)
    monkeypatch.setattr("backend.notifications.service.RESEND_API_KEY", "")


class FakeStore:
    """
    Base en mémoire reproduisant la sémantique des repositories:
    mises à jour conditionnelles (status IN ...), upsert sans écrasement du registre.
    """

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.items: List[Dict[str, Any]] = []
        self.cards: Dict[str, Dict[str, Any]] = {}
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.ledger: Dict[tuple, Dict[str, Any]] = {}
        self._seq = 0
        self._lock = threading.Lock()

    # --- jeux de données ---
    def add_profile(self, user_id, email=None, account=None, payouts=False, role="user"):
        self.profiles[user_id] = {
            "id": user_id,
            "email": email,
            "role": role,
            "stripe_account_id": account,
            "stripe_payouts_enabled": payouts,
        }
        return self.profiles[user_id]

    def add_card(self, card_id, owner, price, status="live", title=None):
        self.cards[card_id] = {
            "id": card_id,
            "user_id": owner,
            "price": price,
            "status": status,
            "title": title or f"Card {card_id}",
            "image_url": f"https://img.test/{card_id}.png",
            "nozid": f"NOZ-{card_id}",
        }
        return self.cards[card_id]

    def add_order(self, order_id, card_ids=(), **row):
        order = {
            "id": order_id,
            "user_id": BUYER["id"],
            "order_type": "purchase",
            "status": "pending",
            "shipping_method": "ship_now",
            "shipping_address": "1 Test Street",
            "subtotal": "0.00",
            "shipping_cost": "0.00",
            "total": "0.00",
        }
        order.update(row)
        self.orders[order_id] = order
        for card_id in card_ids:
            card = self.cards[card_id]
            self.items.append({
                "order_id": order_id,
                "card_id": card_id,
                "price": card["price"],
                "card_title": card["title"],
                "card_image_url": card["image_url"],
                "card_nozid": card["nozid"],
            })
        return order

    # --- orders.repository ---
    def insert_order(self, row):
        self._seq += 1
        order = dict(row, id=row.get("id") or f"order-{self._seq}")
        self.orders[order["id"]] = order
        return dict(order)

    def insert_order_items(self, rows):
        self.items.extend(dict(r) for r in rows)
        return rows

    def _with_items(self, order):
        return dict(deepcopy(order), order_items=[dict(i) for i in self.items if i["order_id"] == order["id"]])

    def get_order(self, order_id):
        order = self.orders.get(order_id)
        return self._with_items(order) if order else None

    def get_orders_by_ids(self, order_ids):
        return [self._with_items(self.orders[o]) for o in order_ids if o in self.orders]

    def get_order_items(self, order_ids):
        ids = set(order_ids or [])
        return [dict(i) for i in self.items if i["order_id"] in ids]

    def transition_status(self, order_id, target, from_statuses, extra=None):
        with self._lock:
            order = self.orders.get(order_id)
            if not order or order["status"] not in set(from_statuses):
                return []
            order.update(extra or {})
            order["status"] = target
            return [dict(order)]

    def update_order_fields(self, order_id, fields):
        if order_id in self.orders:
            self.orders[order_id].update(fields)
            return [dict(self.orders[order_id])]
        return []

    def list_user_orders(self, user_id, status=None, limit=100):
        return [self._with_items(o) for o in self.orders.values()
                if o["user_id"] == user_id and (not status or o["status"] == status)][:limit]

    def list_orders_by_status(self, status, limit=100):
        return [self._with_items(o) for o in self.orders.values() if o["status"] == status][:limit]

    # --- cards.repository ---
    def get_cards_map(self, ids):
        return {str(i): dict(self.cards[str(i)]) for i in ids if str(i) in self.cards}

    def update_status(self, card_ids, target, from_statuses):
        changed = []
        with self._lock:
            for card_id in card_ids:
                card = self.cards.get(card_id)
                if card and card["status"] in set(from_statuses):
                    card["status"] = target
                    changed.append(dict(card))
        return changed

    # --- users.repository ---
    def get_profile(self, user_id):
        profile = self.profiles.get(user_id)
        return dict(profile) if profile else None

    def get_profiles_map(self, user_ids):
        return {u: dict(self.profiles[u]) for u in user_ids if u in self.profiles}

    def get_emails(self, user_ids):
        return {u: p["email"] for u, p in self.get_profiles_map(user_ids).items() if p.get("email")}

    def set_stripe_account(self, user_id, account_id):
        self.profiles.setdefault(user_id, {"id": user_id}).update(
            {"stripe_account_id": account_id, "stripe_payouts_enabled": False})
        return True

    def set_payouts_enabled(self, account_id, enabled):
        rows = []
        for p in self.profiles.values():
            if p.get("stripe_account_id") == account_id:
                p["stripe_payouts_enabled"] = bool(enabled)
                rows.append(dict(p))
        return rows

    # --- settlement.repository ---
    def claim(self, *, order_id, card_id, payment_intent_id, destination, amount, idempotency_key):
        with self._lock:
            self.ledger.setdefault((order_id, card_id), {
                "order_id": order_id,
                "card_id": card_id,
                "payment_intent_id": payment_intent_id,
                "destination": destination,
                "amount": amount,
                "status": "pending",
                "attempt": 1,
                "idempotency_key": idempotency_key,
                "transfer_id": None,
                "error": None,
            })
            return dict(self.ledger[(order_id, card_id)])

    def get_entry(self, order_id, card_id):
        entry = self.ledger.get((order_id, card_id))
        return dict(entry) if entry else None

    def _mark(self, order_id, card_id, fields, attempt=None):
        with self._lock:
            entry = self.ledger.get((order_id, card_id))
            if not entry or entry["status"] not in ("pending", "failed"):
                return []
            if attempt is not None and entry.get("attempt") != attempt:
                return []
            entry.update(fields)
            return [dict(entry)]

    def mark_succeeded(self, order_id, card_id, transfer_id):
        return self._mark(order_id, card_id, {"status": "succeeded", "transfer_id": transfer_id, "error": None})

    def mark_failed(self, order_id, card_id, error, attempt=1, next_key=None):
        fields = {"status": "failed", "error": error}
        if next_key:
            fields.update({"attempt": attempt + 1, "idempotency_key": next_key})
        return self._mark(order_id, card_id, fields, attempt=attempt)

    def record_retained(self, rows):
        out = []
        for r in rows:
            key = (r["order_id"], r["card_id"])
            if key not in self.ledger:
                self.ledger[key] = dict(r, status="retained")
                out.append(dict(self.ledger[key]))
        return out

    def list_entries(self, status=None, order_id=None, limit=200):
        return [dict(e) for e in self.ledger.values()
                if (not status or e["status"] == status) and (not order_id or e["order_id"] == order_id)][:limit]

    def ledger_status(self, order_id) -> Dict[str, str]:
        return {card: e["status"] for (oid, card), e in self.ledger.items() if oid == order_id}


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    s = FakeStore()
    patches = {
        "backend.orders.repository": (
            "insert_order", "insert_order_items", "get_order", "get_orders_by_ids", "get_order_items",
            "transition_status", "update_order_fields", "list_user_orders", "list_orders_by_status",
        ),
        "backend.cards.repository": ("get_cards_map", "update_status"),
        "backend.users.repository": (
            "get_profile", "get_profiles_map", "get_emails", "set_stripe_account", "set_payouts_enabled",
        ),
        "backend.settlement.repository": (
            "claim", "get_entry", "mark_succeeded", "mark_failed", "record_retained", "list_entries",
        ),
    }
    for module, names in patches.items():
        for name in names:
            monkeypatch.setattr(f"{module}.{name}", getattr(s, name))
    return s


class TransferRejected(RuntimeError):
    """Refus 4xx de Stripe (même forme que stripe.StripeError.http_status)."""
    http_status = 400


class FakeStripe:
    """
    Stripe simulé: une clé d'idempotence déjà vue renvoie le même résultat (comme l'API réelle).
    - failing_destinations: comptes pour lesquels Transfer.create est refusé
    - un refus est enregistré avec sa clé et rejoué tel quel pour cette clé
    """

    def __init__(self):
        self.transfers: Dict[str, Dict[str, Any]] = {}
        self.failed_keys: Dict[str, str] = {}
        self.transfer_calls: List[Dict[str, Any]] = []
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.sessions_by_pi: Dict[str, Dict[str, Any]] = {}
        self.created_sessions: List[Dict[str, Any]] = []
        self.failing_destinations: set = set()
        self._lock = threading.Lock()

    def create_transfer(self, *, amount_minor, destination, description, metadata, idempotency_key, transfer_group=None):
        with self._lock:
            self.transfer_calls.append({
                "amount": amount_minor,
                "destination": destination,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            })
            if idempotency_key in self.failed_keys:
                raise TransferRejected(self.failed_keys[idempotency_key])
            if destination in self.failing_destinations:
                self.failed_keys[idempotency_key] = f"No such destination: {destination}"
                raise TransferRejected(self.failed_keys[idempotency_key])
            if idempotency_key not in self.transfers:
                self.transfers[idempotency_key] = {
                    "id": f"tr_{len(self.transfers) + 1}",
                    "amount": amount_minor,
                    "destination": destination,
                }
            return dict(self.transfers[idempotency_key])

    def create_session(self, *, line_items, success_url, cancel_url, metadata, customer_email=None, client_reference_id=None):
        session_id = f"cs_test_{len(self.created_sessions) + 1}"
        session = {
            "id": session_id,
            "url": f"https://checkout.stripe.test/{session_id}",
            "line_items": line_items,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "customer_email": customer_email,
            "payment_status": "unpaid",
        }
        self.created_sessions.append(session)
        self.sessions[session_id] = session
        return {"id": session_id, "url": session["url"]}

    def get_session(self, session_id):
        if session_id not in self.sessions:
            raise RuntimeError("No such checkout.session")
        return dict(self.sessions[session_id])

    def find_session_by_payment_intent(self, payment_intent_id):
        session = self.sessions_by_pi.get(payment_intent_id)
        return dict(session) if session else None

    def pay(self, session_id: str, payment_intent_id: str) -> Dict[str, Any]:
        """Marque une session payée et la rattache à un PaymentIntent."""
        session = self.sessions[session_id]
        session.update({"payment_status": "paid", "payment_intent": payment_intent_id})
        self.sessions_by_pi[payment_intent_id] = session
        return session


@pytest.fixture
def fake_stripe(monkeypatch) -> FakeStripe:
    fake = FakeStripe()
    for name in ("create_transfer", "create_session", "get_session", "find_session_by_payment_intent"):
        monkeypatch.setattr(f"backend.payments.stripe_client.{name}", getattr(fake, name))
    return fake


def session_completed_event(session: Dict[str, Any], event_id: str = "evt_cs") -> Dict[str, Any]:
    return {"id": event_id, "type": "checkout.session.completed", "data": {"object": dict(session, payment_status="paid")}}

def payment_succeeded_event(payment_intent_id: str, event_id: str = "evt_pi") -> Dict[str, Any]:
    return {"id": event_id, "type": "payment_intent.succeeded", "data": {"object": {"id": payment_intent_id, "object": "payment_intent"}}}
