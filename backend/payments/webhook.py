"""
Traitement des événements Stripe (après vérification de signature).

Routage par type:
- checkout.session.completed: commande (ou commande d'envoi) -> paid, stripe_session_id enregistré
- payment_intent.succeeded: relit la session d'origine puis
    * achat: règlement des vendeurs, lignes 'retained', cartes stored|sold, commande stored|paid
    * envoi: commande d'envoi -> paid, cartes -> sold (commandes stockées inchangées, aucun virement)
- account.updated: synchronise stripe_payouts_enabled du vendeur
- autres: ignorés

Livraison au moins une fois, éventuellement concurrente: chaque écriture est
conditionnelle, les virements passent par le registre de règlement.
Les emails sont seulement préparés ici (WebhookResult.notifications) et envoyés
après la réponse. Les appels Supabase/Stripe (bloquants) passent par asyncio.to_thread.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List

from backend.cards import repository as cards_repository
from backend.orders import repository as orders_repository
from backend.orders import service as orders_service
from backend.orders.models import CardStatus, OrderType, parse_order_type
from backend.settlement import service as settlement_service
from backend.settlement.service import SettlementResult
from backend.users import repository as users_repository
from backend.notifications import service as notifications
from backend.notifications.service import Notification
from . import stripe_client
from .metadata import (
    SettlementInstructionSet,
    ShippingCheckoutMetadata,
    extract_object,
    is_shipping_metadata,
)
from .shipping_rates import STORE

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    status: str
    event_type: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)
    notifications: List[Notification] = field(default_factory=list)

    def as_response(self) -> Dict[str, Any]:
        return {"status": self.status, "type": self.event_type, **self.detail}


def _ignored(event_type: str, reason: str) -> WebhookResult:
    logger.info("payments.webhook ignored type=%s reason=%s", event_type, reason)
    return WebhookResult("ignored", event_type, {"reason": reason})


# module backend.payments.webhook
async def handle_checkout_completed(event: Dict[str, Any]) -> WebhookResult:
    event_type = event.get("type") or ""
    session = extract_object(event)
    md = session.get("metadata") or {}
    if session.get("payment_status") and session.get("payment_status") != "paid":
        return _ignored(event_type, f"payment_status={session.get('payment_status')}")
    order_id = md.get("shippingOrderId") if is_shipping_metadata(md) else md.get("orderId")
    if not order_id:
        return _ignored(event_type, "missing order id")

    order = await asyncio.to_thread(orders_repository.get_order, order_id)
    if not order:
        logger.error("payments.webhook order not found order=%s session=%s", order_id, session.get("id"))
        return _ignored(event_type, "order not found")
    if session.get("id") and not order.get("stripe_session_id"):
        await asyncio.to_thread(orders_repository.update_order_fields, order_id, {"stripe_session_id": session.get("id")})
    changed = await asyncio.to_thread(orders_service.mark_paid, order)
    return WebhookResult("ok", event_type, {"order_id": order_id, "changed": changed})

async def handle_payment_succeeded(event: Dict[str, Any]) -> WebhookResult:
    event_type = event.get("type") or ""
    payment_intent_id = extract_object(event).get("id") or ""
    if not payment_intent_id:
        return _ignored(event_type, "missing payment intent id")
    session = await asyncio.to_thread(stripe_client.find_session_by_payment_intent, payment_intent_id)
    if not session:
        return _ignored(event_type, "no checkout session")
    md = session.get("metadata") or {}
    if is_shipping_metadata(md):
        return await _complete_shipping(event_type, md, payment_intent_id)
    return await _complete_purchase(event_type, md, payment_intent_id)

async def _complete_purchase(event_type: str, md: Dict[str, Any], payment_intent_id: str) -> WebhookResult:
    instruction_set = SettlementInstructionSet.decode(md)
    order_id = instruction_set.order_id
    if not order_id:
        return _ignored(event_type, "missing order id")
    order = await asyncio.to_thread(orders_repository.get_order, order_id)
    if not order:
        logger.error("payments.webhook order not found order=%s pi=%s", order_id, payment_intent_id)
        return _ignored(event_type, "order not found")

    if order.get("payment_intent_id") != payment_intent_id:
        await asyncio.to_thread(orders_repository.update_order_fields, order_id, {"payment_intent_id": payment_intent_id})

    settlement = await settlement_service.settle(md, payment_intent_id=payment_intent_id)
    items = order.get("order_items") or await asyncio.to_thread(orders_repository.get_order_items, [order_id])
    await asyncio.to_thread(settlement_service.record_retained_items,
                            order_id, payment_intent_id, items, instruction_set.card_ids)

    card_ids = [str(it.get("card_id")) for it in items if it.get("card_id")]
    method = instruction_set.shipping_method or order.get("shipping_method")
    if method == STORE:
        cards_changed = await asyncio.to_thread(orders_service.update_cards, card_ids, CardStatus.STORED)
        changed = await asyncio.to_thread(orders_service.mark_stored, order)
    else:
        cards_changed = await asyncio.to_thread(orders_service.update_cards, card_ids, CardStatus.SOLD)
        changed = await asyncio.to_thread(orders_service.mark_paid, order)

    notes: List[Notification] = []
    if cards_changed:
        notes = await asyncio.to_thread(_sale_notifications, order, items, settlement)
    return WebhookResult("ok", event_type, {
        "order_id": order_id,
        "changed": changed,
        "settlement": settlement.as_dict(),
    }, notes)

def _sale_notifications(order: Dict[str, Any], items: List[Dict[str, Any]],
                        settlement: SettlementResult) -> List[Notification]:
    """Emails de vente: une erreur de lecture n'annule que les emails."""
    notes: List[Notification] = []
    try:
        buyer_id = str(order.get("user_id") or "")
        cards = cards_repository.get_cards_map(it.get("card_id") for it in items)
        owners = {cid: str(c.get("user_id") or "") for cid, c in cards.items()}
        profiles = users_repository.get_profiles_map(list(owners.values()) + [buyer_id])
        buyer_email = (profiles.get(buyer_id) or {}).get("email")
        notes = notifications.sale_notifications(
            order,
            items,
            buyer_email=buyer_email,
            sellers=profiles,
            card_owners=owners,
            paid_card_ids=[o.card_id for o in settlement.succeeded],
        )
    except Exception:
        logger.exception("payments.webhook sale notifications skipped order=%s", order.get("id"))
    if settlement.is_partial or settlement.skipped:
        alert = notifications.settlement_alert(
            settlement.order_id,
            [o.as_dict() for o in settlement.failed],
            settlement.skipped,
        )
        if alert:
            notes.append(alert)
    return notes

async def _complete_shipping(event_type: str, md: Dict[str, Any], payment_intent_id: str) -> WebhookResult:
    shipping = ShippingCheckoutMetadata.decode(md)
    order = await asyncio.to_thread(orders_repository.get_order, shipping.shipping_order_id)
    if not order:
        logger.error("payments.webhook shipping order not found order=%s pi=%s", shipping.shipping_order_id, payment_intent_id)
        return _ignored(event_type, "order not found")
    if parse_order_type(order.get("order_type")) != OrderType.SHIPPING:
        logger.error("payments.webhook order=%s is not a shipping order", shipping.shipping_order_id)
        return _ignored(event_type, "not a shipping order")

    order_id = str(order.get("id"))
    if order.get("payment_intent_id") != payment_intent_id:
        await asyncio.to_thread(orders_repository.update_order_fields, order_id, {"payment_intent_id": payment_intent_id})
    if not order.get("related_order_ids") and shipping.stored_order_ids:
        order = dict(order, related_order_ids=shipping.stored_order_ids)

    changed = await asyncio.to_thread(orders_service.mark_paid, order)
    card_ids = await asyncio.to_thread(orders_service.shipping_card_ids, order)
    cards_changed = await asyncio.to_thread(orders_service.update_cards, card_ids, CardStatus.SOLD)

    notes: List[Notification] = []
    if cards_changed:
        user_id = str(order.get("user_id") or "")
        emails = await asyncio.to_thread(users_repository.get_emails, [user_id])
        buyer_email = emails.get(user_id)
        notes = notifications.shipping_paid_notifications(order, len(card_ids), buyer_email)
    return WebhookResult("ok", event_type, {
        "order_id": order_id,
        "changed": changed,
        "card_count": len(card_ids),
    }, notes)

async def handle_account_updated(event: Dict[str, Any]) -> WebhookResult:
    event_type = event.get("type") or ""
    account = extract_object(event)
    account_id = account.get("id") or ""
    if not account_id:
        return _ignored(event_type, "missing account id")
    enabled = bool(account.get("payouts_enabled"))
    rows = await asyncio.to_thread(users_repository.set_payouts_enabled, account_id, enabled)
    logger.info("payments.webhook account=%s payouts_enabled=%s profiles=%s", account_id, enabled, len(rows))
    return WebhookResult("ok", event_type, {"account_id": account_id, "payouts_enabled": enabled})

HANDLERS: Dict[str, Callable[[Dict[str, Any]], Awaitable[WebhookResult]]] = {
    "checkout.session.completed": handle_checkout_completed,
    "payment_intent.succeeded": handle_payment_succeeded,
    "account.updated": handle_account_updated,
}

async def process_event(event: Dict[str, Any]) -> WebhookResult:
    """
    Route un événement vérifié vers son handler.
    Les erreurs d'infrastructure remontent: la vue répond 500 et Stripe relivre.
    """
    event_type = (event or {}).get("type") or ""
    handler = HANDLERS.get(event_type)
    if handler is None:
        return _ignored(event_type, "unhandled event type")
    logger.info("payments.webhook event id=%s type=%s", (event or {}).get("id"), event_type)
    return await handler(event)
