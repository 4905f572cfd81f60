"""
Emails transactionnels (Resend), hors du chemin critique.

- Les builders (sale_notifications, shipping_paid_notifications, ...) sont purs:
  ils retournent des Notification à partir des données déjà chargées.
- send_all est planifié via BackgroundTasks après la réponse HTTP: une erreur
  d'envoi est journalisée et n'affecte ni le webhook ni le statut des commandes.
"""
import html
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import resend

from backend.config import RESEND_API_KEY, EMAIL_FROM, ADMIN_NOTIFICATION_EMAIL, EMAIL_SEND_INTERVAL
from backend.payments import fees

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    to: str
    subject: str
    html: str
    kind: str = ""


# module backend.notifications.service
def _short(order_id: Any) -> str:
    return str(order_id or "")[:8]

def _money(value: Any) -> str:
    return f"£{fees.to_money(value):.2f}"

def _page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        f"<div style=\"max-width: 600px; margin: 0 auto; padding: 20px;\"><h1>{html.escape(title)}</h1>"
        f"{body}"
        "<p>Best regards,<br>The Noz Cards Team</p></div></body></html>"
    )

def _items_html(items: Iterable[Dict[str, Any]]) -> str:
    rows = []
    for it in items:
        title = html.escape(str(it.get("card_title") or "Card"))
        rows.append(f"<li>{title} ({_money(it.get('price'))})</li>")
    return "<ul>" + "".join(rows) + "</ul>"

def sale_notifications(
    order: Dict[str, Any],
    items: List[Dict[str, Any]],
    *,
    buyer_email: Optional[str],
    sellers: Dict[str, Dict[str, Any]],
    card_owners: Dict[str, str],
    paid_card_ids: Iterable[str] = (),
) -> List[Notification]:
    """
    Emails d'une vente confirmée: acheteur, chaque vendeur, opérateur.
    - sellers: {owner_id: profil} (email, stripe_account_id)
    - card_owners: {card_id: owner_id}
    - paid_card_ids: cartes couvertes par un virement (sinon: invitation à connecter Stripe)
    """
    order_id = str(order.get("id") or "")
    store = order.get("shipping_method") == "store"
    notes: List[Notification] = []

    if buyer_email:
        if store:
            delivery = "<p>You chose to store your cards for later shipment. We'll hold them securely until you're ready to ship.</p>"
        else:
            address = html.escape(str(order.get("shipping_address") or "Address on file"))
            delivery = f"<p>Shipping to: {address}</p><p>You'll receive tracking information once your order is on its way.</p>"
        body = (
            "<p>Thanks for your order! Your payment has been confirmed.</p>"
            f"<h3>Order #{_short(order_id)}</h3>{_items_html(items)}"
            f"<p><strong>Total: {_money(order.get('total'))}</strong></p>{delivery}"
        )
        notes.append(Notification(buyer_email, f"Order Confirmation - {_short(order_id)}",
                                  _page("Order Confirmed!", body), "sale.buyer"))

    paid = {str(c) for c in paid_card_ids}
    for it in items:
        card_id = str(it.get("card_id") or "")
        owner_id = card_owners.get(card_id) or ""
        email = (sellers.get(owner_id) or {}).get("email")
        if not email:
            logger.warning("notifications.service no seller email order=%s card=%s owner=%s", order_id, card_id, owner_id)
            continue
        title = html.escape(str(it.get("card_title") or "Card"))
        if card_id in paid:
            payout = (f"<p>Your payout (85%): <strong>{_money(fees.seller_payout(it.get('price')))}</strong>, "
                      "transferred to your Stripe account within 2-7 business days.</p>")
        else:
            payout = "<p>Connect your Stripe account from your account page to receive payouts for future sales.</p>"
        body = f"<p>Your card just sold on Noz Cards!</p><h3>{title}</h3><p>Sale price: {_money(it.get('price'))}</p>{payout}"
        notes.append(Notification(email, f"Your Card Sold! - {it.get('card_title') or 'Card'}",
                                  _page("Congrats! Your Card Sold!", body), "sale.seller"))

    if ADMIN_NOTIFICATION_EMAIL:
        body = (
            f"<p>Order #{_short(order_id)} ({html.escape(str(order.get('shipping_method') or ''))})</p>"
            f"{_items_html(items)}<p>Total: {_money(order.get('total'))}</p>"
            f"<p>Buyer: {html.escape(buyer_email or 'unknown')}</p>"
        )
        notes.append(Notification(ADMIN_NOTIFICATION_EMAIL, f"New Order - {_short(order_id)}",
                                  _page("New Order", body), "sale.admin"))
    return notes

def settlement_alert(order_id: str, failed: List[Dict[str, Any]], skipped: List[Dict[str, Any]]) -> Optional[Notification]:
    """Alerte opérateur quand un règlement est partiel (virements à reprendre)."""
    if not ADMIN_NOTIFICATION_EMAIL or not (failed or skipped):
        return None
    rows = "".join(
        f"<li>card {html.escape(str(f.get('card_id')))} -> {html.escape(str(f.get('destination')))}: "
        f"{html.escape(str(f.get('error') or ''))}</li>"
        for f in failed
    )
    rows += "".join(
        f"<li>card {html.escape(str(s.get('card_id') or '?'))} skipped: {html.escape(str(s.get('reason')))}</li>"
        for s in skipped
    )
    body = f"<p>Settlement of order #{_short(order_id)} is partial.</p><ul>{rows}</ul>"
    return Notification(ADMIN_NOTIFICATION_EMAIL, f"Settlement needs attention - {_short(order_id)}",
                        _page("Partial settlement", body), "settlement.alert")

def shipping_paid_notifications(order: Dict[str, Any], card_count: int, buyer_email: Optional[str]) -> List[Notification]:
    order_id = str(order.get("id") or "")
    address = html.escape(str(order.get("shipping_address") or ""))
    speed = html.escape(str(order.get("shipping_method") or "").replace("_", " "))
    notes: List[Notification] = []
    if buyer_email:
        body = (
            f"<p>Your shipping payment is confirmed for {card_count} card(s).</p>"
            f"<p>Method: {speed} ({_money(order.get('shipping_cost'))})</p><p>Shipping to: {address}</p>"
        )
        notes.append(Notification(buyer_email, f"Shipping Order Confirmed - {_short(order_id)}",
                                  _page("Shipping Confirmed", body), "shipping.buyer"))
    if ADMIN_NOTIFICATION_EMAIL:
        body = (
            f"<p>Shipping order #{_short(order_id)}: {card_count} card(s), {speed}.</p>"
            f"<p>Address: {address}</p><p>Buyer: {html.escape(buyer_email or 'unknown')}</p>"
        )
        notes.append(Notification(ADMIN_NOTIFICATION_EMAIL, f"Shipping Order - {_short(order_id)}",
                                  _page("Shipping Order", body), "shipping.admin"))
    return notes

def tracking_notification(order: Dict[str, Any], buyer_email: Optional[str]) -> Optional[Notification]:
    if not buyer_email:
        return None
    order_id = str(order.get("id") or "")
    body = (
        "<p>Good news! Your order is on its way.</p>"
        f"<p>Carrier: {html.escape(str(order.get('tracking_carrier') or ''))}<br>"
        f"Tracking number: <strong>{html.escape(str(order.get('tracking_number') or ''))}</strong></p>"
    )
    return Notification(buyer_email, f"Your Order Has Shipped! - {_short(order_id)}",
                        _page("Your Order Has Shipped!", body), "tracking")

def send(notification: Notification) -> bool:
    """Envoie un email via Resend. Retour: False (journalisé) en cas d'échec."""
    if not RESEND_API_KEY:
        logger.warning("notifications.service RESEND_API_KEY manquant, email non envoyé kind=%s", notification.kind)
        return False
    resend.api_key = RESEND_API_KEY
    try:
        resend.Emails.send({
            "from": EMAIL_FROM,
            "to": [notification.to],
            "subject": notification.subject,
            "html": notification.html,
        })
        logger.info("notifications.service sent kind=%s to=%s", notification.kind, notification.to)
        return True
    except Exception:
        logger.exception("notifications.service send failed kind=%s to=%s", notification.kind, notification.to)
        return False

def send_all(notifications: Iterable[Optional[Notification]]) -> int:
    """
    Envoie un lot d'emails en séquence (pause EMAIL_SEND_INTERVAL entre deux envois,
    Resend limite le débit). Retourne le nombre d'emails envoyés.
    """
    sent = 0
    batch = [n for n in notifications if n]
    for i, notification in enumerate(batch):
        if i and EMAIL_SEND_INTERVAL > 0:
            time.sleep(EMAIL_SEND_INTERVAL)
        if send(notification):
            sent += 1
    return sent
