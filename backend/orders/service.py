"""
Cas d'usage 'orders': transitions du cycle de vie et listings.

Toutes les transitions passent par models.resolve_transition/validate_transition
puis par une mise à jour conditionnelle (repository.transition_status):
un événement rejoué ou en retard ne fait jamais régresser une commande.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from backend.cards import repository as cards_repository
from backend.users import repository as users_repository
from backend.notifications import service as notifications
from . import repository
from .models import (
    CardStatus,
    IllegalTransition,
    OrderNotFound,
    OrderStatus,
    OrderType,
    allowed_sources,
    card_sources,
    parse_order_type,
    resolve_transition,
    validate_transition,
)

logger = logging.getLogger(__name__)


# module backend.orders.service
def _state(order: Dict[str, Any]):
    return parse_order_type(order.get("order_type")), OrderStatus(order.get("status") or OrderStatus.PENDING.value)

def apply_transition(order: Dict[str, Any], target: OrderStatus, extra: Optional[Dict[str, Any]] = None) -> bool:
    """
    Applique une transition demandée par un webhook.
    - False si déjà à la cible, déjà au-delà, ou si une livraison concurrente l'a appliquée
    - IllegalTransition si l'arête n'existe pas pour ce type de commande
    """
    order_id = str(order.get("id"))
    order_type, current = _state(order)
    if not resolve_transition(order_type, current, target):
        logger.info("orders.service no-op order=%s %s -> %s", order_id, current.value, target.value)
        return False
    rows = repository.transition_status(order_id, target.value, allowed_sources(order_type, target), extra)
    if not rows:
        logger.info("orders.service transition already applied order=%s target=%s", order_id, target.value)
        return False
    logger.info("orders.service order=%s %s -> %s", order_id, current.value, target.value)
    return True

def transition_order(order_id: str, target: OrderStatus, extra: Optional[Dict[str, Any]] = None) -> bool:
    order = repository.get_order(order_id)
    if not order:
        raise OrderNotFound(order_id)
    return apply_transition(order, target, extra)

def mark_paid(order: Dict[str, Any]) -> bool:
    return apply_transition(order, OrderStatus.PAID)

def mark_stored(order: Dict[str, Any]) -> bool:
    return apply_transition(order, OrderStatus.STORED)

def update_cards(card_ids: Iterable[str], target: CardStatus) -> List[Dict[str, Any]]:
    """Passe les cartes à `target` (seulement depuis un statut source légal)."""
    rows = cards_repository.update_status(card_ids, target.value, card_sources(target))
    logger.info("orders.service cards -> %s updated=%s", target.value, len(rows))
    return rows

def shipping_card_ids(order: Dict[str, Any]) -> List[str]:
    """
    Cartes couvertes par une commande d'envoi.
    - related_card_ids si l'acheteur a choisi un sous-ensemble
    - sinon toutes les cartes des commandes stockées référencées
    """
    selected = [str(c) for c in (order.get("related_card_ids") or []) if c]
    if selected:
        return selected
    items = repository.get_order_items(order.get("related_order_ids") or [])
    return list(dict.fromkeys(str(it.get("card_id")) for it in items if it.get("card_id")))

def mark_shipped(order_id: str, tracking_number: str, tracking_carrier: Optional[str] = None) -> Dict[str, Any]:
    """
    Action opérateur: paid -> shipped avec numéro de suivi.
    - Même état: aucune écriture, retourne la commande telle quelle
    - Lève OrderNotFound, ValueError (numéro manquant) ou IllegalTransition
    """
    tracking_number = (tracking_number or "").strip()
    if not tracking_number:
        raise ValueError("Numéro de suivi requis")
    order = repository.get_order(order_id)
    if not order:
        raise OrderNotFound(order_id)
    order_type, current = _state(order)
    validate_transition(order_type, current, OrderStatus.SHIPPED)
    if current == OrderStatus.SHIPPED:
        return dict(order, changed=False)

    extra = {
        "tracking_number": tracking_number,
        "tracking_carrier": (tracking_carrier or "").strip(),
        "shipped_at": datetime.now(timezone.utc).isoformat(),
    }
    rows = repository.transition_status(order_id, OrderStatus.SHIPPED.value,
                                        allowed_sources(order_type, OrderStatus.SHIPPED), extra)
    if not rows:
        raise IllegalTransition("Statut de la commande modifié entre-temps")
    logger.info("orders.service order=%s shipped carrier=%s", order_id, extra["tracking_carrier"])
    return dict(rows[0], changed=True)

def tracking_notifications(order: Dict[str, Any]) -> List[notifications.Notification]:
    user_id = str(order.get("user_id") or "")
    email = users_repository.get_emails([user_id]).get(user_id)
    note = notifications.tracking_notification(order, email)
    return [note] if note else []

def list_buyer_orders(user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    return repository.list_user_orders(user_id, status=status)

def list_stored_orders(user_id: str) -> List[Dict[str, Any]]:
    """
    Commandes d'achat stockées (page d'envoi groupé), avec leurs cartes.
    - order_items réduit aux cartes encore 'stored' (un envoi partiel a déjà pu partir)
    - les commandes sans carte stockée restante sont omises
    """
    orders = [
        o for o in repository.list_user_orders(user_id, status=OrderStatus.STORED.value)
        if parse_order_type(o.get("order_type")) == OrderType.PURCHASE
    ]
    cards = cards_repository.get_cards_map(
        it.get("card_id") for o in orders for it in (o.get("order_items") or []) if it.get("card_id")
    )
    out: List[Dict[str, Any]] = []
    for o in orders:
        items = [
            it for it in (o.get("order_items") or [])
            if (cards.get(str(it.get("card_id"))) or {}).get("status") == CardStatus.STORED.value
        ]
        if items:
            out.append({**o, "order_items": items})
    return out

def list_orders_for_operator(status: str = OrderStatus.PAID.value) -> List[Dict[str, Any]]:
    """Vue opérateur (par défaut: commandes payées à expédier)."""
    OrderStatus(status)
    return repository.list_orders_by_status(status)
