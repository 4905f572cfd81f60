"""
Cas d'usage 'payments' (checkout): orchestre cartes, profils vendeurs, commandes et Stripe.

- build_session: construit UNE session Stripe pour une commande déjà créée
  (line_items + instructions de partage encodées dans les métadonnées).
- start_purchase_checkout: panier -> commande 'pending' + order_items -> session.
- start_shipping_checkout: commandes stockées -> commande 'shipping' -> session d'envoi.
- verify_session: relecture d'une session pour les pages de retour.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from fastapi import HTTPException

from backend.config import (
    BASE_URL,
    CHECKOUT_SUCCESS_PATH,
    CHECKOUT_CANCEL_PATH,
    SHIPPING_SUCCESS_PATH,
    SHIPPING_CANCEL_PATH,
)
from backend.cards import repository as cards_repository
from backend.users import repository as users_repository
from backend.orders import repository as orders_repository
from backend.orders.models import CardStatus, OrderStatus, OrderType
from . import cart
from . import fees
from . import shipping_rates
from . import stripe_client
from .metadata import (
    MetadataTooLarge,
    SettlementInstructionSet,
    ShippingCheckoutMetadata,
    SplitInstruction,
    is_shipping_metadata,
)

logger = logging.getLogger(__name__)

SellerLookup = Callable[[List[str]], Dict[str, Dict[str, Any]]]


class CheckoutError(RuntimeError):
    """Échec de construction de la session (lecture vendeurs, budget métadonnées, Stripe)."""


# module backend.payments.service
def _url(path: str, query: str = "") -> str:
    base = f"{BASE_URL.rstrip('/')}{path}"
    if not query:
        return base
    return f"{base}{'&' if '?' in base else '?'}{query}"

def sellers_for_cards(cards: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """
    {card_id: {owner_id, stripe_account_id, payouts_enabled}} à partir des cartes déjà lues.
    - Lève si les profils ne peuvent pas être lus (pas de session sur une lecture partielle)
    """
    profiles = users_repository.get_profiles_map(c.get("user_id") for c in cards.values())
    sellers: Dict[str, Dict[str, Any]] = {}
    for card_id, card in cards.items():
        owner_id = str(card.get("user_id") or "")
        profile = profiles.get(owner_id) or {}
        sellers[card_id] = {
            "owner_id": owner_id,
            "stripe_account_id": profile.get("stripe_account_id") or "",
            "payouts_enabled": bool(profile.get("stripe_payouts_enabled")),
        }
    return sellers

def lookup_sellers(card_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    return sellers_for_cards(cards_repository.get_cards_map(card_ids))

def split_instructions(items: Iterable[Dict[str, Any]], sellers: Dict[str, Dict[str, Any]]) -> List[SplitInstruction]:
    """
    Une instruction par article dont le vendeur peut recevoir un virement
    (compte Connect présent ET virements activés). Les autres articles restent facturés.
    """
    instructions: List[SplitInstruction] = []
    for it in items:
        card_id = str(it.get("card_id") or "")
        seller = sellers.get(card_id) or {}
        account = seller.get("stripe_account_id") or ""
        if not account or not seller.get("payouts_enabled"):
            logger.info("payments.service card=%s owner=%s not eligible for payout", card_id, seller.get("owner_id"))
            continue
        instructions.append(SplitInstruction(
            card_id=card_id,
            owner_id=str(seller.get("owner_id") or ""),
            stripe_account=account,
            amount=fees.seller_payout(it.get("price")),
        ))
    return instructions

def build_session(
    order_id: str,
    items: List[Dict[str, Any]],
    shipping_cost: Any,
    shipping_method: str,
    seller_lookup: Optional[SellerLookup] = None,
    *,
    customer_email: Optional[str] = None,
) -> Dict[str, str]:
    """
    Construit la session Stripe Checkout d'une commande d'achat.
    - items: [{"card_id", "price", "card_title", "card_image_url"}, ...]
    - Aucune écriture en base: la commande existe déjà (status 'pending').
    - Lève CheckoutError si la lecture des vendeurs, l'encodage ou Stripe échoue.
    Retour: {"session_id", "session_url"}
    """
    lookup = seller_lookup or lookup_sellers
    card_ids = list(dict.fromkeys(str(it.get("card_id")) for it in items if it.get("card_id")))
    try:
        sellers = lookup(card_ids)
    except Exception as e:
        logger.exception("payments.service seller lookup failed order=%s", order_id)
        raise CheckoutError("Impossible de lire les vendeurs du panier") from e

    breakdown = fees.compute(items, shipping_cost)
    instruction_set = SettlementInstructionSet(
        order_id=order_id,
        shipping_method=shipping_method,
        subtotal=breakdown.subtotal,
        shipping_cost=breakdown.shipping,
        platform_fee=breakdown.platform_fee,
        instructions=split_instructions(items, sellers),
    )
    try:
        metadata = instruction_set.encode()
    except MetadataTooLarge as e:
        logger.error("payments.service metadata too large order=%s items=%s: %s", order_id, len(items), e)
        raise CheckoutError("Trop d'articles pour une seule commande") from e

    line_items = cart.to_line_items(items, breakdown.shipping)
    try:
        session = stripe_client.create_session(
            line_items=line_items,
            success_url=_url(CHECKOUT_SUCCESS_PATH, f"session_id={{CHECKOUT_SESSION_ID}}&order_id={order_id}"),
            cancel_url=_url(CHECKOUT_CANCEL_PATH),
            metadata=metadata,
            customer_email=customer_email,
            client_reference_id=order_id,
        )
    except Exception as e:
        logger.exception("payments.service stripe session failed order=%s", order_id)
        raise CheckoutError("Création de la session de paiement impossible") from e

    logger.info("payments.service session created order=%s session=%s splits=%s total=%s",
                order_id, session.get("id"), len(instruction_set.instructions), breakdown.total)
    return {"session_id": session.get("id") or "", "session_url": session.get("url") or ""}

def _load_purchasable_cards(user_id: str, items: Iterable[Any]) -> Dict[str, Dict[str, Any]]:
    card_ids = cart.normalize_card_ids(items)
    cards = cards_repository.get_cards_map(card_ids)
    missing = [c for c in card_ids if c not in cards]
    if missing:
        raise HTTPException(status_code=404, detail="Carte introuvable")
    for card in cards.values():
        if (card.get("status") or "") != CardStatus.LIVE.value:
            raise HTTPException(status_code=409, detail="Carte déjà vendue ou indisponible")
        if str(card.get("user_id") or "") == str(user_id):
            raise HTTPException(status_code=400, detail="Impossible d'acheter sa propre carte")
    # ordre du panier conservé
    return {c: cards[c] for c in card_ids}

def quote(user_id: str, items: Iterable[Any], shipping_method: str) -> Dict[str, Any]:
    """Récapitulatif panier (inclut les frais acheteur affichés, jamais facturés)."""
    try:
        shipping_cost = shipping_rates.checkout_shipping_cost(shipping_method)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    cards = _load_purchasable_cards(user_id, items)
    breakdown = fees.compute(cards.values(), shipping_cost)
    out = breakdown.as_dict()
    out["buyer_fee"] = f"{fees.buyer_fee_display(breakdown.subtotal):.2f}"
    out["shipping_method"] = shipping_method
    return out

def start_purchase_checkout(
    user: Dict[str, Any],
    items: Iterable[Any],
    shipping_method: str,
    shipping_address: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Démarre le paiement d'un panier.
    1) Valide les cartes (existantes, 'live', pas à l'acheteur) et le mode d'envoi
    2) Calcule les montants
    3) Crée la commande 'pending' et ses order_items AVANT la session
       (la ligne existe quand les webhooks arrivent)
    4) Construit la session Stripe
    Erreurs: HTTPException 400/404/409 (validation), CheckoutError (session).
    Une commande dont la session échoue reste 'pending' (jamais payée, jamais supprimée).
    """
    user_id = str(user.get("id") or "")
    try:
        shipping_cost = shipping_rates.checkout_shipping_cost(shipping_method)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if shipping_method == shipping_rates.STORE:
        address = shipping_rates.STORE_ADDRESS_LABEL
    else:
        address = (shipping_address or "").strip()
        if not address:
            raise HTTPException(status_code=400, detail="Adresse de livraison requise")

    cards = _load_purchasable_cards(user_id, items)
    breakdown = fees.compute(cards.values(), shipping_cost)

    order = orders_repository.insert_order({
        "user_id": user_id,
        "order_type": OrderType.PURCHASE.value,
        "status": OrderStatus.PENDING.value,
        "subtotal": f"{breakdown.subtotal:.2f}",
        "shipping_cost": f"{breakdown.shipping:.2f}",
        "total": f"{breakdown.total:.2f}",
        "shipping_method": shipping_method,
        "shipping_address": address,
    })
    order_id = str(order.get("id"))
    snapshots = [cart.snapshot_item(order_id, card) for card in cards.values()]
    orders_repository.insert_order_items(snapshots)
    logger.info("payments.service order created order=%s user=%s items=%s method=%s",
                order_id, user_id, len(snapshots), shipping_method)

    session = build_session(
        order_id,
        snapshots,
        breakdown.shipping,
        shipping_method,
        seller_lookup=lambda _ids: sellers_for_cards(cards),
        customer_email=user.get("email"),
    )
    return {
        "order_id": order_id,
        "session_id": session["session_id"],
        "url": session["session_url"],
        "breakdown": breakdown.as_dict(),
    }

def start_shipping_checkout(
    user: Dict[str, Any],
    order_ids: Iterable[Any],
    card_ids: Optional[Iterable[Any]],
    shipping_method: str,
    shipping_address: Optional[str],
) -> Dict[str, Any]:
    """
    Paiement de l'envoi groupé de cartes stockées.
    - Les commandes doivent appartenir à l'acheteur et être 'stored'.
    - card_ids (optionnel) restreint l'envoi à un sous-ensemble des cartes stockées.
    - Prix selon la grille par palier; aucune marchandise n'est refacturée.
    """
    user_id = str(user.get("id") or "")
    ids = list(dict.fromkeys(str(o).strip() for o in (order_ids or []) if str(o or "").strip()))
    if not ids:
        raise HTTPException(status_code=400, detail="Aucune commande sélectionnée")
    if shipping_method not in shipping_rates.SHIPPING_SPEEDS:
        raise HTTPException(status_code=400, detail=f"Vitesse d'envoi inconnue: {shipping_method}")
    address = (shipping_address or "").strip()
    if not address:
        raise HTTPException(status_code=400, detail="Adresse de livraison requise")

    orders = {str(o.get("id")): o for o in orders_repository.get_orders_by_ids(ids)}
    for order_id in ids:
        order = orders.get(order_id)
        if not order or str(order.get("user_id") or "") != user_id:
            raise HTTPException(status_code=404, detail="Commande introuvable")
        if order.get("status") != OrderStatus.STORED.value:
            raise HTTPException(status_code=409, detail="Commande non stockée")

    order_cards = list(dict.fromkeys(
        str(it.get("card_id"))
        for order_id in ids
        for it in (orders[order_id].get("order_items") or [])
        if it.get("card_id")
    ))
    # une commande reste 'stored' tant qu'une de ses cartes l'est: ne compter que celles-là
    cards = cards_repository.get_cards_map(order_cards)
    stored_cards = [
        c for c in order_cards
        if (cards.get(c) or {}).get("status") == CardStatus.STORED.value
    ]
    selected = list(dict.fromkeys(str(c).strip() for c in (card_ids or []) if str(c or "").strip()))
    if selected:
        if [c for c in selected if c not in order_cards]:
            raise HTTPException(status_code=400, detail="Carte hors des commandes sélectionnées")
        if [c for c in selected if c not in stored_cards]:
            raise HTTPException(status_code=409, detail="Carte déjà expédiée")
    to_ship = selected or stored_cards
    if not to_ship:
        raise HTTPException(status_code=409, detail="Aucune carte stockée à expédier")
    card_count = len(to_ship)
    try:
        shipping_cost = shipping_rates.consolidated_shipping_cost(card_count, shipping_method)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    order = orders_repository.insert_order({
        "user_id": user_id,
        "order_type": OrderType.SHIPPING.value,
        "status": OrderStatus.PENDING.value,
        "subtotal": "0.00",
        "shipping_cost": f"{shipping_cost:.2f}",
        "total": f"{shipping_cost:.2f}",
        "shipping_method": shipping_method,
        "shipping_address": address,
        "related_order_ids": ids,
        "related_card_ids": to_ship,
    })
    shipping_order_id = str(order.get("id"))
    logger.info("payments.service shipping order created order=%s stored_orders=%s cards=%s speed=%s",
                shipping_order_id, len(ids), card_count, shipping_method)

    try:
        metadata = ShippingCheckoutMetadata(
            shipping_order_id=shipping_order_id,
            stored_order_ids=ids,
            shipping_method=shipping_method,
            shipping_cost=shipping_cost,
            card_count=card_count,
        ).encode()
    except MetadataTooLarge as e:
        raise CheckoutError("Trop de commandes pour un seul envoi") from e

    label = f"Shipping ({shipping_method.replace('_', ' ')}) - {card_count} card{'s' if card_count > 1 else ''}"
    try:
        session = stripe_client.create_session(
            line_items=cart.to_line_items([], shipping_cost, shipping_label=label),
            success_url=_url(SHIPPING_SUCCESS_PATH, f"session_id={{CHECKOUT_SESSION_ID}}&order_id={shipping_order_id}"),
            cancel_url=_url(SHIPPING_CANCEL_PATH),
            metadata=metadata,
            customer_email=user.get("email"),
            client_reference_id=shipping_order_id,
        )
    except Exception as e:
        logger.exception("payments.service shipping session failed order=%s", shipping_order_id)
        raise CheckoutError("Création de la session de paiement impossible") from e

    return {
        "order_id": shipping_order_id,
        "session_id": session.get("id") or "",
        "url": session.get("url") or "",
        "shipping_cost": f"{shipping_cost:.2f}",
        "card_count": card_count,
    }

def verify_session(session_id: str) -> Dict[str, Any]:
    """
    Relit une session Stripe pour les pages de retour (succès d'achat / d'envoi).
    Lève CheckoutError si la session est introuvable.
    """
    if not session_id:
        raise HTTPException(status_code=400, detail="session_id manquant")
    try:
        session = stripe_client.get_session(session_id)
    except Exception as e:
        logger.exception("payments.service verify_session failed session=%s", session_id)
        raise CheckoutError("Session de paiement introuvable") from e
    md = session.get("metadata") or {}
    shipping = is_shipping_metadata(md)
    return {
        "session_id": session.get("id") or session_id,
        "payment_status": session.get("payment_status") or "",
        "order_id": "" if shipping else (md.get("orderId") or ""),
        "shipping_order_id": md.get("shippingOrderId") or "",
        "shipping_method": md.get("shippingMethod") or "",
    }
