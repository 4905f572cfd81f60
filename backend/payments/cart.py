"""
Logique panier pure (pas de Stripe, pas de DB).
"""
from typing import List, Dict, Any, Iterable
from fastapi import HTTPException

from backend.config import CURRENCY
from .fees import to_money, to_minor_units

# module backend.payments.cart
def normalize_card_ids(items: Iterable[Any]) -> List[str]:
    """
    Normalise un panier brut en liste d'IDs de cartes distincts (ordre conservé).
    - Accepte [{"id": "<card_id>"}, ...] ou ["<card_id>", ...]
    - Une carte est unique: un doublon est ignoré.
    - Soulève HTTPException(400) si aucune ligne valide n’est présente.
    """
    seen: Dict[str, None] = {}
    for it in items or []:
        raw = it.get("id") if isinstance(it, dict) else it
        card_id = str(raw or "").strip()
        if card_id and card_id not in seen:
            seen[card_id] = None
    if not seen:
        raise HTTPException(status_code=400, detail="Panier invalide")
    return list(seen)

def to_line_items(items: List[Dict[str, Any]], shipping_cost: Any = None, shipping_label: str = "Shipping") -> List[Dict[str, Any]]:
    """
    Construit les line_items Stripe: une ligne par carte + une ligne d'envoi si frais > 0.
    - items: [{"card_id", "price", "card_title", "card_image_url"}, ...]
    - unit_amount en unités mineures, devise CURRENCY
    - Soulève HTTPException(400) si aucune ligne n’est construite.
    """
    line_items: List[Dict[str, Any]] = []
    for it in items or []:
        amount = to_minor_units(it.get("price"))
        if amount <= 0:
            continue
        product_data: Dict[str, Any] = {"name": it.get("card_title") or "Card"}
        if it.get("card_image_url"):
            product_data["images"] = [it["card_image_url"]]
        line_items.append({
            "quantity": 1,
            "price_data": {
                "currency": CURRENCY,
                "unit_amount": amount,
                "product_data": product_data,
            },
        })

    shipping_amount = to_minor_units(shipping_cost)
    if shipping_amount > 0:
        line_items.append({
            "quantity": 1,
            "price_data": {
                "currency": CURRENCY,
                "unit_amount": shipping_amount,
                "product_data": {"name": shipping_label},
            },
        })
    if not line_items:
        raise HTTPException(status_code=400, detail="Aucun article valide")
    return line_items

def snapshot_item(order_id: str, card: Dict[str, Any]) -> Dict[str, Any]:
    """Ligne order_items figée au moment de l'achat (titre, image, prix)."""
    return {
        "order_id": order_id,
        "card_id": str(card.get("id")),
        "price": f"{to_money(card.get('price')):.2f}",
        "card_title": card.get("title") or "",
        "card_image_url": card.get("image_url") or "",
        "card_nozid": card.get("nozid") or "",
    }
