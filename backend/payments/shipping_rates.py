"""
Grille tarifaire d'envoi (règle métier fixe, non dérivée).

- Au checkout: "ship_now" au tarif forfaitaire SHIP_NOW_FLAT_RATE, ou "store" gratuit.
- Envoi groupé de cartes stockées: tarif par palier selon le nombre de cartes
  (1 / 2 à 10 / 11 et plus), trois vitesses par palier.
"""
from decimal import Decimal
from typing import Dict

from backend.config import SHIP_NOW_FLAT_RATE
from .fees import to_money

SHIP_NOW = "ship_now"
STORE = "store"
CHECKOUT_METHODS = (SHIP_NOW, STORE)

SECOND_CLASS = "2nd_class"
FIRST_CLASS = "1st_class"
SPECIAL_DELIVERY = "special_delivery"
SHIPPING_SPEEDS = (SECOND_CLASS, FIRST_CLASS, SPECIAL_DELIVERY)

STORE_ADDRESS_LABEL = "Store for later shipment"

_SINGLE_CARD = {SECOND_CLASS: Decimal("2.00"), FIRST_CLASS: Decimal("3.50"), SPECIAL_DELIVERY: Decimal("9.00")}
_SMALL_BATCH = {SECOND_CLASS: Decimal("4.00"), FIRST_CLASS: Decimal("5.00"), SPECIAL_DELIVERY: Decimal("12.00")}
_LARGE_BATCH = {SECOND_CLASS: Decimal("10.00"), FIRST_CLASS: Decimal("12.00"), SPECIAL_DELIVERY: Decimal("15.00")}

# module backend.payments.shipping_rates
def checkout_shipping_cost(method: str) -> Decimal:
    """
    Frais d'envoi choisis au checkout.
    - ship_now: forfait SHIP_NOW_FLAT_RATE
    - store: 0.00 (les cartes restent en garde chez la plateforme)
    """
    if method == STORE:
        return Decimal("0.00")
    if method == SHIP_NOW:
        return to_money(SHIP_NOW_FLAT_RATE)
    raise ValueError(f"Mode d'envoi inconnu: {method}")

def tier_options(card_count: int) -> Dict[str, Decimal]:
    """
    Retourne les options {vitesse: prix} du palier correspondant au nombre de cartes.
    - card_count <= 0 est refusé (aucun envoi sans carte).
    """
    if card_count <= 0:
        raise ValueError("Aucune carte à expédier")
    if card_count == 1:
        return dict(_SINGLE_CARD)
    if card_count <= 10:
        return dict(_SMALL_BATCH)
    return dict(_LARGE_BATCH)

def consolidated_shipping_cost(card_count: int, speed: str) -> Decimal:
    options = tier_options(card_count)
    if speed not in options:
        raise ValueError(f"Vitesse d'envoi inconnue: {speed}")
    return options[speed]
