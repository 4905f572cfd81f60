# module backend.orders.models
"""Modèle du cycle de vie des commandes et des cartes.

- OrderStatus / OrderType / CardStatus: énumérations explicites (plus d'écritures libres).
- validate_transition: refuse les transitions illégales (ex: shipped -> pending).
- resolve_transition: variante tolérante pour le webhook (événements rejoués ou
  reçus dans le désordre): même état ou état déjà dépassé -> aucune écriture.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    STORED = "stored"
    SHIPPED = "shipped"


class OrderType(str, Enum):
    PURCHASE = "purchase"
    SHIPPING = "shipping"


class CardStatus(str, Enum):
    PENDING = "pending"
    LIVE = "live"
    STORED = "stored"
    SOLD = "sold"


class IllegalTransition(ValueError):
    """Transition de statut interdite pour ce type de commande."""


class OrderNotFound(LookupError):
    """Commande introuvable (ou n'appartenant pas à l'utilisateur)."""


_PURCHASE_EDGES: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.STORED}),
    OrderStatus.PAID: frozenset({OrderStatus.STORED, OrderStatus.SHIPPED}),
    OrderStatus.STORED: frozenset(),
    OrderStatus.SHIPPED: frozenset(),
}

_SHIPPING_EDGES: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset(),
}

# Rang dans le cycle de vie: sert à reconnaître un événement en retard
_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PAID: 1,
    OrderStatus.STORED: 2,
    OrderStatus.SHIPPED: 3,
}

_CARD_EDGES: Dict[CardStatus, FrozenSet[CardStatus]] = {
    CardStatus.PENDING: frozenset({CardStatus.LIVE}),
    CardStatus.LIVE: frozenset({CardStatus.PENDING, CardStatus.STORED, CardStatus.SOLD}),
    CardStatus.STORED: frozenset({CardStatus.SOLD}),
    CardStatus.SOLD: frozenset(),
}


def parse_order_type(value: Optional[str]) -> OrderType:
    """Les lignes historiques sans order_type sont des commandes d'achat."""
    return OrderType(value) if value else OrderType.PURCHASE


def edges_for(order_type: OrderType) -> Dict[OrderStatus, FrozenSet[OrderStatus]]:
    return _SHIPPING_EDGES if order_type == OrderType.SHIPPING else _PURCHASE_EDGES


def can_transition(order_type: OrderType, current: OrderStatus, target: OrderStatus) -> bool:
    return target in edges_for(order_type).get(current, frozenset())


def validate_transition(order_type: OrderType, current: OrderStatus, target: OrderStatus) -> None:
    """Lève IllegalTransition si current -> target n'est pas une arête du cycle de vie (même état: rien)."""
    if target not in edges_for(order_type):
        raise IllegalTransition(f"{order_type.value}: statut {target.value} impossible")
    if current == target:
        return
    if not can_transition(order_type, current, target):
        raise IllegalTransition(f"{order_type.value}: {current.value} -> {target.value} interdit")


def resolve_transition(order_type: OrderType, current: OrderStatus, target: OrderStatus) -> bool:
    """
    Décide si une transition demandée par un webhook doit être écrite.
    - True: transition légale, à appliquer
    - False: même état, ou état courant déjà au-delà de la cible (rejeu / désordre)
    - IllegalTransition: ni l'un ni l'autre (ex: shipping -> stored)
    """
    if current == target:
        return False
    if can_transition(order_type, current, target):
        return True
    if target in edges_for(order_type) and _RANK[current] > _RANK[target]:
        return False
    raise IllegalTransition(f"{order_type.value}: {current.value} -> {target.value} interdit")


def allowed_sources(order_type: OrderType, target: OrderStatus) -> Tuple[str, ...]:
    """Statuts depuis lesquels target est atteignable (clause IN de la mise à jour conditionnelle)."""
    return tuple(
        sorted(s.value for s, targets in edges_for(order_type).items() if target in targets)
    )


def card_sources(target: CardStatus) -> Tuple[str, ...]:
    return tuple(sorted(s.value for s, targets in _CARD_EDGES.items() if target in targets))
