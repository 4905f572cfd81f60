import pytest

from backend.orders.models import (
    CardStatus,
    IllegalTransition,
    OrderStatus as S,
    OrderType as T,
    allowed_sources,
    card_sources,
    parse_order_type,
    resolve_transition,
    validate_transition,
)


@pytest.mark.parametrize("current,target", [
    (S.PENDING, S.PAID),
    (S.PENDING, S.STORED),
    (S.PAID, S.STORED),
    (S.PAID, S.SHIPPED),
])
def test_purchase_edges_are_legal(current, target):
    validate_transition(T.PURCHASE, current, target)

@pytest.mark.parametrize("current,target", [
    (S.SHIPPED, S.PENDING),
    (S.SHIPPED, S.PAID),
    (S.STORED, S.PAID),
    (S.STORED, S.SHIPPED),
    (S.PENDING, S.SHIPPED),
])
def test_purchase_illegal_edges(current, target):
    with pytest.raises(IllegalTransition):
        validate_transition(T.PURCHASE, current, target)

def test_shipping_order_can_never_be_stored():
    with pytest.raises(IllegalTransition):
        validate_transition(T.SHIPPING, S.PENDING, S.STORED)
    with pytest.raises(IllegalTransition):
        resolve_transition(T.SHIPPING, S.PAID, S.STORED)

def test_same_state_is_a_noop():
    validate_transition(T.PURCHASE, S.PAID, S.PAID)
    assert resolve_transition(T.PURCHASE, S.PAID, S.PAID) is False

def test_late_event_never_regresses():
    # payment_intent.succeeded (store) traité avant checkout.session.completed
    assert resolve_transition(T.PURCHASE, S.STORED, S.PAID) is False
    assert resolve_transition(T.PURCHASE, S.SHIPPED, S.PAID) is False
    assert resolve_transition(T.SHIPPING, S.SHIPPED, S.PAID) is False

def test_forward_transition_is_applied():
    assert resolve_transition(T.PURCHASE, S.PENDING, S.PAID) is True
    assert resolve_transition(T.PURCHASE, S.PAID, S.STORED) is True

def test_allowed_sources_for_conditional_updates():
    assert allowed_sources(T.PURCHASE, S.PAID) == ("pending",)
    assert allowed_sources(T.PURCHASE, S.STORED) == ("paid", "pending")
    assert allowed_sources(T.SHIPPING, S.SHIPPED) == ("paid",)

def test_card_sources():
    assert card_sources(CardStatus.SOLD) == ("live", "stored")
    assert card_sources(CardStatus.STORED) == ("live",)

def test_parse_order_type_defaults_to_purchase():
    assert parse_order_type(None) is T.PURCHASE
    assert parse_order_type("shipping") is T.SHIPPING
