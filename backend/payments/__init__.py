"""
Module 'payments' (feature-first): point d'entrée public.
Réunit calcul des montants, grille d'envoi, métadonnées Stripe et client Stripe.
Le service checkout (payments.service) et le webhook (payments.webhook) s'importent directement.
"""

from .fees import FeeBreakdown, compute, seller_payout, buyer_fee_display, to_money, to_minor_units
from .shipping_rates import checkout_shipping_cost, tier_options, consolidated_shipping_cost
from .metadata import (
    MetadataTooLarge,
    SettlementInstructionSet,
    ShippingCheckoutMetadata,
    SplitInstruction,
    extract_metadata,
)
from .stripe_client import WebhookSignatureError, require_stripe, create_session, get_session, parse_event

__all__ = [
    # fees
    "FeeBreakdown",
    "compute",
    "seller_payout",
    "buyer_fee_display",
    "to_money",
    "to_minor_units",
    # shipping
    "checkout_shipping_cost",
    "tier_options",
    "consolidated_shipping_cost",
    # metadata
    "MetadataTooLarge",
    "SettlementInstructionSet",
    "ShippingCheckoutMetadata",
    "SplitInstruction",
    "extract_metadata",
    # stripe
    "WebhookSignatureError",
    "require_stripe",
    "create_session",
    "get_session",
    "parse_event",
]
