"""
Calcul des montants d'une commande (pur: pas de Stripe, pas de DB).

- subtotal = somme des prix des cartes, total = subtotal + frais d'envoi
- platform_fee = round(subtotal * PLATFORM_FEE_RATE, 2): purement informatif
- part vendeur calculée carte par carte: round(price * SELLER_PAYOUT_RATE, 2)
  (jamais dérivée d'une commission agrégée, l'arrondi reste borné par article)
- frais acheteur (+10%): affichage panier uniquement, hors montant facturé
"""
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List

from backend.config import PLATFORM_FEE_RATE, SELLER_PAYOUT_RATE, BUYER_FEE_RATE

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# module backend.payments.fees
def to_money(value: Any) -> Decimal:
    """
    Normalise un montant (str|float|int|Decimal|None) en Decimal à 2 décimales.
    - Valeurs manquantes, illisibles ou négatives -> 0.00
    """
    if value is None or isinstance(value, bool):
        return ZERO
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO
    if not amount.is_finite() or amount < 0:
        return ZERO
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)

def apply_rate(amount: Any, rate: float) -> Decimal:
    """Applique un taux à un montant, arrondi au centime (demi supérieur)."""
    return (to_money(amount) * Decimal(str(rate))).quantize(CENT, rounding=ROUND_HALF_UP)

def seller_payout(price: Any) -> Decimal:
    return apply_rate(price, SELLER_PAYOUT_RATE)

def buyer_fee_display(subtotal: Any) -> Decimal:
    """Frais acheteur affiché dans le panier (jamais ajouté aux line_items Stripe)."""
    return apply_rate(subtotal, BUYER_FEE_RATE)

def to_minor_units(amount: Any) -> int:
    """Montant en unités mineures (pence/centimes) pour l'API Stripe."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))

@dataclass(frozen=True)
class FeeBreakdown:
    subtotal: Decimal
    platform_fee: Decimal
    shipping: Decimal
    total: Decimal
    per_item_payout: List[Decimal] = field(default_factory=list)

    @property
    def total_payout(self) -> Decimal:
        return sum(self.per_item_payout, ZERO)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "subtotal": f"{self.subtotal:.2f}",
            "platform_fee": f"{self.platform_fee:.2f}",
            "shipping": f"{self.shipping:.2f}",
            "total": f"{self.total:.2f}",
            "per_item_payout": [f"{p:.2f}" for p in self.per_item_payout],
        }

def compute(items: Iterable[Dict[str, Any]], shipping_cost: Any) -> FeeBreakdown:
    """
    Calcule subtotal, commission plateforme, frais d'envoi, total et part vendeur par article.
    - items: [{"price": ...}, ...] (autres clés ignorées)
    - Fonction totale: aucune erreur levée, prix négatifs/manquants ramenés à 0.
    """
    prices = [to_money((it or {}).get("price")) for it in (items or [])]
    subtotal = sum(prices, ZERO)
    shipping = to_money(shipping_cost)
    return FeeBreakdown(
        subtotal=subtotal,
        platform_fee=apply_rate(subtotal, PLATFORM_FEE_RATE),
        shipping=shipping,
        total=subtotal + shipping,
        per_item_payout=[seller_payout(p) for p in prices],
    )
