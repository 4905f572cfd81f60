"""
Sérialisation/désérialisation des métadonnées Stripe d'une session Checkout.

Les métadonnées Stripe sont une map plate {str: str} limitée (50 clés, clé <= 40 car.,
valeur <= 500 car.). Elles sont le seul support des instructions de partage entre la
création de la session et le webhook: l'encodage vérifie le budget, le décodage est
tolérant (une entrée corrompue est ignorée, le reste est conservé).

Schéma commande d'achat:
    orderId, shippingMethod, subtotal, shippingCost, platformFee,
    card_<i>_id, card_<i>_owner, card_<i>_stripe_account, card_<i>_amount
Schéma commande d'envoi:
    shippingOrderId, storedOrderIds (liste séparée par des virgules), shippingMethod,
    shippingCost, cardCount
"""
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .fees import to_money, ZERO

MAX_KEYS = 50
MAX_KEY_LENGTH = 40
MAX_VALUE_LENGTH = 500

CARD_KEY_RE = re.compile(r"^card_(\d+)_(id|owner|stripe_account|amount)$")


class MetadataTooLarge(ValueError):
    """Les métadonnées dépassent le budget imposé par Stripe."""


def check_budget(metadata: Dict[str, str]) -> Dict[str, str]:
    """
    Vérifie qu'une map de métadonnées tient dans les limites Stripe.
    - Lève MetadataTooLarge en précisant la contrainte violée.
    """
    if len(metadata) > MAX_KEYS:
        raise MetadataTooLarge(f"{len(metadata)} clés (max {MAX_KEYS})")
    for key, value in metadata.items():
        if len(key) > MAX_KEY_LENGTH:
            raise MetadataTooLarge(f"clé trop longue: {key}")
        if len(str(value)) > MAX_VALUE_LENGTH:
            raise MetadataTooLarge(f"valeur trop longue pour {key}")
    return metadata


@dataclass(frozen=True)
class SplitInstruction:
    card_id: str
    owner_id: str
    stripe_account: str
    amount: Decimal


@dataclass
class SettlementInstructionSet:
    """
    Instructions de règlement d'une commande d'achat (valeur transportée par Stripe).
    - encode(): map plate prête pour stripe.checkout.Session.create(metadata=...)
    - decode(): reconstruit l'ensemble; les entrées inexploitables vont dans `skipped`
    """
    order_id: str
    shipping_method: str = ""
    subtotal: Decimal = ZERO
    shipping_cost: Decimal = ZERO
    platform_fee: Decimal = ZERO
    instructions: List[SplitInstruction] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)

    def encode(self) -> Dict[str, str]:
        metadata: Dict[str, str] = {
            "orderId": str(self.order_id),
            "shippingMethod": self.shipping_method or "",
            "subtotal": f"{self.subtotal:.2f}",
            "shippingCost": f"{self.shipping_cost:.2f}",
            "platformFee": f"{self.platform_fee:.2f}",
        }
        for i, ins in enumerate(self.instructions):
            metadata[f"card_{i}_id"] = str(ins.card_id)
            metadata[f"card_{i}_owner"] = str(ins.owner_id)
            metadata[f"card_{i}_stripe_account"] = str(ins.stripe_account)
            metadata[f"card_{i}_amount"] = f"{ins.amount:.2f}"
        return check_budget(metadata)

    @property
    def card_ids(self) -> List[str]:
        return [ins.card_id for ins in self.instructions]

    @classmethod
    def decode(cls, metadata: Optional[Dict[str, Any]]) -> "SettlementInstructionSet":
        meta = dict(metadata or {})
        grouped: Dict[int, Dict[str, str]] = {}
        for key, value in meta.items():
            match = CARD_KEY_RE.match(str(key))
            if not match:
                continue
            grouped.setdefault(int(match.group(1)), {})[match.group(2)] = str(value or "").strip()

        instructions: List[SplitInstruction] = []
        skipped: List[Dict[str, str]] = []
        for index in sorted(grouped):
            entry = grouped[index]
            card_id = entry.get("id") or ""
            account = entry.get("stripe_account") or ""
            raw_amount = entry.get("amount") or ""
            if not card_id:
                skipped.append({"index": str(index), "card_id": "", "reason": "missing card id"})
                continue
            if not account:
                skipped.append({"index": str(index), "card_id": card_id, "reason": "missing destination"})
                continue
            amount = to_money(raw_amount)
            if amount <= 0:
                reason = "zero amount" if raw_amount else "missing amount"
                skipped.append({"index": str(index), "card_id": card_id, "reason": reason})
                continue
            instructions.append(SplitInstruction(
                card_id=card_id,
                owner_id=entry.get("owner") or "",
                stripe_account=account,
                amount=amount,
            ))

        return cls(
            order_id=str(meta.get("orderId") or ""),
            shipping_method=str(meta.get("shippingMethod") or ""),
            subtotal=to_money(meta.get("subtotal")),
            shipping_cost=to_money(meta.get("shippingCost")),
            platform_fee=to_money(meta.get("platformFee")),
            instructions=instructions,
            skipped=skipped,
        )


@dataclass
class ShippingCheckoutMetadata:
    """Métadonnées d'une session de paiement des frais d'envoi (commande 'shipping')."""
    shipping_order_id: str
    stored_order_ids: List[str] = field(default_factory=list)
    shipping_method: str = ""
    shipping_cost: Decimal = ZERO
    card_count: int = 0

    def encode(self) -> Dict[str, str]:
        return check_budget({
            "shippingOrderId": str(self.shipping_order_id),
            "storedOrderIds": ",".join(str(o) for o in self.stored_order_ids),
            "shippingMethod": self.shipping_method or "",
            "shippingCost": f"{self.shipping_cost:.2f}",
            "cardCount": str(int(self.card_count)),
        })

    @classmethod
    def decode(cls, metadata: Optional[Dict[str, Any]]) -> "ShippingCheckoutMetadata":
        meta = dict(metadata or {})
        stored = [o.strip() for o in str(meta.get("storedOrderIds") or "").split(",") if o.strip()]
        try:
            card_count = int(meta.get("cardCount") or 0)
        except (TypeError, ValueError):
            card_count = 0
        return cls(
            shipping_order_id=str(meta.get("shippingOrderId") or ""),
            stored_order_ids=stored,
            shipping_method=str(meta.get("shippingMethod") or ""),
            shipping_cost=to_money(meta.get("shippingCost")),
            card_count=card_count,
        )


# module backend.payments.metadata
def is_shipping_metadata(metadata: Optional[Dict[str, Any]]) -> bool:
    return bool((metadata or {}).get("shippingOrderId"))

def extract_metadata(event: Dict[str, Any]) -> Dict[str, str]:
    """
    Extrait la map de métadonnées depuis un event Stripe (webhook).
    - Attend event.data.object.metadata
    - Retourne {} si absente ou si l'event n'a pas la forme attendue.
    """
    data_obj = extract_object(event)
    meta = data_obj.get("metadata") or {}
    return {str(k): str(v) for k, v in dict(meta).items()}

def extract_object(event: Dict[str, Any]) -> Dict[str, Any]:
    """Retourne event.data.object sous forme de dict ({} si absent)."""
    try:
        data_obj = ((event or {}).get("data") or {}).get("object") or {}
    except AttributeError:
        return {}
    return data_obj if isinstance(data_obj, dict) else dict(data_obj)
