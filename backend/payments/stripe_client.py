"""
Adaptateur Stripe: centralise les appels et la configuration Stripe.
- Sessions Checkout (création, lecture, recherche par payment_intent)
- Vérification de signature des webhooks sur le body brut
- Virements Connect (transfers) avec clé d'idempotence
- Comptes Connect (onboarding vendeurs)
"""
import json
from typing import Any, Dict, List, Optional

import stripe

from backend.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, CURRENCY


class WebhookSignatureError(ValueError):
    """Signature Stripe absente ou invalide: l'événement est rejeté sans effet de bord."""


# module backend.payments.stripe_client
def require_stripe():
    """
    Prépare et retourne le module stripe prêt à l’emploi.
    - Configure stripe.api_key via STRIPE_SECRET_KEY si disponible.
    - En absence de clé, les appels Stripe échoueront côté SDK (ex: No API key provided).
    """
    if STRIPE_SECRET_KEY:
        stripe.api_key = STRIPE_SECRET_KEY
    return stripe

def as_dict(obj: Any) -> Dict[str, Any]:
    """Convertit un objet Stripe (StripeObject) en dict Python récursif."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)

def create_session(
    *,
    line_items: List[Dict[str, Any]],
    success_url: str,
    cancel_url: str,
    metadata: Dict[str, str],
    customer_email: Optional[str] = None,
    client_reference_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Crée une session Stripe Checkout (mode "payment", carte uniquement).
    - line_items: lignes Stripe construites par payments.cart
    - metadata: map plate déjà validée (budget Stripe)
    Retour: dict session (ex: {"id": "cs_test_...", "url": "https://..."})
    """
    require_stripe()
    kwargs: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": line_items,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
        # Recopie sur le PaymentIntent pour les opérateurs (dashboard Stripe)
        "payment_intent_data": {"metadata": {k: v for k, v in metadata.items() if not k.startswith("card_")}},
    }
    if customer_email:
        kwargs["customer_email"] = customer_email
    if client_reference_id:
        kwargs["client_reference_id"] = client_reference_id
    session = stripe.checkout.Session.create(**kwargs)
    return as_dict(session)

def get_session(session_id: str) -> Dict[str, Any]:
    """
    Récupère une session Stripe Checkout par son identifiant.
    Retour: dict session incluant "id", "payment_status", "metadata", etc.
    """
    require_stripe()
    return as_dict(stripe.checkout.Session.retrieve(session_id))

def find_session_by_payment_intent(payment_intent_id: str) -> Optional[Dict[str, Any]]:
    """
    Retrouve la session Checkout à l'origine d'un PaymentIntent.
    - payment_intent.succeeded ne porte pas les métadonnées de la session: elles sont relues ici.
    - Retourne None si aucune session ne correspond.
    """
    require_stripe()
    sessions = stripe.checkout.Session.list(payment_intent=payment_intent_id, limit=1)
    data = as_dict(sessions).get("data") or []
    return as_dict(data[0]) if data else None

def verify_event(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """
    Valide la signature d'un webhook Stripe et retourne l'événement décodé.
    - payload: body brut, non parsé (la signature couvre les octets exacts)
    - sig_header: en-tête Stripe-Signature
    - Comparaison en temps constant assurée par le SDK (HMAC-SHA256)
    Lève WebhookSignatureError si l'en-tête manque, si la signature ou le JSON est invalide.
    """
    if not sig_header:
        raise WebhookSignatureError("En-tête Stripe-Signature manquant")
    if not STRIPE_WEBHOOK_SECRET:
        raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET manquant")
    try:
        stripe.Webhook.construct_event(payload, sig_header, STRIPE_WEBHOOK_SECRET)
        return json.loads(payload.decode("utf-8"))
    except (stripe.SignatureVerificationError, ValueError) as e:
        raise WebhookSignatureError(str(e)) from e

async def parse_event(request) -> Dict[str, Any]:
    """
    Lit le body brut + en-tête Stripe-Signature d'une requête FastAPI et valide l'événement.
    Retour: l’événement (dict) si la signature est valide.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return verify_event(payload, sig_header)

def create_transfer(
    *,
    amount_minor: int,
    destination: str,
    description: str,
    metadata: Dict[str, str],
    idempotency_key: str,
    transfer_group: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Crée un virement Connect vers le compte vendeur.
    - amount_minor: montant en unités mineures (pence)
    - idempotency_key: rejouer la même clé ne crée jamais un second virement
    """
    require_stripe()
    kwargs: Dict[str, Any] = {
        "amount": int(amount_minor),
        "currency": CURRENCY,
        "destination": destination,
        "description": description,
        "metadata": metadata,
    }
    if transfer_group:
        kwargs["transfer_group"] = transfer_group
    transfer = stripe.Transfer.create(**kwargs, idempotency_key=idempotency_key)
    return as_dict(transfer)

def is_rejection(error: BaseException) -> bool:
    """
    Stripe a répondu 4xx: rien n'a été créé et Stripe rejouera la même erreur pour la même clé.
    Une erreur réseau (pas de statut HTTP) peut masquer un virement créé: la clé doit être conservée.
    """
    status = getattr(error, "http_status", None)
    return isinstance(status, int) and 400 <= status < 500

def create_connect_account(*, email: str, user_id: str) -> Dict[str, Any]:
    """Crée un compte Connect Express (particulier, Royaume-Uni) pour un vendeur."""
    require_stripe()
    account = stripe.Account.create(
        type="express",
        country="GB",
        business_type="individual",
        email=email or None,
        capabilities={"card_payments": {"requested": True}, "transfers": {"requested": True}},
        metadata={"user_id": user_id},
    )
    return as_dict(account)

def create_account_link(*, account_id: str, refresh_url: str, return_url: str) -> Dict[str, Any]:
    """Lien d'onboarding hébergé par Stripe pour compléter le compte vendeur."""
    require_stripe()
    link = stripe.AccountLink.create(
        account=account_id,
        refresh_url=refresh_url,
        return_url=return_url,
        type="account_onboarding",
    )
    return as_dict(link)
