import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from backend.utils.security import require_user
from backend.utils.rate_limit import optional_rate_limit
from backend.notifications import service as notifications
from backend.payments import service as payments_service
from backend.payments import shipping_rates
from backend.payments import stripe_client
from backend.payments import webhook as payments_webhook
from backend.payments.service import CheckoutError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/checkout", tags=["Checkout API"])
webhook_router = APIRouter(prefix="/api/v1/payments", tags=["Payments API"])


class CheckoutRequest(BaseModel):
    items: List[Any] = Field(min_length=1)
    shipping_method: str = shipping_rates.SHIP_NOW
    shipping_address: Optional[str] = None

    @field_validator("shipping_method")
    def known_method(cls, v: str) -> str:
        if v not in shipping_rates.CHECKOUT_METHODS:
            raise ValueError(f"Mode d'envoi inconnu: {v}")
        return v

class ShippingCheckoutRequest(BaseModel):
    order_ids: List[str] = Field(min_length=1)
    card_ids: Optional[List[str]] = None
    shipping_method: str
    shipping_address: str = Field(min_length=1)

class VerifyRequest(BaseModel):
    session_id: str = Field(min_length=1)


# module backend.payments.views
@router.post("/quote")
def checkout_quote(req: CheckoutRequest, user: Dict[str, Any] = Depends(require_user)):
    """
    Récapitulatif du panier avant paiement.
    - subtotal, frais d'envoi, total facturé, frais acheteur (affichage seulement)
    """
    return payments_service.quote(user.get("id", ""), req.items, req.shipping_method)

@router.post("/session", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def create_checkout_session(req: CheckoutRequest, user: Dict[str, Any] = Depends(require_user)):
    """
    Crée la commande 'pending' puis la session Checkout Stripe du panier.
    - Entrée JSON: {"items": ["<card_id>", ...], "shipping_method": "ship_now"|"store", "shipping_address": "..."}
    - Sécurité: require_user + rate limit (10 req / 60s)
    - Retour: {"order_id", "session_id", "url"}
    - Erreurs: 400/404/409 (panier invalide), 502 (session non créée)
    """
    try:
        result = payments_service.start_purchase_checkout(
            user, req.items, req.shipping_method, req.shipping_address
        )
        return {"order_id": result["order_id"], "session_id": result["session_id"], "url": result["url"]}
    except HTTPException:
        raise
    except CheckoutError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except Exception:
        logger.exception("Erreur create_checkout_session user=%s", user.get("id"))
        raise HTTPException(status_code=400, detail="Impossible de démarrer le paiement")

@router.get("/shipping/rates")
def shipping_rates_for(card_count: int, user: Dict[str, Any] = Depends(require_user)):
    """Options d'envoi groupé {vitesse: prix} pour un nombre de cartes."""
    try:
        options = shipping_rates.tier_options(card_count)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"card_count": card_count, "options": {k: f"{v:.2f}" for k, v in options.items()}}

@router.post("/shipping", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def create_shipping_checkout(req: ShippingCheckoutRequest, user: Dict[str, Any] = Depends(require_user)):
    """
    Paiement de l'envoi groupé de commandes stockées.
    - Retour: {"order_id", "session_id", "url", "shipping_cost", "card_count"}
    """
    try:
        return payments_service.start_shipping_checkout(
            user, req.order_ids, req.card_ids, req.shipping_method, req.shipping_address
        )
    except HTTPException:
        raise
    except CheckoutError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except Exception:
        logger.exception("Erreur create_shipping_checkout user=%s", user.get("id"))
        raise HTTPException(status_code=400, detail="Impossible de démarrer le paiement de l'envoi")

@router.post("/verify")
def verify_checkout(req: VerifyRequest, user: Dict[str, Any] = Depends(require_user)):
    """Relit une session Stripe pour la page de retour (statut de paiement + commande)."""
    try:
        return payments_service.verify_session(req.session_id)
    except HTTPException:
        raise
    except CheckoutError as e:
        raise HTTPException(status_code=404, detail=str(e))

@webhook_router.post("/webhook", include_in_schema=False)
async def webhook_stripe(request: Request, background_tasks: BackgroundTasks):
    """
    Webhook Stripe.
    - Signature: vérifiée sur le body brut (stripe_client.parse_event); invalide -> 400 sans effet
    - Traitement: payments_webhook.process_event
    - Emails: envoyés après la réponse (BackgroundTasks), un échec est seulement journalisé
    - Réponses: 200 {"status": "ok"|"ignored", ...}, 500 si erreur de traitement (Stripe relivre)
    """
    try:
        event = await stripe_client.parse_event(request)
    except stripe_client.WebhookSignatureError as e:
        logger.warning("payments.webhook rejected: %s", e)
        raise HTTPException(status_code=400, detail="Invalid Stripe webhook signature")

    try:
        result = await payments_webhook.process_event(event)
    except Exception:
        logger.exception("Erreur webhook_stripe id=%s type=%s", event.get("id"), event.get("type"))
        return JSONResponse(status_code=500, content={"status": "error"})

    if result.notifications:
        background_tasks.add_task(notifications.send_all, result.notifications)
    return result.as_response()
