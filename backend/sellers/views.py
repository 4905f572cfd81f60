import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from backend.utils.security import require_user
from backend.utils.rate_limit import optional_rate_limit
from backend.sellers import service as sellers_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sellers", tags=["Sellers API"])

# module backend.sellers.views
@router.post("/connect", dependencies=[Depends(optional_rate_limit(times=5, seconds=60))])
def connect_stripe(user: Dict[str, Any] = Depends(require_user)):
    """
    Lien d'onboarding Stripe Connect du vendeur connecté.
    - Retour: {"account_id", "url"}
    - Erreurs: 502 si Stripe ou l'enregistrement du compte échoue
    """
    try:
        return sellers_service.start_onboarding(user)
    except Exception:
        logger.exception("Erreur connect_stripe user=%s", user.get("id"))
        raise HTTPException(status_code=502, detail="Connexion Stripe impossible")

@router.get("/status")
def connect_status(user: Dict[str, Any] = Depends(require_user)):
    return sellers_service.payout_status(user.get("id", ""))
