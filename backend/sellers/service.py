"""
Onboarding des vendeurs sur Stripe Connect (destination des virements).
- Un compte Express est créé une seule fois par profil puis réutilisé.
- stripe_payouts_enabled reste False jusqu'à l'événement account.updated.
"""
import logging
from typing import Any, Dict

from backend.config import BASE_URL, CONNECT_REFRESH_PATH, CONNECT_RETURN_PATH
from backend.payments import stripe_client
from backend.users import repository as users_repository

logger = logging.getLogger(__name__)


# module backend.sellers.service
def start_onboarding(user: Dict[str, Any]) -> Dict[str, str]:
    """
    Retourne le lien d'onboarding Stripe du vendeur, en créant son compte Connect si besoin.
    Lève RuntimeError si le compte ne peut pas être rattaché au profil.
    """
    user_id = str(user.get("id") or "")
    profile = users_repository.get_profile(user_id) or {}
    account_id = profile.get("stripe_account_id") or ""
    if not account_id:
        account = stripe_client.create_connect_account(email=user.get("email") or "", user_id=user_id)
        account_id = account.get("id") or ""
        if not account_id or not users_repository.set_stripe_account(user_id, account_id):
            raise RuntimeError("Compte Stripe non enregistré sur le profil")
        logger.info("sellers.service connect account created user=%s account=%s", user_id, account_id)

    base = BASE_URL.rstrip("/")
    link = stripe_client.create_account_link(
        account_id=account_id,
        refresh_url=f"{base}{CONNECT_REFRESH_PATH}",
        return_url=f"{base}{CONNECT_RETURN_PATH}",
    )
    return {"account_id": account_id, "url": link.get("url") or ""}

def payout_status(user_id: str) -> Dict[str, Any]:
    profile = users_repository.get_profile(user_id) or {}
    return {
        "connected": bool(profile.get("stripe_account_id")),
        "payouts_enabled": bool(profile.get("stripe_payouts_enabled")),
    }
