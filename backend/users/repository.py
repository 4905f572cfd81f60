"""Couche d’accès aux données (Supabase) pour les profils utilisateurs (table profiles).
Un profil porte l'email de contact, le rôle et la destination de virement Stripe Connect
(stripe_account_id + stripe_payouts_enabled) d'un vendeur.
"""
from typing import Any, Dict, Iterable, List, Optional
import logging

import backend.infra.supabase_client as supabase_client

logger = logging.getLogger(__name__)

PROFILE_FIELDS = "id, email, role, stripe_account_id, stripe_payouts_enabled"

def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    """Récupère un profil par id.
    - Retour: dict profil ou None si introuvable/erreur
    """
    if not user_id:
        return None
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("profiles")
            .select(PROFILE_FIELDS)
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return rows[0] if rows else None
    except Exception:
        logger.exception("users.repository.get_profile failed user_id=%s", user_id)
        return None

def get_profiles_map(user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Retourne {user_id: profil} (lève en cas d'erreur: utilisé pour les règles de partage)."""
    ids = sorted({str(i) for i in user_ids if i})
    if not ids:
        return {}
    res = (
        supabase_client.get_service_supabase()
        .table("profiles")
        .select(PROFILE_FIELDS)
        .in_("id", ids)
        .execute()
    )
    return {str(p.get("id")): p for p in (res.data or [])}

def get_emails(user_ids: Iterable[str]) -> Dict[str, str]:
    """{user_id: email} en best-effort (utilisé pour les notifications)."""
    try:
        profiles = get_profiles_map(user_ids)
    except Exception:
        logger.exception("users.repository.get_emails failed")
        return {}
    return {uid: p.get("email") for uid, p in profiles.items() if p.get("email")}

def set_stripe_account(user_id: str, account_id: str) -> bool:
    """Enregistre le compte Connect d'un vendeur (virements désactivés tant que Stripe ne les active pas)."""
    try:
        (
            supabase_client.get_service_supabase()
            .table("profiles")
            .update({"stripe_account_id": account_id, "stripe_payouts_enabled": False})
            .eq("id", user_id)
            .execute()
        )
        return True
    except Exception:
        logger.exception("users.repository.set_stripe_account failed user_id=%s", user_id)
        return False

def set_payouts_enabled(account_id: str, enabled: bool) -> List[Dict[str, Any]]:
    """Synchronise stripe_payouts_enabled depuis un événement account.updated (lève en cas d'erreur)."""
    res = (
        supabase_client.get_service_supabase()
        .table("profiles")
        .update({"stripe_payouts_enabled": bool(enabled)})
        .eq("stripe_account_id", account_id)
        .execute()
    )
    return res.data or []
