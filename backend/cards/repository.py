"""
Accès aux données 'cards' (annonces de cartes en vente).
- get_cards_map: {card_id: carte} pour construire un panier à partir des prix en base.
- update_status: transition conditionnelle d'un lot de cartes (idempotente).
"""
from typing import Any, Dict, Iterable, List
import logging

import backend.infra.supabase_client as supabase_client

logger = logging.getLogger(__name__)

# module backend.cards.repository
def fetch_cards_by_ids(ids: Iterable[str]) -> List[Dict[str, Any]]:
    """
    Récupère les cartes par leurs IDs (table 'cards').
    - Lève en cas d'erreur: un panier ne doit pas être construit sur une lecture partielle.
    """
    card_ids = [str(i) for i in ids if i]
    if not card_ids:
        return []
    res = (
        supabase_client.get_service_supabase()
        .table("cards")
        .select("*")
        .in_("id", card_ids)
        .execute()
    )
    return res.data or []

def get_cards_map(ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Retourne un dict {id: carte} à partir d’une liste d’IDs."""
    return {str(c.get("id")): c for c in fetch_cards_by_ids(ids)}

def update_status(card_ids: Iterable[str], target: str, from_statuses: Iterable[str]) -> List[Dict[str, Any]]:
    """
    Passe les cartes au statut `target` si leur statut courant est dans `from_statuses`.
    - Rejouer l'appel ne modifie rien (les cartes déjà à `target` sont exclues).
    - Retourne les lignes effectivement modifiées.
    """
    ids = [str(i) for i in card_ids if i]
    if not ids:
        return []
    res = (
        supabase_client.get_service_supabase()
        .table("cards")
        .update({"status": target})
        .in_("id", ids)
        .in_("status", list(from_statuses))
        .execute()
    )
    return res.data or []
