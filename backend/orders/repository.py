"""
Accès aux données pour la feature 'orders' (tables orders et order_items).

- Écritures via le client service-role (webhook Stripe, actions opérateur, checkout serveur).
- Les transitions de statut sont des mises à jour conditionnelles
  (UPDATE ... WHERE id = ? AND status IN (...)): la ligne est le point de
  sérialisation entre livraisons concurrentes d'un même événement.
- Lectures du chemin webhook: les erreurs d'infrastructure remontent (le webhook
  répond 500 et Stripe relivre). Lectures des listings: [] en cas d'erreur.
"""
from typing import Any, Dict, Iterable, List, Optional
import logging

import backend.infra.supabase_client as supabase_client

logger = logging.getLogger(__name__)

ORDER_WITH_ITEMS = "*, order_items(*)"

# module backend.orders.repository
def insert_order(row: Dict[str, Any]) -> Dict[str, Any]:
    """Insère une commande et retourne la ligne créée (lève en cas d'échec)."""
    res = supabase_client.get_service_supabase().table("orders").insert(row).execute()
    rows = res.data or []
    if not rows:
        raise RuntimeError("Insertion de la commande sans retour de ligne")
    return rows[0]

def insert_order_items(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not rows:
        return []
    res = supabase_client.get_service_supabase().table("order_items").insert(rows).execute()
    return res.data or []

def get_order(order_id: str) -> Optional[Dict[str, Any]]:
    """Commande + ses order_items, ou None si introuvable."""
    if not order_id:
        return None
    res = (
        supabase_client.get_service_supabase()
        .table("orders")
        .select(ORDER_WITH_ITEMS)
        .eq("id", order_id)
        .limit(1)
        .execute()
    )
    rows = res.data or []
    return rows[0] if rows else None

def get_orders_by_ids(order_ids: Iterable[str]) -> List[Dict[str, Any]]:
    ids = [str(i) for i in order_ids if i]
    if not ids:
        return []
    res = (
        supabase_client.get_service_supabase()
        .table("orders")
        .select(ORDER_WITH_ITEMS)
        .in_("id", ids)
        .execute()
    )
    return res.data or []

def get_order_items(order_ids: Iterable[str]) -> List[Dict[str, Any]]:
    ids = [str(i) for i in order_ids if i]
    if not ids:
        return []
    res = (
        supabase_client.get_service_supabase()
        .table("order_items")
        .select("*")
        .in_("order_id", ids)
        .execute()
    )
    return res.data or []

def transition_status(
    order_id: str,
    target: str,
    from_statuses: Iterable[str],
    extra: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """
    Passe la commande au statut `target` seulement si son statut courant est dans `from_statuses`.
    - extra: champs écrits dans la même mise à jour (ex: tracking_number)
    - Retourne les lignes modifiées ([] si la condition n'était pas remplie)
    """
    payload: Dict[str, Any] = dict(extra or {})
    payload["status"] = target
    res = (
        supabase_client.get_service_supabase()
        .table("orders")
        .update(payload)
        .eq("id", order_id)
        .in_("status", list(from_statuses))
        .execute()
    )
    return res.data or []

def update_order_fields(order_id: str, fields: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Écriture idempotente de champs hors statut (ex: stripe_session_id, payment_intent_id)."""
    if not fields:
        return []
    res = (
        supabase_client.get_service_supabase()
        .table("orders")
        .update(fields)
        .eq("id", order_id)
        .execute()
    )
    return res.data or []

def list_user_orders(user_id: str, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    """
    Commandes d'un acheteur (plus récentes d'abord), avec leurs order_items.
    - status: filtre optionnel (ex: 'stored' pour la page d'envoi groupé)
    - Retour: [] si erreur
    """
    if not user_id:
        return []
    try:
        query = (
            supabase_client.get_service_supabase()
            .table("orders")
            .select(ORDER_WITH_ITEMS)
            .eq("user_id", user_id)
        )
        if status:
            query = query.eq("status", status)
        res = query.order("created_at", desc=True).limit(limit).execute()
        return res.data or []
    except Exception:
        logger.exception("orders.repository.list_user_orders failed user_id=%s", user_id)
        return []

def list_orders_by_status(status: str, limit: int = 100) -> List[Dict[str, Any]]:
    """Vue opérateur: commandes à un statut donné (ex: 'paid' = à expédier)."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("orders")
            .select(ORDER_WITH_ITEMS)
            .eq("status", status)
            .order("created_at", desc=False)
            .limit(limit)
            .execute()
        )
        return res.data or []
    except Exception:
        logger.exception("orders.repository.list_orders_by_status failed status=%s", status)
        return []
