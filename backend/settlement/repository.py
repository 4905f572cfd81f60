"""
Registre de règlement (table settlement_transfers, unique sur (order_id, card_id)).

Chaque virement vendeur est réservé ici AVANT l'appel Stripe:
- pending: réservé, appel Stripe en cours ou interrompu
- succeeded: virement créé (transfer_id renseigné), plus jamais rejoué
- failed: échec Stripe (error renseigné), rejouable
- retained: article sans destination de virement active, la plateforme conserve la vente
La colonne attempt (1 à la réservation) numérote la clé d'idempotence courante:
un refus Stripe la fait avancer, car Stripe rejoue le refus enregistré pour une clé déjà vue.
Après une erreur réseau elle reste inchangée (le virement a pu être créé).
Les erreurs d'accès à la base remontent à l'appelant.
"""
from typing import Any, Dict, List, Optional
import logging

import backend.infra.supabase_client as supabase_client

logger = logging.getLogger(__name__)

TABLE = "settlement_transfers"

PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"
RETAINED = "retained"

# module backend.settlement.repository
def claim(
    *,
    order_id: str,
    card_id: str,
    payment_intent_id: str,
    destination: str,
    amount: str,
    idempotency_key: str,
) -> Optional[Dict[str, Any]]:
    """
    Réserve la ligne (order_id, card_id) si elle n'existe pas, puis retourne la ligne courante.
    - Un conflit n'écrase rien (ignore_duplicates): une ligne 'succeeded' le reste.
    """
    client = supabase_client.get_service_supabase()
    (
        client.table(TABLE)
        .upsert(
            {
                "order_id": order_id,
                "card_id": card_id,
                "payment_intent_id": payment_intent_id,
                "destination": destination,
                "amount": amount,
                "status": PENDING,
                "attempt": 1,
                "idempotency_key": idempotency_key,
            },
            on_conflict="order_id,card_id",
            ignore_duplicates=True,
        )
        .execute()
    )
    return get_entry(order_id, card_id)

def get_entry(order_id: str, card_id: str) -> Optional[Dict[str, Any]]:
    res = (
        supabase_client.get_service_supabase()
        .table(TABLE)
        .select("*")
        .eq("order_id", order_id)
        .eq("card_id", card_id)
        .limit(1)
        .execute()
    )
    rows = res.data or []
    return rows[0] if rows else None

def mark_succeeded(order_id: str, card_id: str, transfer_id: str) -> List[Dict[str, Any]]:
    res = (
        supabase_client.get_service_supabase()
        .table(TABLE)
        .update({"status": SUCCEEDED, "transfer_id": transfer_id, "error": None})
        .eq("order_id", order_id)
        .eq("card_id", card_id)
        .in_("status", [PENDING, FAILED])
        .execute()
    )
    return res.data or []

def mark_failed(
    order_id: str,
    card_id: str,
    error: str,
    attempt: int = 1,
    next_key: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Passe la ligne en 'failed' pour la tentative `attempt`.
    - next_key: nouvelle clé d'idempotence, attempt passe à attempt + 1
    - N'écrase jamais une ligne déjà 'succeeded' ni une tentative plus récente
    """
    fields: Dict[str, Any] = {"status": FAILED, "error": (error or "")[:500]}
    if next_key:
        fields.update({"attempt": attempt + 1, "idempotency_key": next_key})
    res = (
        supabase_client.get_service_supabase()
        .table(TABLE)
        .update(fields)
        .eq("order_id", order_id)
        .eq("card_id", card_id)
        .eq("attempt", attempt)
        .in_("status", [PENDING, FAILED])
        .execute()
    )
    return res.data or []

def record_retained(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Enregistre les articles conservés par la plateforme (idempotent, sans écrasement)."""
    if not rows:
        return []
    payload = [dict(r, status=RETAINED) for r in rows]
    res = (
        supabase_client.get_service_supabase()
        .table(TABLE)
        .upsert(payload, on_conflict="order_id,card_id", ignore_duplicates=True)
        .execute()
    )
    return res.data or []

def list_entries(status: Optional[str] = None, order_id: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
    """Vue opérateur du registre (plus récentes d'abord). Retour: [] si erreur."""
    try:
        query = supabase_client.get_service_supabase().table(TABLE).select("*")
        if status:
            query = query.eq("status", status)
        if order_id:
            query = query.eq("order_id", order_id)
        res = query.order("created_at", desc=True).limit(limit).execute()
        return res.data or []
    except Exception:
        logger.exception("settlement.repository.list_entries failed status=%s order_id=%s", status, order_id)
        return []
