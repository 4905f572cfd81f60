# module backend.orders.views

"""Endpoints acheteur des commandes.
- GET /api/v1/orders: historique des commandes (achats + envois), filtre ?status=
- GET /api/v1/orders/stored: commandes stockées, base de la page d'envoi groupé
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from backend.utils.security import require_user
from backend.orders import service as orders_service
from backend.orders.models import OrderStatus

router = APIRouter(prefix="/api/v1/orders", tags=["Orders API"])


@router.get("")
def list_my_orders(status: Optional[str] = None, user: Dict[str, Any] = Depends(require_user)):
    if status:
        try:
            OrderStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Statut inconnu: {status}")
    return {"orders": orders_service.list_buyer_orders(user.get("id", ""), status=status)}

@router.get("/stored")
def list_my_stored_orders(user: Dict[str, Any] = Depends(require_user)):
    orders = orders_service.list_stored_orders(user.get("id", ""))
    card_count = sum(len(o.get("order_items") or []) for o in orders)
    return {"orders": orders, "card_count": card_count}
