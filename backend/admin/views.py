"""Endpoints opérateur (require_admin).
- Commandes à expédier et passage en 'shipped' avec numéro de suivi
- Registre de règlement (virements en échec, conservés) et relance d'un règlement
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from backend.utils.security import require_admin
from backend.notifications import service as notifications
from backend.orders import service as orders_service
from backend.orders.models import IllegalTransition, OrderNotFound
from backend.settlement import repository as settlement_repository
from backend.settlement import service as settlement_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])

SETTLEMENT_STATUSES = {
    settlement_repository.PENDING,
    settlement_repository.SUCCEEDED,
    settlement_repository.FAILED,
    settlement_repository.RETAINED,
}


class ShipRequest(BaseModel):
    tracking_number: str = Field(min_length=1)
    tracking_carrier: Optional[str] = None


# module backend.admin.views
@router.get("/orders")
def admin_list_orders(status: str = "paid", user: Dict[str, Any] = Depends(require_admin)):
    try:
        orders = orders_service.list_orders_for_operator(status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Statut inconnu: {status}")
    return {"items": orders}

@router.post("/orders/{order_id}/ship")
def admin_mark_shipped(
    order_id: str,
    req: ShipRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(require_admin),
):
    """
    paid -> shipped, enregistre le suivi et envoie l'email de suivi à l'acheteur.
    - 404 commande introuvable, 409 transition interdite (ex: commande stockée ou en attente)
    """
    try:
        order = orders_service.mark_shipped(order_id, req.tracking_number, req.tracking_carrier)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Commande introuvable")
    except IllegalTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if order.get("changed"):
        background_tasks.add_task(notifications.send_all, orders_service.tracking_notifications(order))
    logger.info("admin.views order=%s shipped by=%s", order_id, user.get("id"))
    return {"order": order}

@router.get("/settlements")
def admin_list_settlements(
    status: Optional[str] = None,
    order_id: Optional[str] = None,
    user: Dict[str, Any] = Depends(require_admin),
):
    if status and status not in SETTLEMENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Statut inconnu: {status}")
    return {"items": settlement_service.list_settlements(status=status, order_id=order_id)}

@router.post("/orders/{order_id}/settle")
async def admin_retry_settlement(order_id: str, user: Dict[str, Any] = Depends(require_admin)):
    """Relance le règlement d'une commande (les virements déjà réussis ne sont pas rejoués)."""
    try:
        result = await settlement_service.retry_settlement(order_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Commande introuvable")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception:
        logger.exception("Erreur admin_retry_settlement order=%s", order_id)
        raise HTTPException(status_code=500, detail="Relance du règlement impossible")
    return result.as_dict()
