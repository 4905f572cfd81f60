"""
Gestionnaires d’exceptions utilisés par la factory.
- HTTPException: body JSON FastAPI standard {"detail": ...}
- Erreurs métier non traduites par une vue: transition interdite -> 409, commande introuvable -> 404
"""
import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from backend.orders.models import IllegalTransition, OrderNotFound

logger = logging.getLogger(__name__)

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def json_http_exception(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)

    @app.exception_handler(IllegalTransition)
    async def illegal_transition(request: Request, exc: IllegalTransition):
        logger.warning("IllegalTransition path=%s: %s", request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(OrderNotFound)
    async def order_not_found(request: Request, exc: OrderNotFound):
        return JSONResponse(status_code=404, content={"detail": "Commande introuvable"})
