"""
Registre central des routers (API v1, admin, health).
- Checkout: payments_views.router (/api/v1/checkout)
- Webhook Stripe: payments_views.webhook_router (/api/v1/payments/webhook)
- Acheteur: orders_views.router (/api/v1/orders), vendeurs: sellers_views.router (/api/v1/sellers)
- Opérateur: admin_router (/api/v1/admin)
- Health: health_router
"""
from fastapi import FastAPI
from backend.payments import views as payments_views
from backend.orders import views as orders_views
from backend.sellers import views as sellers_views
from backend.admin.views import router as admin_router
from backend.health.router import router as health_router

def register_routers(app: FastAPI) -> None:
    """
    Agrège tous les routers de l’application.
    - L’ordre n’a pas d’impact sauf conflits de chemins (évités par préfixes).
    """
    # API v1
    app.include_router(payments_views.router)
    app.include_router(payments_views.webhook_router)
    app.include_router(orders_views.router)
    app.include_router(sellers_views.router)
    # Admin
    app.include_router(admin_router)
    # Health & monitoring
    app.include_router(health_router)
