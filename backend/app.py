# module backend.app
"""
Instance FastAPI globale (checkout, webhook Stripe, commandes, règlement).
Toute la configuration (middlewares, routers, lifespan) est centralisée dans backend.app_setup.
"""
from backend.app_setup.factory import create_app

# App globale
app = create_app()
