# backend.config
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=True)

"""
Configuration centrale du backend.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (Supabase, Stripe, Resend), CORS/hosts
- Expose les règles métier à taux fixe (commission plateforme, part vendeur, frais d'envoi)
- Fournit les chemins de redirection du checkout Stripe
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _env_float(name: str, default: float) -> float:
    raw = _clean_env(os.getenv(name) or "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default

def _env_int(name: str, default: int) -> int:
    raw = _clean_env(os.getenv(name) or "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default

# Supabase: URL et clés (anon/service)
# - SUPABASE_URL peut parfois être sans schéma: on préfixe en https:// si nécessaire
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_SERVICE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# Cookies / sécurité
COOKIE_SECURE = (os.getenv("COOKIE_SECURE", "false").lower() == "true")
ADMIN_EMAILS = [e.strip() for e in os.getenv("ADMIN_EMAILS", "admin@example.com").split(",") if e.strip()]

# CORS (dev)
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

# Stripe: clé secrète, secret webhook, devise des charges et virements
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")
STRIPE_WEBHOOK_SECRET = _clean_env(os.getenv("STRIPE_WEBHOOK_SECRET") or "")
CURRENCY = _clean_env(os.getenv("CURRENCY") or "gbp").lower()

# Règles métier à taux fixe
# - PLATFORM_FEE_RATE: marge plateforme (informative sur une commande d'achat)
# - SELLER_PAYOUT_RATE: part versée au vendeur, calculée article par article
# - BUYER_FEE_RATE: frais acheteur affichés dans le panier, jamais facturés
PLATFORM_FEE_RATE = _env_float("PLATFORM_FEE_RATE", 0.15)
SELLER_PAYOUT_RATE = _env_float("SELLER_PAYOUT_RATE", 0.85)
BUYER_FEE_RATE = _env_float("BUYER_FEE_RATE", 0.10)
SHIP_NOW_FLAT_RATE = _env_float("SHIP_NOW_FLAT_RATE", 3.95)

# Règlement vendeurs: nombre max de virements Stripe simultanés par événement
SETTLEMENT_MAX_CONCURRENCY = max(1, _env_int("SETTLEMENT_MAX_CONCURRENCY", 5))

# Emails transactionnels (Resend)
RESEND_API_KEY = _clean_env(os.getenv("RESEND_API_KEY") or "")
EMAIL_FROM = _clean_env(os.getenv("EMAIL_FROM") or "Noz Cards <support@nozcards.com>")
ADMIN_NOTIFICATION_EMAIL = _clean_env(os.getenv("ADMIN_NOTIFICATION_EMAIL") or "support@nozcards.com")
# Resend limite à 2 emails/seconde: pause entre deux envois d'un même lot
EMAIL_SEND_INTERVAL = _env_float("EMAIL_SEND_INTERVAL", 0.6)

# URL publique et pages de retour du checkout
BASE_URL = _clean_env(os.getenv("BASE_URL") or "http://localhost:8000")
CHECKOUT_SUCCESS_PATH = os.getenv("CHECKOUT_SUCCESS_PATH", "/checkout/success")
CHECKOUT_CANCEL_PATH = os.getenv("CHECKOUT_CANCEL_PATH", "/checkout")
SHIPPING_SUCCESS_PATH = os.getenv("SHIPPING_SUCCESS_PATH", "/shipping-success")
SHIPPING_CANCEL_PATH = os.getenv("SHIPPING_CANCEL_PATH", "/account?tab=stored")
CONNECT_REFRESH_PATH = os.getenv("CONNECT_REFRESH_PATH", "/account?tab=payouts&refresh=1")
CONNECT_RETURN_PATH = os.getenv("CONNECT_RETURN_PATH", "/account?tab=payouts&connected=1")
