from fastapi import APIRouter, Request

from backend.config import SUPABASE_URL, SUPABASE_SERVICE_KEY, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, RESEND_API_KEY
from backend.utils.rate_limit import rate_limit_health_info

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/config")
def health_config(request: Request):
    """Présence des secrets requis (jamais leur valeur) et état du rate limiting."""
    return {
        "supabase": bool(SUPABASE_URL and SUPABASE_SERVICE_KEY),
        "stripe": bool(STRIPE_SECRET_KEY),
        "stripe_webhook": bool(STRIPE_WEBHOOK_SECRET),
        "email": bool(RESEND_API_KEY),
        "rate_limit": rate_limit_health_info(request),
    }
