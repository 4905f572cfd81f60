from typing import Optional, Dict, Any
from backend.config import ADMIN_EMAILS
from backend.users import repository as users_repository
from .repository import get_user_from_access_token as _repo_get_user_from_token

def determine_role(metadata: Dict[str, Any] | None, profile: Optional[Dict[str, Any]] = None, email: Optional[str] = None) -> str:
    """Rôle applicatif: 'admin' (opérateur) ou 'user'.
    - Priorité au rôle du profil (table profiles), puis aux metadata Supabase
    - Les emails listés dans ADMIN_EMAILS sont opérateurs
    """
    for source in ((profile or {}).get("role"), (metadata or {}).get("role")):
        if str(source or "").lower() == "admin":
            return "admin"
    if email and email.lower() in {e.lower() for e in ADMIN_EMAILS}:
        return "admin"
    return "user"

def get_user_from_token(access_token: str) -> Dict[str, Any]:
    """Normalise user issu de supabase.auth.get_user(access_token):
    - Retourne {id, email, metadata, role, token}
    - Le rôle est calculé via determine_role (profil + metadata)
    """
    raw = _repo_get_user_from_token(access_token)
    uid = raw.get("id")
    email = raw.get("email")
    metadata = raw.get("user_metadata") or {}
    role = determine_role(metadata, users_repository.get_profile(uid) if uid else None, email)
    return {"id": uid, "email": email, "metadata": metadata, "role": role, "token": access_token}
