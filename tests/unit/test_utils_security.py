from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from backend.utils.security import COOKIE_NAME, get_current_user, require_admin


def _make_app():
    app = FastAPI()

    @app.get("/me")
    def me(user=Depends(get_current_user)):
        return user

    @app.get("/admin")
    def admin(user=Depends(require_admin)):
        return {"ok": True}

    return app

def _user(role="user"):
    return {"id": "u1", "email": "u1@example.com", "role": role}


def test_missing_token_is_401():
    client = TestClient(_make_app())
    assert client.get("/me").status_code == 401

def test_bearer_token_wins_over_cookie(monkeypatch):
    seen = []

    def fake_user(token):
        seen.append(token)
        return _user()

    monkeypatch.setattr("backend.auth.service.get_user_from_token", fake_user)
    client = TestClient(_make_app())
    client.cookies.set(COOKIE_NAME, "cookie-token")

    r = client.get("/me", headers={"Authorization": "Bearer bearer-token"})

    assert r.status_code == 200
    assert seen == ["bearer-token"]

def test_invalid_token_is_401(monkeypatch):
    def boom(token):
        raise RuntimeError("jwt expired")

    monkeypatch.setattr("backend.auth.service.get_user_from_token", boom)
    client = TestClient(_make_app())
    client.cookies.set(COOKIE_NAME, "stale")
    assert client.get("/me").status_code == 401

def test_admin_requires_operator_role(monkeypatch):
    monkeypatch.setattr("backend.auth.service.get_user_from_token", lambda token: _user())
    client = TestClient(_make_app())
    headers = {"Authorization": "Bearer t"}
    assert client.get("/admin", headers=headers).status_code == 403

    monkeypatch.setattr("backend.auth.service.get_user_from_token", lambda token: _user("admin"))
    assert client.get("/admin", headers=headers).status_code == 200
