"""
Health check and account endpoints.
"""
import os
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from auth import hash_password, validate_password_strength, normalize_email
from conftest import auth_headers


class TestHealth:

    def test_missing_mongo_url_is_error(self, client):
        with patch.dict(os.environ, {"MONGO_URL": "", "STRIPE_SECRET_KEY": ""}):
            response = client.get("/api/health")
        assert response.status_code == 500
        assert response.json()["status"] == "error"
        assert response.headers["cache-control"] == "no-store"

    def test_ok_without_stripe(self, client):
        with patch.dict(os.environ, {"MONGO_URL": "mongodb://localhost", "STRIPE_SECRET_KEY": ""}), \
             patch("routes.health.database.ping", new_callable=AsyncMock, return_value=True):
            response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["checks"]["stripe"] is None

    def test_stripe_failure_is_degraded(self, client):
        with patch.dict(os.environ, {"MONGO_URL": "mongodb://localhost", "STRIPE_SECRET_KEY": "sk_test_1"}), \
             patch("routes.health.database.ping", new_callable=AsyncMock, return_value=True), \
             patch("routes.health.stripe.Balance.retrieve", side_effect=RuntimeError("unreachable")):
            response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    def test_database_failure_is_error(self, client):
        with patch.dict(os.environ, {"MONGO_URL": "mongodb://localhost", "STRIPE_SECRET_KEY": ""}), \
             patch("routes.health.database.ping", new_callable=AsyncMock, side_effect=RuntimeError("down")):
            response = client.get("/api/health")
        assert response.status_code == 500


class TestAuth:

    def _db(self, existing=None):
        db = MagicMock()
        db.users.find_one = AsyncMock(return_value=existing)
        db.users.insert_one = AsyncMock()
        db.users.update_one = AsyncMock()
        return db

    def test_register_creates_free_user(self, client):
        db = self._db()
        with patch("routes.auth.database.get_db", return_value=db):
            response = client.post("/api/auth/register", json={"email": "New@Example.com", "password": "Secret123!"})
        assert response.status_code == 201
        data = response.json()
        assert data["access_token"]
        assert data["user"]["email"] == "new@example.com"
        assert data["user"]["subscription_status"] == "free"
        assert "password_hash" not in data["user"]

    def test_register_duplicate_is_409(self, client):
        db = self._db(existing={"user_id": "u1"})
        with patch("routes.auth.database.get_db", return_value=db):
            response = client.post("/api/auth/register", json={"email": "a@example.com", "password": "Secret123!"})
        assert response.status_code == 409

    def test_login_wrong_password_is_401(self, client):
        user = {"user_id": "u1", "email": "a@example.com", "password_hash": hash_password("Secret123!")}
        with patch("routes.auth.database.get_db", return_value=self._db(existing=user)):
            bad = client.post("/api/auth/login", json={"email": "a@example.com", "password": "nope-nope"})
            good = client.post("/api/auth/login", json={"email": "A@example.com", "password": "Secret123!"})
        assert bad.status_code == 401
        assert good.status_code == 200
        assert good.json()["user"]["user_id"] == "u1"

    def test_me_includes_entitlements(self, client):
        user = {"user_id": "u1", "email": "a@example.com", "subscription_plan_id": "pro", "subscription_status": "past_due"}
        with patch("routes.auth.database.get_db", return_value=self._db(existing=user)):
            response = client.get("/api/auth/me", headers=auth_headers("u1"))
        assert response.status_code == 200
        data = response.json()
        assert data["entitlements"]["plan_id"] == "pro"
        assert data["entitlements"]["can_use_pro"] is False
        assert "past due" in data["upgrade_reason"]

    def test_bad_token_is_401(self, client):
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401


def test_normalize_email():
    assert normalize_email("  A@B.com ") == "a@b.com"
    assert normalize_email("no-at-sign") is None
    assert normalize_email(None) is None


@pytest.mark.parametrize("password,ok", [("short1!", False), ("Secret123!", True)])
def test_password_strength(password, ok):
    assert validate_password_strength(password)[0] is ok
