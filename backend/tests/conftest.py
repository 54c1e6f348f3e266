"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip MongoDB connect on app startup when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from unittest.mock import AsyncMock, MagicMock

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from auth import create_access_token
from utils.rate_limiter import rate_limiter

OWNER_ID = "user-owner"
EDITOR_ID = "user-editor"
VIEWER_ID = "user-viewer"
STRANGER_ID = "user-stranger"
ESTATE_ID = "estate-1"


def auth_headers(user_id: str, email: str = None) -> dict:
    token = create_access_token({"user_id": user_id, "email": email or f"{user_id}@example.com"})
    return {"Authorization": f"Bearer {token}"}


def make_estate(**overrides) -> dict:
    estate = {
        "estate_id": ESTATE_ID,
        "owner_id": OWNER_ID,
        "label": "Estate of Pat Doe",
        "decedent_name": "Pat Doe",
        "status": "OPEN",
        "collaborators": [
            {"user_id": EDITOR_ID, "role": "EDITOR"},
            {"user_id": VIEWER_ID, "role": "VIEWER"},
        ],
        "invites": [],
    }
    estate.update(overrides)
    return estate


def estate_lookup(estate: dict):
    """find_one side effect that honours the owner/collaborator $or filter used by access checks."""
    async def _find_one(query, projection=None):
        if query.get("estate_id") != estate["estate_id"]:
            return None
        or_clauses = query.get("$or")
        if or_clauses:
            user_id = None
            for clause in or_clauses:
                user_id = clause.get("owner_id") or clause.get("collaborators.user_id") or user_id
            members = {estate["owner_id"]} | {c["user_id"] for c in estate.get("collaborators") or []}
            if user_id not in members:
                return None
        return dict(estate)
    return _find_one


def cursor_of(rows):
    """Motor-style cursor: find().sort().limit().to_list()."""
    cursor = MagicMock()
    cursor.sort = MagicMock(return_value=cursor)
    cursor.limit = MagicMock(return_value=cursor)
    cursor.to_list = AsyncMock(return_value=rows)
    return cursor


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()
