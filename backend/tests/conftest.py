# tests/conftest.py
import os
import tempfile

# Set environment variables for testing. These must be in place before any
# pharmalink module reads its configuration.
os.environ["SECRET_KEY"] = "testing_secret_key_for_development_only"
os.environ["DISABLE_RATE_LIMIT"] = "1"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="pharmalink-uploads-")
os.environ["LIVE_QUERY_INTERVAL_SECONDS"] = "0.2"
os.environ["CHAT_GAP_TIMEOUT_SECONDS"] = "0.5"
os.environ["STORAGE_RETRY_BASE_DELAY"] = "0"
os.environ["ADMIN_EMAILS"] = "admin@localpill.com"

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient
from pharmalink.db import init_db, ensure_indexes
from pharmalink.utils.auth import create_access_token
from main import app

MUMBAI_CUSTOMER = {"lat": 19.07, "lng": 72.87, "address": "Bandra West, Mumbai"}
PHARMACY_A = {"lat": 19.08, "lng": 72.88, "address": "Khar, Mumbai"}
PHARMACY_B = {"lat": 19.30, "lng": 73.10, "address": "Kalyan"}


@pytest.fixture
async def db():
    """A fresh in-memory database with every index in place."""
    database = AsyncMongoMockClient()["pharmalink_test"]
    await ensure_indexes(database)
    init_db(database=database)
    return database


@pytest.fixture
def client():
    init_db(app, database=AsyncMongoMockClient()["pharmalink_test"])
    with TestClient(app) as c:
        yield c


def auth_headers(user_id: str, email: str = None) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, email=email)}"}


def register_customer(client, user_id: str, name: str = "Asha Patel", location: dict = MUMBAI_CUSTOMER) -> dict:
    headers = auth_headers(user_id)
    res = client.post("/api/users", headers=headers, json={
        "displayName": name,
        "role": "customer",
        "phone": "+919800000001",
        "customerProfile": {"addresses": [{"label": "Home", "city": "Mumbai", "location": location}]},
    })
    assert res.status_code == 201, res.text
    return headers


def register_pharmacy(client, user_id: str, name: str, location: dict, online: bool = True) -> dict:
    headers = auth_headers(user_id)
    res = client.post("/api/users", headers=headers, json={
        "displayName": name,
        "role": "pharmacy",
        "phone": "+919800000002",
        "pharmacyProfile": {"pharmacyName": name, "licenseNumber": "MH-1234", "location": location, "isOnline": online},
    })
    assert res.status_code == 201, res.text
    return headers
