import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from backend.services import display, monitoring, rotation
from backend.services.signer import Signer


@pytest.fixture()
def test_db(tmp_path, monkeypatch):
    test_db = tmp_path / "nomia_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    display.clear()
    monitoring.reset()
    yield test_db
    rotation.stop_rotation()
    display.clear()
    monitoring.reset()

@pytest.fixture()
def location(test_db):
    return db.create_location("hq", "Oficina central", config.ADMIN_USERNAME)

@pytest.fixture()
def signer():
    return Signer(b"unit-test-secret")

@pytest.fixture()
def client(test_db):
    with TestClient(main.app) as c:
        yield c

def login_headers(client, username: str, password: str) -> dict:
    res = client.post("/auth/login", json={"username": username, "password": password})
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}

@pytest.fixture()
def login_as(client):
    def _login(username: str, password: str) -> dict:
        return login_headers(client, username, password)

    return _login

@pytest.fixture()
def admin_headers(client):
    return login_headers(client, config.ADMIN_USERNAME, config.ADMIN_PASSWORD)

@pytest.fixture()
def user_headers(client):
    db.create_user("ana", "ana-password")
    return login_headers(client, "ana", "ana-password")
