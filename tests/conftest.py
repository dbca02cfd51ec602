import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import DocumentStore
from main import create_app
from schemas import AdminCredential

ADMIN_EMAIL = "owner@example.com"
ADMIN_PASSWORD = "s3cret"


@pytest.fixture
def seed_admin() -> AdminCredential:
    return AdminCredential(email=ADMIN_EMAIL, password=ADMIN_PASSWORD)


@pytest.fixture
def store(tmp_path, seed_admin) -> DocumentStore:
    return DocumentStore(tmp_path / "db.json", seed_admin)


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    monkeypatch.setenv("ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    return Settings(data_dir=str(tmp_path / "data"))


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app, follow_redirects=False) as c:
        yield c


@pytest.fixture
def admin_client(client):
    resp = client.post("/admin/login", data={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert resp.status_code == 303
    return client
