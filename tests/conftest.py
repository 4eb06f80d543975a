import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import IdentityProvider, MemoryStorage, SessionManager
from database import Database
from main import AppContext, create_app
from realtime import ChangeFeed
from schemas import Location

HARARE = {"city": "Harare", "area": "Avondale", "address": "123 Main Street"}


@pytest.fixture
def store():
    db = mongomock.MongoClient()["westgate_test"]
    return Database(db, ChangeFeed())


@pytest.fixture
def identity(store):
    return IdentityProvider(store)


@pytest.fixture
def session(identity, store):
    return SessionManager(identity, store, MemoryStorage())


@pytest.fixture
def make_user(identity, store):
    def _make(email, role="customer", area="Avondale", name=None):
        manager = SessionManager(identity, store, MemoryStorage())
        loc = Location(city="Harare", area=area, address="1 Test Road")
        return manager.sign_up(email, "secret123", name or email.split("@")[0].title(), role, loc)
    return _make


@pytest.fixture
def client(store, identity):
    app = create_app(AppContext(store=store, identity=identity))
    with TestClient(app) as c:
        yield c


@pytest.fixture
def signup(client):
    def _signup(email, role="customer", area="Avondale"):
        res = client.post("/api/auth/signup", json={
            "email": email,
            "password": "secret123",
            "name": email.split("@")[0].title(),
            "role": role,
            "location": {**HARARE, "area": area},
        })
        assert res.status_code == 200, res.text
        body = res.json()
        return body["user"], {"Authorization": f"Bearer {body['access_token']}"}
    return _signup
