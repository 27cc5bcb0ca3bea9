import copy

import mongomock
import pytest
import requests

from powerpal.dashboard_app import create_app
from powerpal.errors import ControllerError
from powerpal.mongodb import LoadStore
from powerpal.telemetry import ThingSpeakClient

FEED = {
    "channel": {"id": 3021539, "name": "PowerPal"},
    "feeds": [
        {
            "created_at": "2025-09-30T10:15:00Z",
            "entry_id": 42,
            "field1": "1.5",
            "field2": "230.2",
            "field3": "345",
            "field4": "1200",
            "field5": "0.5",
            "field6": "115",
            "field7": None,
            "field8": "",
        }
    ],
}

USER_EMAIL = "user@example.com"
USER_PASSWORD = "secret123"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Stands in for requests.Session; replies with queued responses."""

    def __init__(self):
        self.responses = []
        self.calls = []

    def queue(self, response):
        self.responses.append(response)

    def queue_feed(self, payload=None):
        self.queue(FakeResponse(payload=copy.deepcopy(payload or FEED)))

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, dict(params or {})))
        if not self.responses:
            raise requests.ConnectionError("connection refused")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeController:
    name = "fake"

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, field_no, command):
        if self.fail:
            raise ControllerError("controller offline")
        self.sent.append((field_no, command))

    def close(self):
        pass


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def telemetry(session):
    return ThingSpeakClient(
        "https://api.thingspeak.com",
        "3021539",
        read_key="READKEY",
        write_key="WRITEKEY",
        default_limit=1000.0,
        session=session,
    )


@pytest.fixture
def store():
    store = LoadStore(client=mongomock.MongoClient(), db_name="powerpal_test")
    store.ensure_indexes()
    return store


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def app(store, telemetry, controller):
    app = create_app(
        overrides={
            "LOG_FILE": "",
            "SKEY": "test-secret",
            "BCRYPT_ROUNDS": 4,
            "TARIFF_PER_KWH": 10.0,
            "LOGIN_MAX_ATTEMPTS": 3,
        },
        store=store,
        telemetry_client=telemetry,
        controller=controller,
    )
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def logged_in(client):
    res = client.post("/signup", data={
        "email": USER_EMAIL,
        "password": USER_PASSWORD,
        "confirm_password": USER_PASSWORD,
    })
    assert res.status_code == 302
    return client


@pytest.fixture
def uid(logged_in, store):
    return store.get_user_by_email(USER_EMAIL)["_id"]
