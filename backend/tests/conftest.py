import hashlib
import hmac
import json
import threading

import pytest
import requests

from mediaproof import create_app
from mediaproof.auth.tokens import create_access_token
from mediaproof.detection.providers import BaseDetectionProvider
from mediaproof.extensions import db
from mediaproof.models import User

WEBHOOK_SECRET = "sk_test_webhook"

AUTHENTIC_PAYLOAD = {
    "requestId": "job-1",
    "status": "AUTHENTIC",
    "score": 0.12,
    "models": [
        {"name": "face-swap", "status": "AUTHENTIC", "score": 0.1},
        {"name": "diffusion", "status": "AUTHENTIC", "score": 0.14},
    ],
}

MANIPULATED_PAYLOAD = {
    "requestId": "job-2",
    "status": "MANIPULATED",
    "score": 0.91,
    "models": [{"name": "face-swap", "status": "MANIPULATED", "score": 0.91}],
}


class FakeProvider(BaseDetectionProvider):
    """Records every call. handler(file_path, media_kind) may return a payload or raise."""

    name = "fake"

    def __init__(self, payload=None, handler=None):
        self.payload = payload or AUTHENTIC_PAYLOAD
        self.handler = handler
        self.calls = []
        self._lock = threading.Lock()

    def submit(self, file_path, media_kind):
        with open(file_path, "rb") as fh:
            data = fh.read()
        with self._lock:
            self.calls.append({"path": file_path, "kind": media_kind, "data": data})
        if self.handler is not None:
            return self.handler(file_path, media_kind)
        return dict(self.payload)


class FakeResponse:

    def __init__(self, status_code=200, content=b"", json_body=None):
        self.status_code = status_code
        self.content = content
        self._json = json_body
        self.closed = False

    @property
    def text(self):
        if self._json is not None:
            return json.dumps(self._json)
        return self.content.decode("utf-8", "replace")

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """Stands in for requests.Session: canned responses keyed by URL, or errors."""

    def __init__(self):
        self.responses = {}
        self.queued = []
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append(("GET", url, kwargs))
        resp = self.responses.get(url)
        if isinstance(resp, Exception):
            raise resp
        if resp is None:
            raise requests.ConnectionError(f"no route to {url}")
        return resp

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if not self.queued:
            raise requests.ConnectionError("no more canned responses")
        resp = self.queued.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def base_config(tmp_path, **extra):
    cfg = {
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'mediaproof.db'}",
        "SECRET_KEY": "test-secret",
        "TESTING": True,
        "WORKERS_ENABLED": False,
        "PAYSTACK_SECRET_KEY": WEBHOOK_SECRET,
        "SCAN_STAGING_DIR": str(tmp_path / "staging"),
        "SIGNUP_CREDITS": 0,
        "SCAN_QUEUE_POLL_INTERVAL": 0.05,
    }
    cfg.update(extra)
    return cfg


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def http_session():
    return FakeSession()


@pytest.fixture
def make_app(tmp_path, provider, http_session):
    """Build an app with optional config overrides; tables are created for it."""
    apps = []

    def _make(**extra):
        app = create_app(
            base_config(tmp_path, **extra),
            detection_provider=provider,
            http_session=http_session,
        )
        with app.app_context():
            db.create_all()
        apps.append(app)
        return app

    yield _make

    for app in apps:
        pool = app.extensions["mediaproof.workers"]
        if pool.running:
            pool.stop(timeout=2)
        with app.app_context():
            db.session.remove()
            db.drop_all()
            db.engine.dispose()


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make(owner_id="user_1", credits=0, email=None):
        with app.app_context():
            db.session.add(User(owner_id=owner_id, credits=credits, email=email))
            db.session.commit()
        return owner_id
    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(owner_id="user_1"):
        token = create_access_token(secret_key=app.config["SECRET_KEY"], owner_id=owner_id)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def balance(app):
    def _balance(owner_id="user_1"):
        with app.app_context():
            user = User.query.filter_by(owner_id=owner_id).first()
            return None if user is None else user.credits
    return _balance


@pytest.fixture
def make_user_for():
    """make_user for apps built through make_app with extra config."""
    def _make(app, owner_id, credits=0, email=None):
        with app.app_context():
            db.session.add(User(owner_id=owner_id, credits=credits, email=email))
            db.session.commit()
    return _make


@pytest.fixture
def auth_headers_for():
    def _headers(app, owner_id):
        token = create_access_token(secret_key=app.config["SECRET_KEY"], owner_id=owner_id)
        return {"Authorization": f"Bearer {token}"}
    return _headers
