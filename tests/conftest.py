import atexit
import json
import os
import socket
import tempfile
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from itertools import count
from pathlib import Path
from urllib.parse import parse_qs, unquote

TEST_ROOT = Path(tempfile.mkdtemp(prefix="docmarket-tests-"))

os.environ["DATABASE_URL"] = f"sqlite:///{TEST_ROOT / 'app.db'}"
os.environ["OBJECT_STORAGE_ROOT"] = str(TEST_ROOT / "objects")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stub")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("FULFILLMENT_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("FULFILLMENT_RETRY_BACKOFF_MAX_SECONDS", "0")


class StripeStubServer(HTTPServer):
    """In-process stand-in for the payment intent endpoints of the Stripe API."""

    def __init__(self, address):
        super().__init__(address, _StripeStubHandler)
        self.records = []
        self.intents = {}
        self._ids = count(1)
        self._lock = threading.Lock()

    def add_intent(self, *, buyer_id, document_ids, amount_cents, status="succeeded", currency="usd"):
        with self._lock:
            intent_id = f"pi_test_{next(self._ids)}"
            self.intents[intent_id] = {
                "id": intent_id,
                "object": "payment_intent",
                "amount": amount_cents,
                "currency": currency,
                "status": status,
                "client_secret": f"{intent_id}_secret_test",
                "metadata": {
                    "buyer_id": buyer_id,
                    "document_ids": json.dumps(list(document_ids), separators=(",", ":")),
                },
            }
        return self.intents[intent_id]

    def set_status(self, intent_id, status):
        self.intents[intent_id]["status"] = status


class _StripeStubHandler(BaseHTTPRequestHandler):
    def _json(self, payload, status=200):
        body = json.dumps(payload).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _missing(self):
        self._json(
            {
                "error": {
                    "type": "invalid_request_error",
                    "code": "resource_missing",
                    "message": "No such payment_intent",
                }
            },
            status=404,
        )

    def do_POST(self):
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length).decode()
        form = parse_qs(raw)
        self.server.records.append({"method": "POST", "path": self.path, "form": form})

        if self.path == "/v1/payment_intents":
            intent = self.server.add_intent(
                buyer_id=form.get("metadata[buyer_id]", [""])[0],
                document_ids=json.loads(form.get("metadata[document_ids]", ["[]"])[0]),
                amount_cents=int(form.get("amount", ["0"])[0]),
                currency=form.get("currency", ["usd"])[0],
                status="requires_payment_method",
            )
            self._json(intent)
        else:
            self._json({"error": {"type": "invalid_request_error", "message": "Not found"}}, status=404)

    def do_GET(self):
        self.server.records.append({"method": "GET", "path": self.path})
        prefix = "/v1/payment_intents/"
        if not self.path.startswith(prefix):
            self._json({"error": {"type": "invalid_request_error", "message": "Not found"}}, status=404)
            return
        intent_id = unquote(self.path[len(prefix):].split("?", 1)[0])
        intent = self.server.intents.get(intent_id)
        if intent is None:
            self._missing()
        else:
            self._json(intent)

    def log_message(self, format, *args):  # pragma: no cover - silence
        return


def _allocate_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _start_stripe_stub():
    server = StripeStubServer(("127.0.0.1", _allocate_port()))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    os.environ["STRIPE_API_BASE"] = f"http://127.0.0.1:{server.server_address[1]}"
    return server, thread


_STRIPE_STUB_SERVER, _STRIPE_STUB_THREAD = _start_stripe_stub()


def _stop_stripe_stub():  # pragma: no cover - shutdown hook
    _STRIPE_STUB_SERVER.shutdown()
    _STRIPE_STUB_THREAD.join()


atexit.register(_stop_stripe_stub)


import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

# Import after env
from docmarket import create_app
from docmarket.database import get_session, init_db, make_engine, make_session_factory
from docmarket.services import object_storage
from docmarket.services.checkout_service import CheckoutService


app = create_app()


@pytest.fixture(scope="session")
def stripe_stub():
    return _STRIPE_STUB_SERVER


@pytest.fixture(autouse=True)
def storage_root(tmp_path, monkeypatch):
    root = tmp_path / "objects"
    monkeypatch.setattr(object_storage, "STORAGE_ROOT", root)
    return root


@pytest.fixture()
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path}/marketplace.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def serialized_session_factory(tmp_path, engine):
    """Sessions whose transactions take the SQLite write lock up front, for thread tests."""
    serialized = make_engine(f"sqlite:///{tmp_path}/marketplace.db", serialize_writes=True)
    yield make_session_factory(serialized)
    serialized.dispose()


@pytest.fixture()
def session(session_factory) -> Session:
    db_session = session_factory()
    try:
        yield db_session
    finally:
        db_session.close()


@pytest.fixture()
def service():
    return CheckoutService(max_attempts=3, backoff_seconds=0, backoff_max_seconds=0)


@pytest.fixture()
def client(session_factory):
    def override_get_session():
        db_session = session_factory()
        try:
            yield db_session
        finally:
            db_session.close()

    app.dependency_overrides[get_session] = override_get_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
