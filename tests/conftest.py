"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any app import, then the
settings cache is cleared so the app picks them up. External gateways are
replaced by in-memory fakes.
"""

import os
import shutil
import tempfile
import threading
from decimal import Decimal

import pytest

# File-backed so threads get separate connections; removed in pytest_sessionfinish
_TEST_DB_DIR = tempfile.mkdtemp(prefix="smspay-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("CURRENCY", "bitcoin")
os.environ.setdefault("MIN_CONFIRMATIONS", "6")
os.environ.setdefault("PUBLIC_BASE_URL", "https://sms.test")
os.environ.setdefault("BLOCKCYPHER_TOKEN", "test-blockcypher-token")
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-auth-token")
os.environ.setdefault("TWILIO_PHONE_FROM", "+15005550006")

# Clear settings cache before any app imports to ensure test env vars are used
from smspay.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from smspay import models  # noqa: F401  registers tables on Base.metadata
from smspay.blockchain import AddressIssued, AddressUnavailable
from smspay.currency import BITCOIN
from smspay.errors import CarrierError, ProviderUnavailable
from smspay.main import app, get_orchestrator
from smspay.messaging import CarrierReceipt
from smspay.orchestrator import ConfirmationOrchestrator
from smspay.storage import Base, SessionLocal, engine


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    shutil.rmtree(_TEST_DB_DIR, ignore_errors=True)


ADDRESS = "mvYwMT3aZ5jNcRNNjv7ckxjbqMDtvQbAHz"
PHONE_TO = "+64121234567"
BODY = "Hello from the blockchain"
SENDER = "+15005550006"
CALLBACK_BASE = "https://sms.test"


class FakeBlockchain:
    """In-memory blockchain gateway with switchable failures."""

    def __init__(self):
        self.broadcasted: set[str] = set()
        self.balances: dict[str, Decimal] = {}
        self.confirmations: dict[str, int] = {}
        self.subscriptions: list[tuple] = []
        self.balance_calls = 0
        self.fail = False
        self.fail_subscribe = False
        self.next_address = ADDRESS
        self._lock = threading.Lock()

    def new_address(self):
        if self.fail:
            return AddressUnavailable(error=ProviderUnavailable("provider down"))
        return AddressIssued(address=self.next_address)

    def is_broadcasted(self, address):
        if self.fail:
            raise ProviderUnavailable("rate limited")
        return address in self.broadcasted

    def get_balance(self, address):
        self.balance_calls += 1
        if self.fail:
            raise ProviderUnavailable("rate limited")
        return self.balances.get(address, Decimal("0"))

    def confirmations_for(self, address):
        if self.fail:
            raise ProviderUnavailable("rate limited")
        return self.confirmations.get(address, 0)

    def subscribe_webhook(self, event, address, min_confirmations, callback_url):
        if self.fail_subscribe:
            raise ProviderUnavailable("subscription failed")
        with self._lock:
            self.subscriptions.append((event, address, min_confirmations, callback_url))
            return f"hook-{len(self.subscriptions)}"


class FakeCarrier:
    """In-memory SMS carrier recording every dispatch."""

    def __init__(self):
        self.sent: list[tuple] = []
        self.fail = False

    def send(self, recipient, body, status_callback_url):
        if self.fail:
            raise CarrierError("carrier error: 401")
        self.sent.append((recipient, body, status_callback_url))
        sid = f"SM{len(self.sent):032d}"
        return CarrierReceipt(
            message_id=sid,
            status="queued",
            raw={"sid": sid, "status": "queued", "to": recipient},
        )


def tx_payload(address: str = ADDRESS, confirmations: int = 6) -> dict:
    """Minimal BlockCypher transaction body as posted to the webhook."""
    return {
        "hash": "f854aebae95150b379cc1187d848d58225f3c4157fe992bcd166f58bd5063449",
        "confirmations": confirmations,
        "outputs": [
            {"value": 120000, "addresses": ["n4VQ5YdHf7hLQ2gWQYYrcxoE5B7nWuDFNF"]},
            {"value": 750, "addresses": [address]},
        ],
    }


@pytest.fixture
def blockchain() -> FakeBlockchain:
    return FakeBlockchain()


@pytest.fixture
def carrier() -> FakeCarrier:
    return FakeCarrier()


@pytest.fixture
def orchestrator(blockchain, carrier) -> ConfirmationOrchestrator:
    return ConfirmationOrchestrator(
        blockchain=blockchain,
        messaging=carrier,
        currency=BITCOIN,
        min_confirmations=6,
        callback_base_url=CALLBACK_BASE,
        sender_phone=SENDER,
    )


@pytest.fixture
def db():
    """Fresh schema and session for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(orchestrator):
    """Create test client with fresh database and fake gateways for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
