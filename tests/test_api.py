"""
Tests for the supporting endpoints: health probes, invoice, session view
and metrics.
"""

from prometheus_client import REGISTRY

from conftest import ADDRESS, BODY, PHONE_TO
from smspay.config import settings
from smspay.currency import BITCOIN
from smspay.storage import Base, engine
from smspay.utils import fingerprint


AJAX = {"X-Requested-With": "XMLHttpRequest"}


def poll(client):
    return client.post(
        "/poll",
        data={"Body": BODY, "PhoneTo": PHONE_TO, "Address": ADDRESS},
        headers=AJAX,
    )


class TestHealth:
    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_credentials(self, client, monkeypatch):
        monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "")

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_not_ready_without_schema(self, client):
        Base.metadata.drop_all(bind=engine)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert "Database" in response.json()["reason"]

    def test_request_id_header(self, client):
        response = client.get("/health/live")
        assert "X-Request-ID" in response.headers


class TestInvoice:
    def test_generated_address(self, client, blockchain):
        blockchain.next_address = "n1fresh"

        response = client.get("/invoice")

        assert response.status_code == 200
        assert response.json() == {
            "address": "n1fresh",
            "amount": "0.00000750",
            "currency": "bitcoin",
            "iso_code": "XBT",
            "uri": "bitcoin:n1fresh?amount=0.00000750",
            "min_confirmations": 6,
        }

    def test_fixed_address(self, client, blockchain, monkeypatch):
        monkeypatch.setattr(settings, "APP_PAYMENT_ADDRESS", "n1fixed")
        blockchain.fail = True

        response = client.get("/invoice")

        assert response.status_code == 200
        assert response.json()["address"] == "n1fixed"

    def test_provider_unavailable(self, client, blockchain):
        blockchain.fail = True

        response = client.get("/invoice")

        assert response.status_code == 503
        assert "uri" not in response.json()


class TestSessionView:
    def test_unknown_session(self, client):
        response = client.get("/sessions/" + "a" * 64)
        assert response.status_code == 404

    def test_open_session(self, client, blockchain):
        blockchain.broadcasted.add(ADDRESS)
        poll(client)
        session_id = fingerprint(PHONE_TO, BODY, ADDRESS, BITCOIN.price)

        response = client.get(f"/sessions/{session_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == session_id
        assert data["address"] == ADDRESS
        assert data["amount"] == "0.00000750"
        assert data["recipient_phone"] == PHONE_TO
        assert data["payment_status"] == "UNPAID"
        assert data["message_status"] == "UNSENT"
        assert data["subscribed"] is True
        assert data["carrier_message_id"] is None
        assert data["dispatch_claimed"] is False


class TestMetrics:
    def test_exposition_format(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "http_requests_total" in response.text

    def test_poll_results_counted(self, client):
        poll(client)

        response = client.get("/metrics")

        assert 'poll_results_total{state="NOT_BROADCAST"}' in response.text

    def test_session_ids_collapsed_in_paths(self, client):
        client.get("/sessions/" + "b" * 64)

        response = client.get("/metrics")

        assert 'path="/sessions/{session_id}"' in response.text
        assert "b" * 64 not in response.text

    def test_webhook_outcomes_counted(self, client):
        labels = {"source": "blockchain", "result": "not_found"}
        before = REGISTRY.get_sample_value("webhook_requests_total", labels)

        response = client.post(
            "/webhook/blockchain/" + "c" * 64,
            json={"confirmations": 6, "outputs": []},
            headers={"X-EventId": "evt-1", "X-EventType": "tx-confirmation"},
        )

        assert response.status_code == 404
        after = REGISTRY.get_sample_value("webhook_requests_total", labels)
        assert after == (before or 0) + 1
