"""
Tests for the Twilio gateway against a mocked HTTP transport.
"""

import base64
from urllib.parse import parse_qs

import httpx
import pytest

from smspay.errors import CarrierError
from smspay.messaging import TwilioGateway


def make_gateway(handler) -> TwilioGateway:
    return TwilioGateway(
        account_sid="ACtest",
        auth_token="secret",
        phone_from="+15005550006",
        base_url="https://api.twilio.test/2010-04-01",
        timeout_seconds=1.0,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_send_posts_message_with_status_callback():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["form"] = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        return httpx.Response(201, json={"sid": "SM123", "status": "queued", "to": "+64121234567"})

    receipt = make_gateway(handler).send("+64121234567", "Hello", "https://sms.test/webhook/carrier/abc")

    assert receipt.message_id == "SM123"
    assert receipt.status == "queued"
    assert receipt.raw["to"] == "+64121234567"
    assert seen["path"] == "/2010-04-01/Accounts/ACtest/Messages.json"
    assert seen["auth"] == "Basic " + base64.b64encode(b"ACtest:secret").decode()
    assert seen["form"] == {
        "To": "+64121234567",
        "From": "+15005550006",
        "Body": "Hello",
        "StatusCallback": "https://sms.test/webhook/carrier/abc",
    }


@pytest.mark.parametrize("status_code", [400, 401, 500])
def test_error_status_raises(status_code):
    gateway = make_gateway(lambda request: httpx.Response(status_code, json={"code": 20003}))

    with pytest.raises(CarrierError) as exc:
        gateway.send("+64121234567", "Hello", "https://sms.test/cb")

    assert exc.value.details["status"] == status_code


def test_timeout_raises():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(CarrierError):
        make_gateway(handler).send("+64121234567", "Hello", "https://sms.test/cb")


def test_missing_sid_raises():
    with pytest.raises(CarrierError):
        make_gateway(lambda request: httpx.Response(201, json={"status": "queued"})).send(
            "+64121234567", "Hello", "https://sms.test/cb"
        )
