"""
SMS carrier gateway (Twilio Messages REST API).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from smspay.errors import CarrierError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CarrierReceipt:
    """Carrier's acceptance of a message. Acceptance is not delivery."""
    message_id: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


class TwilioGateway:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        phone_from: str,
        base_url: str = "https://api.twilio.com/2010-04-01",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.phone_from = phone_from
        self.messages_url = f"{base_url.rstrip('/')}/Accounts/{account_sid}/Messages.json"
        self.timeout = httpx.Timeout(timeout_seconds, connect=timeout_seconds)
        self._client = client

    def send(self, recipient: str, body: str, status_callback_url: str) -> CarrierReceipt:
        """
        Dispatch one SMS.

        The carrier calls status_callback_url asynchronously, usually more
        than once ("sent", then "delivered").

        Raises:
            CarrierError: transport failure, timeout, auth failure or any
                non-2xx answer. Not retried here.
        """
        data = {
            "To": recipient,
            "From": self.phone_from,
            "Body": body,
            "StatusCallback": status_callback_url,
        }
        auth = (self.account_sid, self.auth_token)

        logger.info(f"Sending SMS to {recipient}")

        try:
            if self._client is not None:
                resp = self._client.post(self.messages_url, data=data, auth=auth, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(self.messages_url, data=data, auth=auth)
        except httpx.TimeoutException as e:
            logger.error("Twilio API timeout")
            raise CarrierError("carrier timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Twilio transport error: {e}")
            raise CarrierError(f"carrier unreachable: {e}") from e

        if resp.status_code not in (200, 201):
            logger.error(f"Twilio API error: {resp.status_code} - {resp.text}")
            raise CarrierError(
                f"carrier error: {resp.status_code}",
                {"status": resp.status_code, "body": resp.text},
            )

        try:
            result = resp.json()
        except ValueError as e:
            raise CarrierError("carrier returned invalid JSON") from e

        sid = result.get("sid") if isinstance(result, dict) else None
        if not sid:
            raise CarrierError("message id missing from carrier response", {"body": resp.text})

        logger.info(f"Message accepted by carrier: SID={sid}")
        return CarrierReceipt(message_id=sid, status=str(result.get("status") or ""), raw=result)
