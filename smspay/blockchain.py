"""
Blockchain gateway backed by the BlockCypher REST API.

All calls are plain HTTP with a bounded timeout. Any transport error,
timeout, non-2xx answer (429 rate limiting included) or unparsable body is
raised as ProviderUnavailable; nothing from httpx escapes this module.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Union

import httpx

from smspay.currency import CurrencyDescriptor
from smspay.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

TX_CONFIRMATION_EVENT = "tx-confirmation"


@dataclass(frozen=True)
class AddressIssued:
    address: str


@dataclass(frozen=True)
class AddressUnavailable:
    error: ProviderUnavailable


# Result of new_address(): callers must branch on the type, there is no
# sentinel address string.
AddressResult = Union[AddressIssued, AddressUnavailable]


def _list_of_dicts(container: Any, key: str) -> list:
    """container[key] as a list of objects; anything else is a provider fault."""
    if not isinstance(container, dict):
        raise ProviderUnavailable(f"malformed provider response around {key!r}")
    items = container.get(key) or []
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ProviderUnavailable(f"malformed {key!r} in provider response")
    return items


class BlockCypherGateway:
    def __init__(
        self,
        currency: CurrencyDescriptor,
        token: str,
        base_url: str = "https://api.blockcypher.com/v1",
        timeout_seconds: float = 10.0,
        scan_limit: int = 150,
        client: Optional[httpx.Client] = None,
    ):
        self.currency = currency
        self.token = token
        self.base_url = f"{base_url.rstrip('/')}/{currency.symbol}/{currency.network}"
        self.timeout = httpx.Timeout(timeout_seconds, connect=timeout_seconds)
        self.scan_limit = scan_limit
        self._client = client

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        params = dict(kwargs.pop("params", None) or {})
        if self.token:
            params["token"] = self.token

        try:
            if self._client is not None:
                resp = self._client.request(method, url, params=params, timeout=self.timeout, **kwargs)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.request(method, url, params=params, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"BlockCypher timeout: {method} {path}")
            raise ProviderUnavailable("blockchain provider timed out", {"path": path}) from e
        except httpx.HTTPError as e:
            logger.warning(f"BlockCypher transport error: {method} {path}: {e}")
            raise ProviderUnavailable(f"blockchain provider unreachable: {e}", {"path": path}) from e

        if resp.status_code == 429:
            logger.warning(f"BlockCypher rate limited: {method} {path}")
            raise ProviderUnavailable("blockchain provider rate limited", {"path": path, "status": 429})
        if resp.status_code >= 400:
            logger.warning(f"BlockCypher error {resp.status_code}: {method} {path}")
            raise ProviderUnavailable(
                f"blockchain provider error: {resp.status_code}",
                {"path": path, "status": resp.status_code, "body": resp.text},
            )

        try:
            return resp.json()
        except ValueError as e:
            raise ProviderUnavailable("blockchain provider returned invalid JSON", {"path": path}) from e

    def new_address(self) -> AddressResult:
        """
        Ask the provider for a fresh receiving address.

        Never raises: a provider failure comes back as AddressUnavailable.
        """
        try:
            data = self._request("POST", "addrs")
            address = data.get("address") if isinstance(data, dict) else None
            if not address:
                raise ProviderUnavailable("address missing from provider response")
        except ProviderUnavailable as e:
            logger.error(f"Address generation failed: {e.message}")
            return AddressUnavailable(error=e)

        logger.info(f"Generated {self.currency.name} address: {address}")
        return AddressIssued(address=address)

    def get_balance(self, address: str) -> Decimal:
        """Confirmed plus unconfirmed balance in whole coins, 8 fractional digits."""
        data = self._request("GET", f"addrs/{address}/balance")
        try:
            smallest_units = int(data["final_balance"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderUnavailable("balance missing from provider response", {"address": address}) from e
        balance = self.currency.to_coin_units(smallest_units)
        logger.debug(f"Balance for {address}: {balance}")
        return balance

    def is_broadcasted(self, address: str) -> bool:
        """
        Scan one page of the provider's unconfirmed pool for an output paying
        `address`.

        Best effort: a transaction announced outside the scanned window is
        missed and will only show up on a later poll.
        """
        txs = self._request("GET", "txs", params={"limit": self.scan_limit})
        if not isinstance(txs, list):
            raise ProviderUnavailable("unconfirmed pool response is not a list")

        for tx in txs:
            for output in _list_of_dicts(tx, "outputs"):
                candidates = output.get("addresses") or []
                if not isinstance(candidates, list):
                    raise ProviderUnavailable("malformed output in unconfirmed pool")
                for candidate in candidates:
                    if isinstance(candidate, str) and self.currency.same_address(candidate, address):
                        logger.info(f"Address {address} found in unconfirmed tx {tx.get('hash')}")
                        return True
        return False

    def confirmations_for(self, address: str) -> int:
        """Confirmations of the newest transaction paying into `address`, 0 if none."""
        data = self._request("GET", f"addrs/{address}", params={"limit": 50})
        if not isinstance(data, dict):
            raise ProviderUnavailable("address response is not an object")

        # txrefs are newest first; tx_input_n == -1 marks a received output
        for ref in _list_of_dicts(data, "txrefs"):
            if ref.get("tx_input_n", -1) == -1:
                try:
                    return int(ref.get("confirmations") or 0)
                except (TypeError, ValueError) as e:
                    raise ProviderUnavailable("malformed confirmation count", {"address": address}) from e
        return 0

    def subscribe_webhook(
        self,
        event: str,
        address: str,
        min_confirmations: int,
        callback_url: str,
    ) -> str:
        """Register a provider webhook; returns the provider's subscription id."""
        payload = {
            "event": event,
            "address": address,
            "confirmations": min_confirmations,
            "url": callback_url,
        }
        if self.token:
            payload["token"] = self.token

        data = self._request("POST", "hooks", json=payload)
        hook_id = data.get("id") if isinstance(data, dict) else None
        if not hook_id:
            raise ProviderUnavailable("subscription id missing from provider response")

        logger.info(f"Subscribed {event} webhook {hook_id} for {address} at {min_confirmations} confirmations")
        return str(hook_id)
