"""
Utility functions for the SMS payment service.
"""

import base64
import hashlib
import hmac
import json
import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Mapping

from smspay.currency import format_amount

logger = logging.getLogger(__name__)


def fingerprint(recipient_phone: str, body: str, address: str, amount: Decimal | str) -> str:
    """
    Deterministic session id for a (phone, body, address, amount) tuple.

    The fields are serialized as an ordered JSON array before hashing, so
    moving text from one field to another always changes the id.

    Returns:
        Hex-encoded SHA-256 digest (64 chars)
    """
    digest = json.dumps(
        [recipient_phone, body, address, format_amount(amount)],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(digest.encode("utf-8")).hexdigest()


def compute_carrier_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """
    Twilio request signature: HMAC-SHA1 over the full callback URL followed
    by every POST parameter name and value, sorted by name, base64 encoded.
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    mac = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1)
    return base64.b64encode(mac.digest()).decode("ascii")


def verify_carrier_signature(url: str, params: Mapping[str, str], signature: str, auth_token: str) -> bool:
    """
    Verify the X-Twilio-Signature header of a carrier callback.

    Args:
        url: Absolute URL the carrier posted to
        params: Form parameters of the callback
        signature: Value of the X-Twilio-Signature header
        auth_token: Carrier account auth token

    Returns:
        True if signature is valid, False otherwise
    """
    expected_signature = compute_carrier_signature(url, params, auth_token)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"Carrier signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


class KeyedLock:
    """
    One mutex per key, created on demand and dropped when the last holder
    releases it. Serializes work on the same session while different
    sessions proceed in parallel.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
