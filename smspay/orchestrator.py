"""
Payment confirmation state machine.

Three independent drivers move a session forward:

- poll(): the client's polling loop. Creates the record the first time the
  address shows up in the unconfirmed pool and subscribes the provider
  webhook.
- handle_blockchain_webhook(): the provider reports a confirmed
  transaction. Re-checks address, confirmations and balance, marks the
  record PAID and hands the message to the carrier.
- handle_carrier_callback(): the carrier reports delivery progress.

No handler spawns background work. Every handler is safe to call again
with the same input. Within a process, work on one address is serialized
by a keyed lock. Across processes, the unique constraint on address closes
the create race, and the subscription and dispatch calls are each claimed
with a conditional UPDATE before they are made.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import IntEnum
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session

from smspay.blockchain import TX_CONFIRMATION_EVENT, AddressIssued, AddressResult
from smspay.currency import CurrencyDescriptor, get_currency
from smspay.errors import (
    CarrierError,
    MalformedRequest,
    PaymentNotConfirmed,
    ProviderUnavailable,
    UnknownOrTerminalSession,
)
from smspay.messaging import CarrierReceipt
from smspay.metrics import record_gateway_error
from smspay.models import MessageStatus, PaymentStatus, advance
from smspay.storage import (
    claim_dispatch,
    claim_subscription,
    create_payment_message,
    get_payment_message,
    get_payment_message_by_address,
    release_dispatch_claim,
    release_subscription_claim,
    save_payment_message,
)
from smspay.utils import KeyedLock, fingerprint

logger = logging.getLogger(__name__)


class PollState(IntEnum):
    """Wire values returned to the polling client."""
    NOT_BROADCAST = 0
    BROADCAST_UNCONFIRMED = 1
    CONFIRMING = 2
    CONFIRMED = 3
    ERROR = 4


# Uppercased carrier status -> message lifecycle step. Statuses not listed
# (FAILED, UNDELIVERED, ...) are recorded but do not move the lifecycle.
CARRIER_STATUS_MAP = {
    "ACCEPTED": MessageStatus.PENDING,
    "SCHEDULED": MessageStatus.PENDING,
    "QUEUED": MessageStatus.PENDING,
    "SENDING": MessageStatus.PENDING,
    "SENT": MessageStatus.SENT,
    "DELIVERED": MessageStatus.SENT,
}


class BlockchainGateway(Protocol):
    def new_address(self) -> AddressResult: ...
    def get_balance(self, address: str) -> Decimal: ...
    def is_broadcasted(self, address: str) -> bool: ...
    def confirmations_for(self, address: str) -> int: ...
    def subscribe_webhook(self, event: str, address: str, min_confirmations: int, callback_url: str) -> str: ...


class MessagingGateway(Protocol):
    def send(self, recipient: str, body: str, status_callback_url: str) -> CarrierReceipt: ...


@dataclass(frozen=True)
class PollOutcome:
    state: PollState
    session_id: Optional[str] = None
    created: bool = False


@dataclass(frozen=True)
class DispatchResult:
    # None while another worker holds the dispatch claim
    carrier_message_id: Optional[str]
    response: dict[str, Any] = field(default_factory=dict)
    already_dispatched: bool = False


@dataclass(frozen=True)
class Invoice:
    address: str
    amount: Decimal
    currency: str
    iso_code: str
    uri: str
    min_confirmations: int


class ConfirmationOrchestrator:
    def __init__(
        self,
        blockchain: BlockchainGateway,
        messaging: MessagingGateway,
        currency: CurrencyDescriptor,
        min_confirmations: int,
        callback_base_url: str,
        sender_phone: str,
        locks: Optional[KeyedLock] = None,
    ):
        self.blockchain = blockchain
        self.messaging = messaging
        self.currency = currency
        self.min_confirmations = min_confirmations
        self.callback_base_url = callback_base_url.rstrip("/")
        self.sender_phone = sender_phone
        self.locks = locks if locks is not None else KeyedLock()

    def blockchain_callback_url(self, session_id: str) -> str:
        return f"{self.callback_base_url}/webhook/blockchain/{session_id}"

    def carrier_callback_url(self, session_id: str) -> str:
        return f"{self.callback_base_url}/webhook/carrier/{session_id}"

    # -------------------------------------------------------------------------
    # Invoice
    # -------------------------------------------------------------------------

    def new_invoice(self, fixed_address: Optional[str] = None) -> Invoice:
        """
        Payment details for a new session.

        Raises:
            ProviderUnavailable: no fixed address and the provider could not
                issue one. No URI is built in that case.
        """
        if fixed_address:
            address = fixed_address
        else:
            result = self.blockchain.new_address()
            if not isinstance(result, AddressIssued):
                record_gateway_error("blockchain")
                raise result.error
            address = result.address

        return Invoice(
            address=address,
            amount=self.currency.price,
            currency=self.currency.name,
            iso_code=self.currency.iso_code,
            uri=self.currency.uri_scheme(address, self.currency.price),
            min_confirmations=self.min_confirmations,
        )

    # -------------------------------------------------------------------------
    # Poll driver
    # -------------------------------------------------------------------------

    def poll(self, db: Session, phone_to: str, body: str, address: str) -> PollOutcome:
        """
        Advance a session from the client's polling loop.

        Provider failures come back as PollState.ERROR; they never raise and
        never leave a partially written record behind.
        """
        try:
            broadcasted = self.blockchain.is_broadcasted(address)
        except ProviderUnavailable as e:
            logger.warning(f"Poll for {address}: provider unavailable: {e.message}")
            record_gateway_error("blockchain")
            return PollOutcome(state=PollState.ERROR)

        with self.locks.hold(address):
            record = get_payment_message_by_address(db, address, for_update=True)

            if record is not None and record.has_paid():
                # Confirmations may outpace the unconfirmed-pool scan
                return PollOutcome(state=PollState.CONFIRMED, session_id=record.id)

            if broadcasted:
                created = False
                if record is None:
                    record, created = self._create_record(db, phone_to, body, address)

                if record.subscription_id is None and claim_subscription(db, record.id):
                    try:
                        self._subscribe(db, record)
                    except ProviderUnavailable as e:
                        logger.warning(f"Webhook subscription for {record.id} failed: {e.message}")
                        record_gateway_error("blockchain")
                        release_subscription_claim(db, record.id)
                        return PollOutcome(state=PollState.ERROR, session_id=record.id, created=created)

                return PollOutcome(
                    state=PollState.BROADCAST_UNCONFIRMED,
                    session_id=record.id,
                    created=created,
                )

            if record is None:
                return PollOutcome(state=PollState.NOT_BROADCAST)

            # Known session whose transaction has left the unconfirmed pool
            try:
                confirmations = self.blockchain.confirmations_for(address)
            except ProviderUnavailable as e:
                logger.warning(f"Confirmation lookup for {address} failed: {e.message}")
                record_gateway_error("blockchain")
                return PollOutcome(state=PollState.ERROR, session_id=record.id)

            if confirmations > 0:
                return PollOutcome(state=PollState.CONFIRMING, session_id=record.id)
            return PollOutcome(state=PollState.NOT_BROADCAST, session_id=record.id)

    def _create_record(self, db: Session, phone_to: str, body: str, address: str):
        amount = self.currency.price
        session_id = fingerprint(phone_to, body, address, amount)
        record, created = create_payment_message(
            db,
            session_id=session_id,
            body=body,
            recipient_phone=phone_to,
            sender_phone=self.sender_phone,
            address=address,
            currency=self.currency.name,
            amount=format(amount, "f"),
        )
        if created:
            logger.info(f"Session {session_id} opened for {address}")
        return record, created

    def _subscribe(self, db: Session, record) -> None:
        subscription_id = self.blockchain.subscribe_webhook(
            TX_CONFIRMATION_EVENT,
            record.address,
            self.min_confirmations,
            self.blockchain_callback_url(record.id),
        )
        record.subscription_id = subscription_id
        save_payment_message(db, record)

    # -------------------------------------------------------------------------
    # Blockchain webhook driver
    # -------------------------------------------------------------------------

    def handle_blockchain_webhook(
        self,
        db: Session,
        session_id: Optional[str],
        event_id: Optional[str],
        event_type: Optional[str],
        payload: Any,
    ) -> DispatchResult:
        """
        Confirm payment and dispatch the SMS.

        Raises:
            MalformedRequest: missing identity headers or unusable payload
            UnknownOrTerminalSession: no record, or the record is already SENT
            PaymentNotConfirmed: address, confirmations or balance check failed;
                the record is left untouched
            ProviderUnavailable: balance lookup failed; record untouched
            CarrierError: dispatch failed; the record stays PAID and UNSENT
        """
        if not session_id or not event_id or not event_type:
            raise MalformedRequest("event id, event type and session id are required")
        if not isinstance(payload, dict):
            raise MalformedRequest("webhook body must be a JSON object")

        record = self._live_record(db, session_id)

        with self.locks.hold(record.address):
            record = self._live_record(db, session_id, for_update=True)

            if record.carrier_message_id:
                return self._already_dispatched(record)

            self._check_payment(record, payload)

            if not record.has_paid():
                record.payment_status = PaymentStatus.PAID
                save_payment_message(db, record)
                logger.info(f"Session {session_id} paid (event {event_type}/{event_id})")

            if not claim_dispatch(db, session_id):
                # Another worker sent it or is sending it right now
                record = get_payment_message(db, session_id, for_update=True)
                return self._already_dispatched(record)

            try:
                receipt = self.messaging.send(
                    record.recipient_phone,
                    record.body,
                    self.carrier_callback_url(record.id),
                )
            except CarrierError:
                release_dispatch_claim(db, session_id)
                raise

            # Acceptance only: message_status moves on the carrier callback
            record.carrier_message_id = receipt.message_id
            save_payment_message(db, record)

        return DispatchResult(carrier_message_id=receipt.message_id, response=receipt.raw)

    def _already_dispatched(self, record) -> DispatchResult:
        sid = record.carrier_message_id
        if sid:
            logger.info(f"Session {record.id} already dispatched as {sid}")
            response = {"sid": sid, "status": "already_dispatched"}
        else:
            logger.info(f"Session {record.id} dispatch in progress elsewhere")
            response = {"sid": None, "status": "dispatch_in_progress"}
        return DispatchResult(carrier_message_id=sid, response=response, already_dispatched=True)

    def _check_payment(self, record, payload: dict) -> None:
        outputs = payload.get("outputs")
        confirmations = payload.get("confirmations")
        if not isinstance(outputs, list) or confirmations is None:
            raise MalformedRequest("payload must carry outputs and confirmations")
        try:
            confirmations = int(confirmations)
        except (TypeError, ValueError):
            raise MalformedRequest("confirmations must be an integer") from None

        currency = get_currency(record.currency)
        address_match = any(
            currency.same_address(candidate, record.address)
            for output in outputs
            if isinstance(output, dict)
            for candidate in (output.get("addresses") or [])
        )
        if not address_match:
            raise PaymentNotConfirmed("transaction does not pay the session address", {"session_id": record.id})

        if confirmations < self.min_confirmations:
            raise PaymentNotConfirmed(
                f"{confirmations} of {self.min_confirmations} confirmations",
                {"session_id": record.id, "confirmations": confirmations},
            )

        # Compare against the amount pinned on the record, not the live price
        balance = self.blockchain.get_balance(record.address)
        if balance < record.amount_decimal:
            raise PaymentNotConfirmed(
                f"balance {balance} below {record.amount}",
                {"session_id": record.id, "balance": str(balance)},
            )

    # -------------------------------------------------------------------------
    # Carrier callback driver
    # -------------------------------------------------------------------------

    def handle_carrier_callback(
        self,
        db: Session,
        session_id: Optional[str],
        status: Optional[str],
        carrier_message_id: Optional[str],
    ):
        """
        Record a carrier delivery status. Two calls are normal ("sent", then
        "delivered"); once SENT the session is terminal and further calls
        raise UnknownOrTerminalSession.
        """
        if not session_id or not status or not carrier_message_id:
            raise MalformedRequest("status, carrier message id and session id are required")

        record = self._live_record(db, session_id)

        with self.locks.hold(record.address):
            record = self._live_record(db, session_id, for_update=True)

            carrier_status = status.strip().upper()
            record.carrier_status = carrier_status
            record.carrier_message_id = carrier_message_id
            target = CARRIER_STATUS_MAP.get(carrier_status)
            if target is not None:
                record.message_status = advance(record.message_status, target)
            save_payment_message(db, record)

        logger.info(f"Session {session_id} carrier status {carrier_status} -> {record.message_status.value}")
        return record

    def _live_record(self, db: Session, session_id: str, for_update: bool = False):
        record = get_payment_message(db, session_id, for_update=for_update)
        if record is None or record.is_terminal():
            raise UnknownOrTerminalSession(f"session {session_id} not found", {"session_id": session_id})
        return record
