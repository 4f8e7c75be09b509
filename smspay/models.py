"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
from decimal import Decimal

from sqlalchemy import Column, String, Text, Enum
from sqlalchemy.orm import validates

from smspay.storage import Base


class MessageStatus(str, enum.Enum):
    UNSENT = "UNSENT"
    PENDING = "PENDING"
    SENT = "SENT"


class PaymentStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"


_MESSAGE_ORDER = [MessageStatus.UNSENT, MessageStatus.PENDING, MessageStatus.SENT]
_PAYMENT_ORDER = [PaymentStatus.UNPAID, PaymentStatus.PENDING, PaymentStatus.PAID]


def advance(current, target):
    """Return whichever of the two statuses is further along its lifecycle."""
    order = _MESSAGE_ORDER if isinstance(target, MessageStatus) else _PAYMENT_ORDER
    if current is None:
        return target
    return target if order.index(target) > order.index(current) else current


class PaymentMessage(Base):
    """
    One paid message session.

    Table: payment_messages
    Primary Key: id (content fingerprint, see utils.fingerprint)
    Unique: address (one record per payment address)

    Rows are never deleted. Statuses only move forward and the amount is
    fixed when the row is created.
    """
    __tablename__ = "payment_messages"

    id = Column(String(64), primary_key=True, index=True)
    body = Column(Text, nullable=False)
    recipient_phone = Column(String, nullable=False)
    sender_phone = Column(String, nullable=False)
    address = Column(String, nullable=False, unique=True, index=True)
    currency = Column(String, nullable=False)
    amount = Column(String, nullable=False)  # decimal string, pinned at creation
    message_status = Column(Enum(MessageStatus), nullable=False, default=MessageStatus.UNSENT)
    payment_status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.UNPAID)
    carrier_message_id = Column(String, nullable=True)
    carrier_status = Column(String, nullable=True)  # last raw carrier status, uppercased
    subscription_id = Column(String, nullable=True)
    # Set by whichever worker won the right to make the provider/carrier call
    subscription_claimed_at = Column(String, nullable=True)
    dispatch_claimed_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)

    @validates("amount")
    def _validate_amount(self, key, value):
        if self.amount is not None and value != self.amount:
            raise ValueError("amount is immutable once set")
        return value

    @validates("message_status")
    def _validate_message_status(self, key, value):
        value = MessageStatus(value)
        if advance(self.message_status, value) is not value:
            raise ValueError(f"message_status cannot move from {self.message_status} to {value}")
        return value

    @validates("payment_status")
    def _validate_payment_status(self, key, value):
        value = PaymentStatus(value)
        if advance(self.payment_status, value) is not value:
            raise ValueError(f"payment_status cannot move from {self.payment_status} to {value}")
        return value

    @property
    def amount_decimal(self) -> Decimal:
        return Decimal(self.amount)

    def has_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def is_terminal(self) -> bool:
        return self.message_status == MessageStatus.SENT
