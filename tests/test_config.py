"""
Tests for settings validation and derived values.
"""

import os
from decimal import Decimal

import pytest
from pydantic import ValidationError

from smspay.config import Settings
from smspay.currency import BITCOIN, ETHEREUM


def make_settings(**overrides) -> Settings:
    values = {"DATABASE_URL": "sqlite://"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_unknown_currency_rejected():
    with pytest.raises(ValidationError):
        make_settings(CURRENCY="dogecoin")


def test_currency_name_normalized():
    settings = make_settings(CURRENCY=" Ethereum ")
    assert settings.CURRENCY == "ethereum"
    assert settings.currency == ETHEREUM


def test_price_override():
    settings = make_settings(CURRENCY="bitcoin", MESSAGE_PRICE="0.0001")
    assert settings.currency.price == Decimal("0.0001")
    assert settings.currency.iso_code == BITCOIN.iso_code
    assert BITCOIN.price == Decimal("0.00000750")


def test_non_positive_price_rejected():
    with pytest.raises(ValidationError):
        make_settings(MESSAGE_PRICE="0")


def test_min_confirmations_must_be_positive():
    with pytest.raises(ValidationError):
        make_settings(MIN_CONFIRMATIONS=0)


def test_gateways_configured():
    full = make_settings(
        BLOCKCYPHER_TOKEN="tok",
        TWILIO_ACCOUNT_SID="AC1",
        TWILIO_AUTH_TOKEN="secret",
        TWILIO_PHONE_FROM="+15005550006",
    )
    assert full.gateways_configured is True
    assert make_settings(
        BLOCKCYPHER_TOKEN="",
        TWILIO_ACCOUNT_SID="AC1",
        TWILIO_AUTH_TOKEN="secret",
        TWILIO_PHONE_FROM="+15005550006",
    ).gateways_configured is False


def test_test_database_is_temporary():
    from conftest import _TEST_DB_DIR
    from smspay.storage import engine

    if not engine.url.database or _TEST_DB_DIR not in engine.url.database:
        pytest.skip("DATABASE_URL supplied by the environment")
    assert os.path.dirname(engine.url.database) == _TEST_DB_DIR
    assert not os.path.exists(os.path.join(os.getcwd(), "test_smspay.db"))
