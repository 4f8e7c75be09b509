"""
Payment asset descriptors.

The set of supported assets is closed: a name from configuration resolves
to one of the descriptors in CURRENCIES, or fails with UnknownCurrencyError.
"""

import dataclasses
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum

from smspay.errors import UnknownCurrencyError


class LedgerModel(str, Enum):
    UTXO = "utxo"
    ACCOUNT = "account"


@dataclass(frozen=True)
class CurrencyDescriptor:
    name: str
    network: str
    symbol: str
    iso_code: str
    scheme: str
    price: Decimal
    # Number of fractional digits between the smallest unit and one coin
    decimals: int
    ledger: LedgerModel

    def uri_scheme(self, address: str, amount: Decimal | str | None = None) -> str:
        """Wallet deep link, e.g. bitcoin:<address>?amount=<amount> (BIP-21)."""
        amount = self.price if amount is None else amount
        return f"{self.scheme}:{address}?amount={format_amount(amount)}"

    def to_coin_units(self, smallest_units: int) -> Decimal:
        """
        Convert satoshi/wei to whole coins, fixed at 8 fractional digits.

        Truncates, so an underpayment never rounds up to the price.
        """
        value = Decimal(smallest_units).scaleb(-self.decimals)
        return value.quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)

    def normalize_address(self, address: str) -> str:
        # Account-style providers report addresses without the 0x prefix and
        # in mixed case; UTXO addresses are case sensitive.
        if self.ledger is LedgerModel.ACCOUNT:
            address = address.lower()
            if address.startswith("0x"):
                address = address[2:]
        return address

    def same_address(self, a: str, b: str) -> bool:
        return self.normalize_address(a) == self.normalize_address(b)

    def with_price(self, price: Decimal) -> "CurrencyDescriptor":
        return dataclasses.replace(self, price=Decimal(price))


def format_amount(amount: Decimal | str) -> str:
    """Plain decimal notation, never exponent form (Decimal('7.5E-6'))."""
    return format(Decimal(str(amount)), "f")


BITCOIN = CurrencyDescriptor(
    name="bitcoin",
    network="test3",
    symbol="btc",
    iso_code="XBT",
    scheme="bitcoin",
    price=Decimal("0.00000750"),  # 750 satoshi
    decimals=8,
    ledger=LedgerModel.UTXO,
)

ETHEREUM = CurrencyDescriptor(
    name="ethereum",
    network="test",
    symbol="beth",
    iso_code="ETH",
    scheme="ethereum",
    price=Decimal("0.00001"),  # 10,000 gwei
    decimals=18,
    ledger=LedgerModel.ACCOUNT,
)

CURRENCIES: dict[str, CurrencyDescriptor] = {
    BITCOIN.name: BITCOIN,
    ETHEREUM.name: ETHEREUM,
}


def get_currency(name: str) -> CurrencyDescriptor:
    """Resolve a configured currency name (case-insensitive)."""
    try:
        return CURRENCIES[name.strip().lower()]
    except KeyError:
        raise UnknownCurrencyError(
            f"unknown currency {name!r}, expected one of: {', '.join(sorted(CURRENCIES))}",
            details={"name": name},
        ) from None
