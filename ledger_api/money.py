"""
Fixed-point money helpers.

Amounts travel through the API and the transfer engine as decimal.Decimal
and are stored as integer minor units (cents for USD, pesewas for GHS, ...).
No float is ever involved: Decimal -> int conversion is exact or rejected.

    >>> to_minor_units(Decimal("200.00"), "USD")
    20000
    >>> from_minor_units(20000, "USD")
    Decimal('200.00')
"""

from decimal import Decimal, InvalidOperation

from ledger_api.config import settings
from ledger_api.exceptions import TransferValidationError


def normalize_currency(currency: str) -> str:
    """Upper-case and trim a currency code."""
    return currency.strip().upper()


def currency_exponent(currency: str) -> int:
    """
    Number of minor-unit digits for a supported currency.

    Raises:
        TransferValidationError: If the currency is not supported.
    """
    code = normalize_currency(currency)
    try:
        return settings.SUPPORTED_CURRENCIES[code]
    except KeyError:
        raise TransferValidationError(f"Unsupported currency: {currency}") from None


def is_supported_currency(currency: str) -> bool:
    return normalize_currency(currency) in settings.SUPPORTED_CURRENCIES


def to_minor_units(amount: Decimal, currency: str) -> int:
    """
    Convert a decimal amount to integer minor units.

    Raises:
        TransferValidationError: If the amount is not a finite decimal or has
            more fractional digits than the currency allows (e.g. 1.005 USD).
    """
    exponent = currency_exponent(currency)
    if not isinstance(amount, Decimal):
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise TransferValidationError(f"Invalid amount: {amount!r}") from None
    if not amount.is_finite():
        raise TransferValidationError("Amount must be a finite number")

    scaled = amount.scaleb(exponent)
    if scaled != scaled.to_integral_value():
        raise TransferValidationError(
            f"Amount {amount} has more than {exponent} decimal places for {normalize_currency(currency)}"
        )
    return int(scaled)


def from_minor_units(minor_units: int, currency: str) -> Decimal:
    """Convert integer minor units back to a Decimal with the currency's scale."""
    exponent = currency_exponent(currency)
    return Decimal(minor_units).scaleb(-exponent)
