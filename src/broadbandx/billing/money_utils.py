"""
Money and currency utilities using py-moneyed and Babel.

Provides currency validation, rounding to each currency's minor unit and
locale-aware formatting for amounts shown in service history.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

USD = Currency("USD")
EUR = Currency("EUR")
GBP = Currency("GBP")
INR = Currency("INR")

SUPPORTED_CURRENCIES = frozenset({"USD", "EUR", "GBP", "INR"})

DEFAULT_LOCALE = "en_US"


class MoneyHandler:
    """Central handler for money operations with proper error handling."""

    def __init__(self, default_currency: str = "USD", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self._validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        """Validate and return Currency object."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        """Validate locale code."""
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def create_money(
        self, amount: int | float | Decimal | str, currency: str | None = None
    ) -> Money:
        """Create Money object with proper validation."""
        currency = currency or self.default_currency.code
        validated_currency = self._validate_currency(currency)

        if isinstance(amount, Decimal):
            decimal_amount = amount
        else:
            decimal_amount = Decimal(str(amount))

        return Money(amount=decimal_amount, currency=validated_currency)

    def get_currency_precision(self, currency_code: str) -> int:
        """Get decimal precision for a currency."""
        return get_currency_precision(currency_code.upper())

    def round_amount(self, amount: Decimal, currency: str | None = None) -> Decimal:
        """Round an amount half-up to the currency's minor unit."""
        currency = currency or self.default_currency.code
        precision = self.get_currency_precision(currency)
        return amount.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)

    def format_money(self, money: Money, locale: str | None = None, **kwargs: Any) -> str:
        """Format Money object with locale-aware formatting."""
        locale = locale or self.default_locale
        validated_locale = self._validate_locale(locale)

        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale, **kwargs
            )
        except (TypeError, ValueError):
            # Fallback to simple formatting if locale issues
            return f"{money.currency.code} {money.amount}"

    def format_amount(self, amount: Decimal, currency: str, locale: str | None = None) -> str:
        """Format a bare amount in ``currency``."""
        return self.format_money(self.create_money(amount, currency), locale)


money_handler = MoneyHandler()


def round_amount(amount: Decimal, currency: str = "USD") -> Decimal:
    """Round with the default handler."""
    return money_handler.round_amount(amount, currency)


def format_amount(amount: Decimal, currency: str = "USD", locale: str | None = None) -> str:
    """Format with the default handler."""
    return money_handler.format_amount(amount, currency, locale)


__all__ = [
    "MoneyHandler",
    "money_handler",
    "round_amount",
    "format_amount",
    "SUPPORTED_CURRENCIES",
    "USD",
    "EUR",
    "GBP",
    "INR",
]
