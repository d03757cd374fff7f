"""
Currency conversion and rounding helpers.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Mapping, Optional

from shared.errors import ExpressionEvaluationError, InvalidRequestError

ZERO = Decimal("0")


def round_money(amount: Decimal, minor_units: int = 2) -> Decimal:
    """Round half-to-even to the currency's minor unit."""
    try:
        return amount.quantize(Decimal(1).scaleb(-minor_units), rounding=ROUND_HALF_EVEN)
    except InvalidOperation:
        raise ExpressionEvaluationError(
            "Amount out of range", {"amount": str(amount), "minor_units": minor_units}
        ) from None


class RateTable:
    """Pre-resolved exchange rates from the base currency.

    A rate of ``r`` for currency ``C`` means one unit of the base currency is
    worth ``r`` units of ``C``.
    """

    def __init__(
        self,
        base_currency: str,
        rates: Mapping[str, Decimal],
        minor_units: Optional[Mapping[str, int]] = None
    ):
        self.base_currency = base_currency.upper()
        self._rates = {code.upper(): Decimal(str(rate)) for code, rate in rates.items()}
        self._rates.setdefault(self.base_currency, Decimal("1"))
        self._minor_units = {code.upper(): units for code, units in (minor_units or {}).items()}

    def supports(self, currency_code: str) -> bool:
        return currency_code.upper() in self._rates

    def rate(self, currency_code: str) -> Decimal:
        code = currency_code.upper()
        if code not in self._rates:
            raise InvalidRequestError(
                f"No exchange rate for currency {code}",
                {"currency_code": code, "base_currency": self.base_currency}
            )
        return self._rates[code]

    def convert(self, amount: Decimal, currency_code: str) -> Decimal:
        """Convert a base-currency amount, unrounded."""
        rate = self.rate(currency_code)
        if rate == 1:
            return amount
        return amount * rate

    def minor_units(self, currency_code: str) -> int:
        return self._minor_units.get(currency_code.upper(), 2)

    def round(self, amount: Decimal, currency_code: str) -> Decimal:
        return round_money(amount, self.minor_units(currency_code))
