"""
Money to unit conversion.

One unit costs a fixed number of shillings (25 by default). Every unit figure
in the ledger goes through `round_units` so that many small purchases and
consumption ticks never accumulate floating-point drift.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from .config import get_settings
from .exceptions import ValidationError

Number = Union[Decimal, int, float, str]

UNIT_PLACES = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so floats like 0.1 keep their printed value
    return Decimal(str(value))


def round_units(value: Number) -> Decimal:
    return to_decimal(value).quantize(UNIT_PLACES, rounding=ROUND_HALF_UP)


class UnitConverter:
    def __init__(self, ksh_per_unit: Optional[Number] = None):
        rate = to_decimal(ksh_per_unit if ksh_per_unit is not None else get_settings().ksh_per_unit)
        if rate <= 0:
            raise ValidationError(f"ksh_per_unit must be positive, got {rate}")
        self.ksh_per_unit = rate

    def _checked(self, amount: Number) -> Decimal:
        try:
            value = to_decimal(amount)
        except ArithmeticError as e:
            raise ValidationError(f"Invalid amount: {amount!r}") from e
        if not value.is_finite() or value < 0:
            raise ValidationError(f"Amount must be a non-negative number, got {amount!r}")
        return value

    def amount_to_units(self, amount: Number) -> Decimal:
        """Units bought by `amount`, rounded half-up to 2 places."""
        return round_units(self._checked(amount) / self.ksh_per_unit)

    def remainder(self, amount: Number) -> Decimal:
        """Shillings left over after whole units; display only, never summed into a balance."""
        return round_units(self._checked(amount) % self.ksh_per_unit)
