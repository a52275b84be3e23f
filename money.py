from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

CENT = Decimal("0.01")


def to_cents(amount: Decimal, rounding: str = ROUND_HALF_UP) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=rounding))


def from_cents(cents: Optional[Union[int, float]]) -> Decimal:
    # SUM() can come back as None, int or float depending on the driver.
    if cents is None:
        return Decimal("0.00")
    return (Decimal(int(cents)) / 100).quantize(CENT)
