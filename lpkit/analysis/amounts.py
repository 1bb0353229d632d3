"""
Deposit sizing

Turns caller amounts (whole tokens, or "auto") into base units for both
sides of a pool. An "auto" side is derived from the other side at the
active-bin price:

    auto Y = X * price
    auto X = Y / price

where price is whole Y tokens per whole X token. All arithmetic is done
in Decimal and floored to integer base units.
"""
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Tuple, Union

from lpkit.errors import AmbiguousAmountError, InvalidAmountError
from lpkit.models import Amount, Derived, Fixed, PoolState


AUTO = "auto"


def parse_amount(raw: Union[str, int, float, Decimal, Fixed, Derived]) -> Amount:
    """Parse a caller amount. "auto" (any case) means derive it from the other side."""
    if isinstance(raw, (Fixed, Derived)):
        if isinstance(raw, Fixed) and not raw.value > 0:
            raise InvalidAmountError(f"Amount must be positive, got {raw.value}")
        return raw
    if isinstance(raw, str) and raw.strip().lower() == AUTO:
        return Derived()
    if isinstance(raw, bool):
        raise InvalidAmountError(f"Invalid amount: {raw!r}")
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Invalid amount: {raw!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidAmountError(f"Amount must be a positive number, got {raw!r}")
    return Fixed(value)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Whole tokens -> integer base units (floored)."""
    scaled = amount * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def from_base_units(amount: int, decimals: int) -> float:
    return float(Decimal(amount) / (Decimal(10) ** decimals))


def price_from_bin_id(bin_id: int, bin_step: int) -> Decimal:
    """Price per lamport of a bin: (1 + bin_step / 10000) ** bin_id."""
    base = Decimal(1) + Decimal(bin_step) / Decimal(10_000)
    return base ** bin_id


def from_price_per_lamport(price: Decimal, decimals_x: int, decimals_y: int) -> Decimal:
    """Price per lamport -> whole Y tokens per whole X token."""
    return Decimal(price) * (Decimal(10) ** (decimals_x - decimals_y))


def calculate_amounts(
    amount_x,
    amount_y,
    price_per_token,
    pool: PoolState,
) -> Tuple[int, int]:
    """Return (base_units_x, base_units_y) for a deposit.

    Exactly one side may be "auto". Both outputs are non-negative ints;
    rejecting an all-zero deposit is the caller's job.
    """
    x = parse_amount(amount_x)
    y = parse_amount(amount_y)
    if isinstance(x, Derived) and isinstance(y, Derived):
        raise AmbiguousAmountError(
            "Amount for both first asset and second asset cannot be 'auto'"
        )

    try:
        price = Decimal(str(price_per_token))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Invalid price: {price_per_token!r}")
    if not price.is_finite() or price < 0:
        raise InvalidAmountError(f"Invalid price: {price_per_token!r}")

    if isinstance(x, Derived):
        if price <= 0:
            raise InvalidAmountError(f"Cannot derive X amount at price {price}")
        x = Fixed(y.value / price)
    elif isinstance(y, Derived):
        y = Fixed(x.value * price)

    return (
        to_base_units(x.value, pool.token_x.decimals),
        to_base_units(y.value, pool.token_y.decimals),
    )
