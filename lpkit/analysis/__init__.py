"""
Deposit sizing and bin price math
"""
from lpkit.analysis.amounts import (
    calculate_amounts,
    from_price_per_lamport,
    parse_amount,
    price_from_bin_id,
)

__all__ = [
    "calculate_amounts",
    "from_price_per_lamport",
    "parse_amount",
    "price_from_bin_id",
]
