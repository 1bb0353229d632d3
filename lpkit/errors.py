"""
Error taxonomy for liquidity operations.

Input errors also subclass ValueError so callers that only know about
builtin exceptions still catch them.
"""
from typing import Optional


class LiquidityError(Exception):
    """Base class for every error raised by lpkit."""


class LiquidityOperationError(LiquidityError):
    """Unexpected failure inside an operation, wrapped with its context."""


# ── Caller input ────────────────────────────────────────────────────

class InvalidParametersError(LiquidityError, ValueError):
    pass


# ── Missing on-chain / indexer state ────────────────────────────────

class NotFoundError(LiquidityError):
    """A pool, position or token pair that does not exist."""


class PoolNotFoundError(NotFoundError):
    def __init__(self, pool_address: str):
        super().__init__(f"Pool not found: {pool_address}")
        self.pool_address = pool_address


class NoPositionFoundError(NotFoundError):
    def __init__(self, pool_address: str):
        super().__init__(f"No positions found in pool {pool_address}")
        self.pool_address = pool_address


# ── Sizing ──────────────────────────────────────────────────────────

class AmbiguousAmountError(InvalidParametersError):
    pass


class InvalidAmountError(InvalidParametersError):
    pass


class ZeroLiquidityError(LiquidityError):
    pass


# ── Submission path ─────────────────────────────────────────────────

class BridgeError(LiquidityError):
    """The transaction-building bridge failed or returned garbage."""


class SimulationFailedError(LiquidityError):
    pass


class TransactionFailedError(LiquidityError):
    def __init__(self, message: str, chain_error=None, signature: Optional[str] = None):
        super().__init__(message)
        self.chain_error = chain_error
        self.signature = signature


class ConfirmationTimeoutError(LiquidityError):
    def __init__(self, signature: str, timeout: float):
        super().__init__(f"Transaction {signature} not confirmed after {timeout:.0f}s")
        self.signature = signature
        self.timeout = timeout


# ── Verification path ───────────────────────────────────────────────

class TransactionNotFoundError(LiquidityError):
    def __init__(self, signature: str):
        super().__init__(f"Transaction not found: {signature}")
        self.signature = signature


class MalformedTransactionError(LiquidityError):
    pass


class StatisticalBugError(LiquidityError):
    """A deposit confirmed but moved nothing on a side that was requested.

    Carries the position address so the caller can unwind it.
    """

    def __init__(self, position_address: str, requested, verified):
        super().__init__(
            f"Deposit into position {position_address} confirmed but verified "
            f"amounts {list(verified)} do not match requested {list(requested)}"
        )
        self.position_address = position_address
        self.requested = tuple(requested)
        self.verified = tuple(verified)


class RetryBudgetExhaustedError(LiquidityError):
    def __init__(self, attempts: int, last_error: StatisticalBugError):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error
