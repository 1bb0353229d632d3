"""
Pool, bin and position views plus the value types passed between the
liquidity components.

Pool/Bin/Position are read-mostly snapshots of on-chain state. They are
fetched per operation and never cached: bin state changes every block.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union


# ── Indexer view ────────────────────────────────────────────────────

@dataclass
class Pool:
    """A DLMM pair as reported by the Meteora indexer."""
    address: str
    name: str
    mint_x: str = ""
    mint_y: str = ""
    bin_step: int = 0
    base_fee_percentage: str = "0"
    max_fee_percentage: str = "0"
    protocol_fee_percentage: str = "0"
    liquidity: str = "0"
    fees_24h: float = 0.0
    trade_volume_24h: float = 0.0
    current_price: float = 0.0
    apr_percentage: float = 0.0

    @classmethod
    def from_api(cls, pair: Dict) -> 'Pool':
        return cls(
            address=pair.get('address', ''),
            name=pair.get('name', '?'),
            mint_x=pair.get('mint_x', ''),
            mint_y=pair.get('mint_y', ''),
            bin_step=int(pair.get('bin_step', 0) or 0),
            base_fee_percentage=str(pair.get('base_fee_percentage', '0')),
            max_fee_percentage=str(pair.get('max_fee_percentage', '0')),
            protocol_fee_percentage=str(pair.get('protocol_fee_percentage', '0')),
            liquidity=str(pair.get('liquidity', '0')),
            fees_24h=float(pair.get('fees_24h', 0) or 0),
            trade_volume_24h=float(pair.get('trade_volume_24h', 0) or 0),
            current_price=float(pair.get('current_price', 0) or 0),
            apr_percentage=float(pair.get('apr', 0) or 0),
        )

    def to_dict(self) -> Dict:
        return {
            'address': self.address,
            'name': self.name,
            'mint_x': self.mint_x,
            'mint_y': self.mint_y,
            'bin_step': self.bin_step,
            'base_fee_percentage': self.base_fee_percentage,
            'max_fee_percentage': self.max_fee_percentage,
            'protocol_fee_percentage': self.protocol_fee_percentage,
            'liquidity': self.liquidity,
            'fees_24h': self.fees_24h,
            'trade_volume_24h': self.trade_volume_24h,
            'current_price': self.current_price,
            'apr_percentage': self.apr_percentage,
        }


# ── On-chain view ───────────────────────────────────────────────────

@dataclass
class TokenInfo:
    mint: str
    decimals: int


@dataclass
class Bin:
    """A price bucket. `price` is the raw price per lamport (Y base units per X base unit)."""
    bin_id: int
    price: Decimal
    x_amount: int = 0
    y_amount: int = 0

    def price_per_token(self, decimals_x: int, decimals_y: int) -> Decimal:
        """UI price: how many whole Y tokens one whole X token buys."""
        return self.price * (Decimal(10) ** (decimals_x - decimals_y))

    @classmethod
    def from_bridge(cls, data: Dict) -> 'Bin':
        return cls(
            bin_id=int(data['binId']),
            price=Decimal(str(data['price'])),
            x_amount=int(data.get('xAmount', 0) or 0),
            y_amount=int(data.get('yAmount', 0) or 0),
        )

    def to_dict(self) -> Dict:
        return {
            'binId': self.bin_id,
            'price': str(self.price),
            'xAmount': str(self.x_amount),
            'yAmount': str(self.y_amount),
        }


@dataclass
class PoolState:
    """Token metadata and active bin of a pool, as read on-chain."""
    address: str
    token_x: TokenInfo
    token_y: TokenInfo
    bin_step: int
    active_bin: Bin

    @classmethod
    def from_bridge(cls, data: Dict) -> 'PoolState':
        return cls(
            address=data['address'],
            token_x=TokenInfo(data['tokenX']['mint'], int(data['tokenX']['decimals'])),
            token_y=TokenInfo(data['tokenY']['mint'], int(data['tokenY']['decimals'])),
            bin_step=int(data['binStep']),
            active_bin=Bin.from_bridge(data['activeBin']),
        )


@dataclass
class PositionBin:
    bin_id: int
    x_amount: int = 0
    y_amount: int = 0


@dataclass
class Position:
    """A wallet's liquidity over a fixed contiguous bin range in one pool."""
    address: str
    pool_address: str
    bins: List[PositionBin] = field(default_factory=list)
    fee_x: int = 0
    fee_y: int = 0
    lower_bin_id: Optional[int] = None
    upper_bin_id: Optional[int] = None

    @property
    def bin_ids(self) -> List[int]:
        return [b.bin_id for b in self.bins]

    @property
    def min_bin_id(self) -> int:
        if self.lower_bin_id is not None:
            return self.lower_bin_id
        return min(self.bin_ids)

    @property
    def max_bin_id(self) -> int:
        if self.upper_bin_id is not None:
            return self.upper_bin_id
        return max(self.bin_ids)

    @property
    def total_x(self) -> int:
        return sum(b.x_amount for b in self.bins)

    @property
    def total_y(self) -> int:
        return sum(b.y_amount for b in self.bins)

    @classmethod
    def from_bridge(cls, data: Dict, pool_address: str = "") -> 'Position':
        bins = [
            PositionBin(
                bin_id=int(b['binId']),
                x_amount=int(b.get('positionXAmount', 0) or 0),
                y_amount=int(b.get('positionYAmount', 0) or 0),
            )
            for b in data.get('positionBinData', [])
        ]
        return cls(
            address=data['publicKey'],
            pool_address=data.get('lbPair', pool_address),
            bins=bins,
            fee_x=int(data.get('feeX', 0) or 0),
            fee_y=int(data.get('feeY', 0) or 0),
            lower_bin_id=data.get('lowerBinId'),
            upper_bin_id=data.get('upperBinId'),
        )

    def to_dict(self) -> Dict:
        return {
            'address': self.address,
            'pool_address': self.pool_address,
            'min_bin_id': self.min_bin_id if self.bins or self.lower_bin_id is not None else None,
            'max_bin_id': self.max_bin_id if self.bins or self.upper_bin_id is not None else None,
            'total_x': str(self.total_x),
            'total_y': str(self.total_y),
            'fee_x': str(self.fee_x),
            'fee_y': str(self.fee_y),
        }


class LiquidityStrategy(str, Enum):
    """Deposit shapes understood by the DLMM program."""
    SPOT_ONE_SIDE = "SpotOneSide"
    CURVE_ONE_SIDE = "CurveOneSide"
    BID_ASK_ONE_SIDE = "BidAskOneSide"
    SPOT_BALANCED = "SpotBalanced"
    CURVE_BALANCED = "CurveBalanced"
    BID_ASK_BALANCED = "BidAskBalanced"
    SPOT_IMBALANCED = "SpotImBalanced"
    CURVE_IMBALANCED = "CurveImBalanced"
    BID_ASK_IMBALANCED = "BidAskImBalanced"


# ── Amounts ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Fixed:
    """A caller-supplied amount in whole tokens."""
    value: Decimal


@dataclass(frozen=True)
class Derived:
    """Derive this side from the other side at the active-bin price."""


Amount = Union[Fixed, Derived]


# ── Operation results ───────────────────────────────────────────────

@dataclass
class BalanceChanges:
    liquidity_removed: List[float] = field(default_factory=lambda: [0.0, 0.0])
    fees_claimed: List[float] = field(default_factory=lambda: [0.0, 0.0])

    def __add__(self, other: 'BalanceChanges') -> 'BalanceChanges':
        return BalanceChanges(
            liquidity_removed=[a + b for a, b in zip(self.liquidity_removed, other.liquidity_removed)],
            fees_claimed=[a + b for a, b in zip(self.fees_claimed, other.fees_claimed)],
        )

    def to_dict(self) -> Dict:
        return {
            'liquidityRemoved': list(self.liquidity_removed),
            'feesClaimed': list(self.fees_claimed),
        }


@dataclass
class AddLiquidityResult:
    position_address: str
    liquidity_added: Tuple[float, float]
    signature: str = ""
    attempts: int = 1

    def to_dict(self) -> Dict:
        return {
            'positionAddress': self.position_address,
            'liquidityAdded': list(self.liquidity_added),
        }


@dataclass
class ClaimFeesResult:
    signature: str
    fees_claimed: Tuple[int, int]

    def to_dict(self) -> Dict:
        return {
            'signature': self.signature,
            'feesClaimed': [str(x) for x in self.fees_claimed],
        }


# ── Deposit state machine ───────────────────────────────────────────

class LiquidityState(str, Enum):
    IDLE = "Idle"
    SIZING = "Sizing"
    BUILDING = "Building"
    SIMULATING = "Simulating"
    SUBMITTING = "Submitting"
    CONFIRMING = "Confirming"
    VERIFYING = "Verifying"
    DONE = "Done"
    BUG_DETECTED = "BugDetected"
    CLEANUP = "Cleanup"
    FAILED = "Failed"


# Allowed transitions of one add_liquidity call
TRANSITIONS = {
    LiquidityState.IDLE: {LiquidityState.SIZING, LiquidityState.FAILED},
    LiquidityState.SIZING: {LiquidityState.BUILDING, LiquidityState.FAILED},
    LiquidityState.BUILDING: {LiquidityState.SIMULATING, LiquidityState.FAILED},
    LiquidityState.SIMULATING: {LiquidityState.SUBMITTING, LiquidityState.FAILED},
    LiquidityState.SUBMITTING: {LiquidityState.CONFIRMING, LiquidityState.FAILED},
    LiquidityState.CONFIRMING: {LiquidityState.VERIFYING, LiquidityState.FAILED},
    LiquidityState.VERIFYING: {LiquidityState.DONE, LiquidityState.BUG_DETECTED, LiquidityState.FAILED},
    LiquidityState.BUG_DETECTED: {LiquidityState.CLEANUP},
    LiquidityState.CLEANUP: {LiquidityState.SIZING, LiquidityState.FAILED},
    LiquidityState.DONE: set(),
    LiquidityState.FAILED: set(),
}


@dataclass
class RetryState:
    """Per-call bookkeeping for add_liquidity. Never persisted."""
    max_attempts: int
    attempt: int = 0
    last_error: Optional[Exception] = None
    state: LiquidityState = LiquidityState.IDLE
    history: List[LiquidityState] = field(default_factory=lambda: [LiquidityState.IDLE])

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def advance(self, new_state: LiquidityState):
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
