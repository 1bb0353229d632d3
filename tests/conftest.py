"""
Shared fixtures for the lpkit test suite.

The DLMM program, wallet and verifier are replaced by small in-memory
fakes so the position manager's state machine can be exercised without
any network I/O.
"""
import copy
import os
import sys
from decimal import Decimal
from typing import Dict, List

import pytest

# Ensure project root is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import base58 as _b58
from solders.hash import Hash
from solders.keypair import Keypair as _Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from lpkit.config import LpConfig
from lpkit.errors import PoolNotFoundError
from lpkit.models import BalanceChanges, Bin, PoolState, Position, PositionBin, TokenInfo
from lpkit.wallet import ConfirmationStatus


# Fresh throwaway wallet generated per test session (no funds, never used on-chain).
_test_keypair = _Keypair()
_TEST_WALLET_KEY = _b58.b58encode(bytes(_test_keypair)).decode()

WSOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
POOL_ADDRESS = str(Pubkey.new_unique())


@pytest.fixture(autouse=True)
def _patch_env(request, monkeypatch):
    """Dummy RPC URL + throwaway wallet for every test."""
    monkeypatch.setenv("WALLET_PRIVATE_KEY", _TEST_WALLET_KEY)
    if request.node.get_closest_marker("integration"):
        return
    monkeypatch.setenv("SOLANA_RPC_URL", "https://test-rpc.example.com")
    monkeypatch.setenv("METEORA_API_URL", "https://dlmm-api.test")


@pytest.fixture
def test_config():
    return LpConfig(READ_RETRY_BACKOFF_SEC=0.0, CONFIRMATION_POLL_SEC=0.0)


# ── Sample data ──────────────────────────────────────────────────────

@pytest.fixture
def sample_pair():
    """One entry of the indexer's /pair/all_with_pagination response."""
    return {
        "address": POOL_ADDRESS,
        "name": "SOL-USDC",
        "mint_x": WSOL_MINT,
        "mint_y": USDC_MINT,
        "bin_step": 10,
        "base_fee_percentage": "0.1",
        "max_fee_percentage": "10",
        "protocol_fee_percentage": "5",
        "liquidity": "1523456.78",
        "fees_24h": 4321.5,
        "trade_volume_24h": 4321500.0,
        "current_price": 2.0,
        "apr": 12.5,
    }


def make_pool_state(active_bin_id=100, price_per_token="2", decimals_x=9, decimals_y=6, bin_step=10):
    per_lamport = Decimal(price_per_token) * (Decimal(10) ** (decimals_y - decimals_x))
    return PoolState(
        address=POOL_ADDRESS,
        token_x=TokenInfo(WSOL_MINT, decimals_x),
        token_y=TokenInfo(USDC_MINT, decimals_y),
        bin_step=bin_step,
        active_bin=Bin(bin_id=active_bin_id, price=per_lamport),
    )


@pytest.fixture
def pool_state():
    """binStep=10, active bin 100, 2.0 USDC per SOL."""
    return make_pool_state()


def make_position(address=None, min_bin=90, max_bin=110, fee_x=0, fee_y=0, amount=1_000):
    return Position(
        address=address or str(Pubkey.new_unique()),
        pool_address=POOL_ADDRESS,
        bins=[PositionBin(b, amount, amount) for b in range(min_bin, max_bin + 1)],
        fee_x=fee_x,
        fee_y=fee_y,
    )


# ── Fakes ────────────────────────────────────────────────────────────

def make_unsigned_tx(payer: Pubkey = None) -> VersionedTransaction:
    """A real v0 transaction with placeholder signatures, as the bridge returns it."""
    payer = payer or Pubkey.new_unique()
    ix = transfer(TransferParams(from_pubkey=payer, to_pubkey=Pubkey.new_unique(), lamports=1))
    msg = MessageV0.try_compile(payer, [ix], [], Hash.default())
    return VersionedTransaction.populate(msg, [Signature.default()])


class FakeTx:
    """Stand-in for an unsigned transaction returned by the bridge."""

    def __init__(self, kind: str, **params):
        self.kind = kind
        self.params = params

    def __repr__(self):
        return f"FakeTx({self.kind})"


class FakeDlmm:
    """In-memory DLMM program for one pool. Applies txs when the wallet 'sends' them.

    Reads return copies, like fresh fetches from chain.
    """

    def __init__(self, pool_state: PoolState, remove_split: int = 1):
        self.pool_state = pool_state
        self.positions: Dict[str, Position] = {}
        self.remove_split = remove_split
        self.built: List[FakeTx] = []

    async def get_pool_state(self, pool_address):
        if pool_address != self.pool_state.address:
            raise PoolNotFoundError(pool_address)
        return self.pool_state

    async def get_positions_by_user_and_pair(self, owner, pool_address):
        return [copy.deepcopy(p) for p in self.positions.values() if p.pool_address == pool_address]

    async def get_all_positions_by_user(self, owner):
        grouped = {}
        for p in self.positions.values():
            grouped.setdefault(p.pool_address, []).append(copy.deepcopy(p))
        return grouped

    async def get_position(self, pool_address, position_address):
        return copy.deepcopy(self.positions.get(position_address))

    async def build_add_liquidity(self, pool_address, owner, position_address, total_x, total_y,
                                  min_bin_id, max_bin_id, strategy, initialize=False):
        tx = FakeTx('add', pool=pool_address, position=position_address, total_x=total_x,
                    total_y=total_y, min_bin_id=min_bin_id, max_bin_id=max_bin_id,
                    strategy=strategy, initialize=initialize)
        self.built.append(tx)
        return tx

    async def build_remove_liquidity(self, pool_address, owner, position_address, bin_ids,
                                     bps=10_000, should_claim_and_close=True):
        size = -(-len(bin_ids) // self.remove_split)
        chunks = [bin_ids[i:i + size] for i in range(0, len(bin_ids), size)]
        txs = []
        for i, chunk in enumerate(chunks):
            last = i == len(chunks) - 1
            txs.append(FakeTx('remove', pool=pool_address, position=position_address, bin_ids=chunk,
                              bps=bps, close=should_claim_and_close and last))
        self.built.extend(txs)
        return txs

    async def build_claim_fee(self, pool_address, owner, position_address):
        tx = FakeTx('claim', pool=pool_address, position=position_address)
        self.built.append(tx)
        return [tx]

    def apply(self, tx: FakeTx):
        p = tx.params
        if tx.kind == 'add':
            if p['initialize']:
                self.positions[p['position']] = Position(
                    address=p['position'], pool_address=p['pool'],
                    bins=[PositionBin(b) for b in range(p['min_bin_id'], p['max_bin_id'] + 1)],
                )
            pos = self.positions[p['position']]
            width = len(pos.bins)
            for b in pos.bins:
                b.x_amount += p['total_x'] // width
                b.y_amount += p['total_y'] // width
        elif tx.kind == 'remove':
            pos = self.positions[p['position']]
            for b in pos.bins:
                if b.bin_id in p['bin_ids']:
                    b.x_amount = b.y_amount = 0
            if p['close']:
                del self.positions[p['position']]
        elif tx.kind == 'claim':
            pos = self.positions[p['position']]
            pos.fee_x = pos.fee_y = 0


class FakeWallet:
    def __init__(self, dlmm: FakeDlmm = None, confirmation_err=None):
        self.keypair = _Keypair()
        self.dlmm = dlmm
        self.confirmation_err = confirmation_err
        self.connection = object()
        self.sent = []

    def get_public_key(self):
        return self.keypair.pubkey()

    def get_connection(self):
        return self.connection

    async def sign_and_send(self, connection, unsigned_tx, extra_signers=()):
        self.sent.append((unsigned_tx, list(extra_signers)))
        if self.dlmm is not None and self.confirmation_err is None:
            self.dlmm.apply(unsigned_tx)
        return f"sig{len(self.sent)}"

    async def wait_for_confirmation(self, connection, signature):
        return ConfirmationStatus(err=self.confirmation_err)


class FakeVerifier:
    """Canned verification results.

    `deposits` is consumed one entry per verified deposit; the last entry
    repeats. `removals` likewise for each withdrawal transaction.
    """

    def __init__(self, simulated=(1.5, 2.0), deposits=((1.5, 2.0),), removals=None):
        self.simulated = list(simulated)
        self.deposits = [list(d) for d in deposits]
        self.removals = list(removals or [BalanceChanges([1.0, 2.0], [0.01, 0.02])])
        self.simulate_calls = 0
        self.verify_calls = 0
        self.extract_calls = []

    async def simulate_add_liquidity_transaction(self, connection, unsigned_tx, wallet, mint_x, mint_y):
        self.simulate_calls += 1
        return list(self.simulated)

    async def verify_add_liquidity_token_amounts(self, connection, signature, mint_x, mint_y):
        result = self.deposits[min(self.verify_calls, len(self.deposits) - 1)]
        self.verify_calls += 1
        return list(result)

    async def extract_balance_changes(self, connection, signature, mint_x, mint_y):
        result = self.removals[min(len(self.extract_calls), len(self.removals) - 1)]
        self.extract_calls.append(signature)
        return result


@pytest.fixture
def fake_dlmm(pool_state):
    return FakeDlmm(pool_state)


@pytest.fixture
def fake_wallet(fake_dlmm):
    return FakeWallet(fake_dlmm)


@pytest.fixture
def fake_verifier():
    return FakeVerifier()


@pytest.fixture
def manager(fake_wallet, fake_dlmm, fake_verifier, test_config):
    from lpkit.trading.position_manager import LiquidityPositionManager
    return LiquidityPositionManager(
        fake_wallet, verifier=fake_verifier, bridge=fake_dlmm, config=test_config,
    )
