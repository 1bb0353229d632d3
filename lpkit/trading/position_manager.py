"""
Liquidity Position Manager - add / remove / claim on Meteora DLMM pools

add_liquidity runs one deposit through an explicit state machine:

  Idle -> Sizing -> Building -> Simulating -> Submitting -> Confirming
       -> Verifying -> Done | BugDetected

  BugDetected -> Cleanup -> Sizing   (next attempt)
                         -> Failed   (attempts exhausted)

"BugDetected" is the statistical bug: the deposit confirms but the
verified on-chain movement of a requested side is zero. The position it
touched is withdrawn and closed before the next attempt, so a half-applied
deposit never survives as a success.

Two concurrent add_liquidity calls for the same wallet and pool may both
see "no position" and open two. Callers must keep a single writer per
wallet per pool.
"""
from typing import List, Optional, Set

from solders.keypair import Keypair

from lpkit.analysis.amounts import calculate_amounts
from lpkit.config import LpConfig
from lpkit.errors import (
    InvalidParametersError,
    LiquidityError,
    LiquidityOperationError,
    NoPositionFoundError,
    RetryBudgetExhaustedError,
    SimulationFailedError,
    StatisticalBugError,
    TransactionFailedError,
    ZeroLiquidityError,
)
from lpkit.meteora_client import MeteoraPoolClient
from lpkit.models import (
    TRANSITIONS,
    AddLiquidityResult,
    BalanceChanges,
    Bin,
    ClaimFeesResult,
    LiquidityState,
    LiquidityStrategy,
    Pool,
    Position,
    RetryState,
)
from lpkit.trading.executor import DlmmBridge
from lpkit.trading.verifier import TransactionVerifier


class LiquidityPositionManager:
    """Orchestrates deposits, withdrawals and fee claims for one wallet.

    The only state kept across calls is the set of position addresses this
    manager has opened and not yet removed (see get_portfolio).
    """

    def __init__(
        self,
        wallet,
        pool_client: MeteoraPoolClient = None,
        verifier: TransactionVerifier = None,
        bridge: DlmmBridge = None,
        config: LpConfig = None,
    ):
        self.config = config or LpConfig()
        self.wallet = wallet
        if bridge is None:
            bridge = pool_client.bridge if pool_client is not None else DlmmBridge(self.config)
        self.bridge = bridge
        self.pool_client = pool_client or MeteoraPoolClient(self.bridge, self.config)
        self.verifier = verifier or TransactionVerifier(str(wallet.get_public_key()), self.config)
        self.open_positions: Set[str] = set()

    # ── Read-only, exposed upward ─────────────────────────────────────

    async def get_pools(self, asset: str, asset_b: str, limit: int = None) -> List[Pool]:
        return await self.pool_client.list_pools(asset, asset_b, limit)

    async def get_positions(self, pool_address: Optional[str] = None) -> List[Position]:
        try:
            return await self.pool_client.get_user_positions(self.wallet.get_public_key(), pool_address)
        except LiquidityError:
            raise
        except Exception as e:
            print(f"✗ Meteora getPositions error: {e}")
            raise LiquidityOperationError(f"Meteora getPositions failed: {e}") from e

    async def get_active_bin(self, pool_address: str) -> Bin:
        if not pool_address:
            raise InvalidParametersError("Pool address is required for Meteora getActiveBin")
        return await self.pool_client.get_active_bin(pool_address)

    def get_portfolio(self) -> str:
        return 'Meteora open positions:\n' + '\n'.join(sorted(self.open_positions))

    # ── Shared submit path ────────────────────────────────────────────

    async def _submit(self, connection, tx, extra_signers=()) -> str:
        signature = await self.wallet.sign_and_send(connection, tx, list(extra_signers))
        confirmation = await self.wallet.wait_for_confirmation(connection, signature)
        if confirmation.err:
            raise TransactionFailedError(
                f"Transaction failed: {confirmation.err}", chain_error=confirmation.err, signature=signature,
            )
        return signature

    @staticmethod
    def _fail(retry: RetryState):
        if LiquidityState.FAILED in TRANSITIONS[retry.state]:
            retry.advance(LiquidityState.FAILED)

    # ── Add liquidity ─────────────────────────────────────────────────

    async def add_liquidity(
        self,
        pool_address: str,
        amount_x,
        amount_y,
        range_interval: int = None,
        strategy: LiquidityStrategy = None,
    ) -> AddLiquidityResult:
        """Deposit into the wallet's position in `pool_address`, opening one if needed.

        amount_x / amount_y are whole-token amounts; at most one may be
        "auto". An existing position keeps its bin range; a new one spans
        active_bin +/- range_interval.

        Raises RetryBudgetExhaustedError if every attempt hit the
        statistical bug.
        """
        print(f"Calling Meteora protocol to add liquidity to pool {pool_address} with {amount_x} and {amount_y}")
        retry = RetryState(max_attempts=self.config.MAX_ADD_ATTEMPTS)

        try:
            if amount_x is None or str(amount_x).strip() == '':
                raise InvalidParametersError('Amount for Asset A is required for Meteora liquidity provision')
            if amount_y is None or str(amount_y).strip() == '':
                raise InvalidParametersError('Amount for Asset B is required for Meteora liquidity provision')
            if not pool_address:
                raise InvalidParametersError('Pool address is required for Meteora liquidity provision')
            if range_interval is None:
                range_interval = self.config.RANGE_INTERVAL
            if isinstance(range_interval, bool) or not isinstance(range_interval, int) or range_interval < 0:
                raise InvalidParametersError(f"range_interval must be a non-negative integer, got {range_interval!r}")
            strategy = LiquidityStrategy(strategy or self.config.STRATEGY)

            while True:
                retry.attempt += 1
                try:
                    result = await self._add_liquidity_attempt(
                        retry, pool_address, amount_x, amount_y, range_interval, strategy,
                    )
                    return result
                except StatisticalBugError as e:
                    retry.last_error = e
                    retry.advance(LiquidityState.BUG_DETECTED)
                    print(f"⚠ Statistical bug on attempt {retry.attempt}/{retry.max_attempts}: {e}")
                    retry.advance(LiquidityState.CLEANUP)
                    await self._cleanup(pool_address, e.position_address)
                    if retry.exhausted:
                        retry.advance(LiquidityState.FAILED)
                        raise RetryBudgetExhaustedError(retry.attempt, e) from e

        except LiquidityError as e:
            self._fail(retry)
            print(f"✗ Meteora add liquidity error: {e}")
            raise
        except Exception as e:
            self._fail(retry)
            print(f"✗ Meteora add liquidity error: {e}")
            raise LiquidityOperationError(f"Meteora add liquidity failed: {e}") from e

    async def _add_liquidity_attempt(
        self,
        retry: RetryState,
        pool_address: str,
        amount_x,
        amount_y,
        range_interval: int,
        strategy: LiquidityStrategy,
    ) -> AddLiquidityResult:
        connection = self.wallet.get_connection()
        owner = str(self.wallet.get_public_key())

        # Sizing
        retry.advance(LiquidityState.SIZING)
        positions = await self.pool_client.get_user_positions(owner, pool_address)
        existing = positions[0] if positions else None
        if existing and self.config.EXISTING_POSITION_POLICY == "refuse":
            raise InvalidParametersError(
                f"Adding liquidity to existing position {existing.address} is not allowed"
            )

        pool = await self.pool_client.get_pool_state(pool_address)
        active_bin = pool.active_bin
        price = active_bin.price_per_token(pool.token_x.decimals, pool.token_y.decimals)
        total_x, total_y = calculate_amounts(amount_x, amount_y, price, pool)
        if total_x == 0 and total_y == 0:
            raise ZeroLiquidityError(f"Total liquidity trying to add to pool {pool_address} is 0")

        # Building
        retry.advance(LiquidityState.BUILDING)
        extra_signers = []
        if existing:
            position_address = existing.address
            min_bin_id, max_bin_id = existing.min_bin_id, existing.max_bin_id
            print(f"Adding liquidity to existing position {position_address} (bins {min_bin_id}..{max_bin_id})")
        else:
            new_position = Keypair()
            position_address = str(new_position.pubkey())
            extra_signers.append(new_position)
            min_bin_id = active_bin.bin_id - range_interval
            max_bin_id = active_bin.bin_id + range_interval
            print(f"Opening new position {position_address} (bins {min_bin_id}..{max_bin_id})")

        tx = await self.bridge.build_add_liquidity(
            pool_address, owner, position_address, total_x, total_y,
            min_bin_id, max_bin_id, strategy, initialize=existing is None,
        )

        # Simulating
        retry.advance(LiquidityState.SIMULATING)
        requested = (total_x, total_y)
        simulated = await self.verifier.simulate_add_liquidity_transaction(
            connection, tx, owner, pool.token_x.mint, pool.token_y.mint,
        )
        if any(sim == 0 for sim in simulated):
            raise SimulationFailedError(
                f"Simulated deposit into {pool_address} would move {list(simulated)} "
                f"for requested {list(requested)} base units"
            )

        # Submitting / Confirming
        retry.advance(LiquidityState.SUBMITTING)
        signature = await self.wallet.sign_and_send(connection, tx, extra_signers)
        retry.advance(LiquidityState.CONFIRMING)
        confirmation = await self.wallet.wait_for_confirmation(connection, signature)
        if confirmation.err:
            raise TransactionFailedError(
                f"Transaction failed: {confirmation.err}", chain_error=confirmation.err, signature=signature,
            )
        print(f"✓ Transaction successful: {signature}")

        # Verifying
        retry.advance(LiquidityState.VERIFYING)
        verified = await self.verifier.verify_add_liquidity_token_amounts(
            connection, signature, pool.token_x.mint, pool.token_y.mint,
        )
        if any(req > 0 and got == 0 for req, got in zip(requested, verified)):
            raise StatisticalBugError(position_address, requested, verified)

        retry.advance(LiquidityState.DONE)
        self.open_positions.add(position_address)
        print(f"✓ Added liquidity to {position_address}: X={verified[0]} Y={verified[1]}")
        return AddLiquidityResult(
            position_address=position_address,
            liquidity_added=(verified[0], verified[1]),
            signature=signature,
            attempts=retry.attempt,
        )

    async def _cleanup(self, pool_address: str, position_address: str):
        """Withdraw and close a half-filled position. Failures are logged, never raised."""
        print(f"⚠ Closing position {position_address} before retrying...")
        try:
            await self.remove_liquidity(
                pool_address, position_address=position_address, should_close_position=True,
            )
        except Exception as e:
            print(f"✗ Failed to close position {position_address}: {e}")

    # ── Remove liquidity ──────────────────────────────────────────────

    async def remove_liquidity(
        self,
        pool_address: str,
        position_address: Optional[str] = None,
        should_close_position: bool = True,
    ) -> BalanceChanges:
        """Withdraw 100% of a position, optionally closing it.

        Targets `position_address` if given, else the wallet's first
        position in the pool. Balance changes are summed across every
        transaction the withdrawal was split into.
        """
        try:
            if not pool_address:
                raise InvalidParametersError('Pool address is required for Meteora liquidity removal')
            if should_close_position is None:
                should_close_position = True

            connection = self.wallet.get_connection()
            owner = str(self.wallet.get_public_key())
            pool = await self.pool_client.get_pool_state(pool_address)

            if position_address:
                position = await self.pool_client.get_position(pool_address, position_address)
            else:
                positions = await self.pool_client.get_user_positions(owner, pool_address)
                # Only the first position; the manager assumes one per pool
                position = positions[0] if positions else None
            if position is None:
                raise NoPositionFoundError(pool_address)

            bin_ids = position.bin_ids or list(range(position.min_bin_id, position.max_bin_id + 1))
            txs = await self.bridge.build_remove_liquidity(
                pool_address, owner, position.address, bin_ids,
                bps=self.config.REMOVE_BPS, should_claim_and_close=should_close_position,
            )

            total = BalanceChanges()
            for tx in txs:
                signature = await self._submit(connection, tx)
                print(f"✓ Transaction successful: {signature}")
                total = total + await self.verifier.extract_balance_changes(
                    connection, signature, pool.token_x.mint, pool.token_y.mint,
                )

            self.open_positions.discard(position.address)
            print(f"✓ Removed liquidity from {position.address}: "
                  f"liquidity={total.liquidity_removed} fees={total.fees_claimed}")
            return total

        except LiquidityError as e:
            print(f"✗ Meteora remove liquidity error: {e}")
            raise
        except Exception as e:
            print(f"✗ Meteora remove liquidity error: {e}")
            raise LiquidityOperationError(f"Meteora remove liquidity failed: {e}") from e

    # ── Claim fees ────────────────────────────────────────────────────

    async def claim_fees(self, pool_address: str) -> ClaimFeesResult:
        """Claim swap fees of the wallet's position; returns the claimed base units (X, Y)."""
        try:
            if not pool_address:
                raise InvalidParametersError('Pool address is required for Meteora claim fees')

            connection = self.wallet.get_connection()
            owner = str(self.wallet.get_public_key())
            positions = await self.pool_client.get_user_positions(owner, pool_address)
            if not positions:
                raise NoPositionFoundError(pool_address)

            before = positions[0]
            txs = await self.bridge.build_claim_fee(pool_address, owner, before.address)
            signature = ""
            for tx in txs:
                signature = await self._submit(connection, tx)

            after = await self.pool_client.get_position(pool_address, before.address)
            fee_x_after = after.fee_x if after else 0
            fee_y_after = after.fee_y if after else 0
            claimed = (before.fee_x - fee_x_after, before.fee_y - fee_y_after)

            print(f"✓ Claimed fees from pool {pool_address}: X={claimed[0]} Y={claimed[1]} ({signature})")
            return ClaimFeesResult(signature=signature, fees_claimed=claimed)

        except LiquidityError as e:
            print(f"✗ Meteora claim fees error: {e}")
            raise
        except Exception as e:
            print(f"✗ Meteora claim fees error: {e}")
            raise LiquidityOperationError(f"Meteora claim fees failed: {e}") from e
