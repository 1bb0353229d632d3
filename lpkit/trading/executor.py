"""
Meteora DLMM bridge

On-chain reads and instruction building go through a Node.js script
wrapping the @meteora-ag/dlmm SDK. The bridge never signs: it prints one
JSON line on stdout, and transactions come back base64-encoded and
unsigned. Signing and sending is the wallet's job.
"""
import asyncio
import base64
import json
import os
import subprocess
from typing import Dict, List, Optional

from solders.transaction import VersionedTransaction

from lpkit.config import LpConfig
from lpkit.errors import BridgeError, PoolNotFoundError
from lpkit.models import LiquidityStrategy, PoolState, Position


class DlmmBridge:
    """Reads DLMM pool/position state and builds unsigned transactions."""

    def __init__(self, config: LpConfig = None):
        self.config = config or LpConfig()

    # ── Bridge helpers ────────────────────────────────────────────────

    def _run(self, args, timeout):
        return subprocess.run(
            ['node', self.config.BRIDGE_SCRIPT, *args],
            capture_output=True, text=True, timeout=timeout,
            env={**os.environ, 'SOLANA_RPC_URL': self.config.RPC_ENDPOINT},
        )

    async def _call_bridge(self, label: str, *args, timeout: int = None) -> Dict:
        """Call the Node.js bridge and return its parsed JSON response.

        Raises PoolNotFoundError when the bridge reports an unknown pool,
        BridgeError for anything else that is not a successful response.
        """
        timeout = timeout or self.config.BRIDGE_TIMEOUT_SEC
        try:
            proc = await asyncio.to_thread(self._run, [str(a) for a in args], timeout)
        except subprocess.TimeoutExpired:
            raise BridgeError(f"{label} timeout after {timeout}s")
        except OSError as e:
            raise BridgeError(f"{label} could not start bridge: {e}")

        resp = None
        if proc.stdout and proc.stdout.strip():
            try:
                resp = json.loads(proc.stdout.strip().split('\n')[-1])
            except json.JSONDecodeError:
                pass

        if resp and resp.get('code') == 'POOL_NOT_FOUND':
            raise PoolNotFoundError(resp.get('pool', args[1] if len(args) > 1 else '?'))
        if proc.returncode != 0 or not resp or not resp.get('success'):
            err = (resp.get('error', proc.stderr) if resp else proc.stderr) or 'No response'
            raise BridgeError(f"{label} failed: {err.strip()}")
        return resp

    @staticmethod
    def decode_transactions(resp: Dict) -> List[VersionedTransaction]:
        raw = resp.get('transactions') or []
        if not raw:
            raise BridgeError("Bridge returned no transactions")
        try:
            return [VersionedTransaction.from_bytes(base64.b64decode(tx)) for tx in raw]
        except Exception as e:
            raise BridgeError(f"Bridge returned an undecodable transaction: {e}")

    # ── Read-only queries ─────────────────────────────────────────────

    async def get_pool_state(self, pool_address: str) -> PoolState:
        resp = await self._call_bridge('Get pool', 'pool', pool_address, timeout=30)
        return PoolState.from_bridge(resp['pool'])

    async def get_positions_by_user_and_pair(self, owner: str, pool_address: str) -> List[Position]:
        resp = await self._call_bridge('Get positions', 'positions', owner, pool_address, timeout=30)
        return [Position.from_bridge(p, pool_address) for p in resp.get('positions', [])]

    async def get_all_positions_by_user(self, owner: str) -> Dict[str, List[Position]]:
        resp = await self._call_bridge('Get all positions', 'allpositions', owner, timeout=60)
        return {
            pool: [Position.from_bridge(p, pool) for p in positions]
            for pool, positions in resp.get('positions', {}).items()
        }

    async def get_position(self, pool_address: str, position_address: str) -> Optional[Position]:
        resp = await self._call_bridge('Get position', 'position', pool_address, position_address, timeout=30)
        data = resp.get('position')
        return Position.from_bridge(data, pool_address) if data else None

    # ── Transactions ─────────────────────────────────────────────────

    async def build_add_liquidity(
        self,
        pool_address: str,
        owner: str,
        position_address: str,
        total_x: int,
        total_y: int,
        min_bin_id: int,
        max_bin_id: int,
        strategy: LiquidityStrategy = LiquidityStrategy.SPOT_IMBALANCED,
        initialize: bool = False,
    ) -> VersionedTransaction:
        """Deposit by strategy; with initialize=True the position account is created in the same tx."""
        resp = await self._call_bridge(
            'Build add liquidity', 'add', pool_address, owner, position_address,
            total_x, total_y, min_bin_id, max_bin_id, LiquidityStrategy(strategy).value,
            1 if initialize else 0,
        )
        return self.decode_transactions(resp)[0]

    async def build_remove_liquidity(
        self,
        pool_address: str,
        owner: str,
        position_address: str,
        bin_ids: List[int],
        bps: int = 10_000,
        should_claim_and_close: bool = True,
    ) -> List[VersionedTransaction]:
        """Withdraw `bps` of every listed bin. May be split into several txs for wide positions."""
        resp = await self._call_bridge(
            'Build remove liquidity', 'remove', pool_address, owner, position_address,
            ','.join(str(b) for b in bin_ids), bps, 1 if should_claim_and_close else 0,
        )
        return self.decode_transactions(resp)

    async def build_claim_fee(self, pool_address: str, owner: str, position_address: str) -> List[VersionedTransaction]:
        resp = await self._call_bridge('Build claim fee', 'claimfee', pool_address, owner, position_address)
        return self.decode_transactions(resp)
