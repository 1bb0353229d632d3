"""
Meteora DLMM pool client

Two read sources:
  - the Meteora indexer API (https://dlmm-api.meteora.ag) for pool
    discovery and position metadata
  - the DLMM program, through the bridge, for active bins and positions

Every read is retried with a small fixed budget. Nothing is cached: bin
state changes every block.

Indexer endpoints used:
  GET /pair/all_with_pagination?search_term=A-B&limit=N   -> {pairs: [...]}
  GET /position_v2/{address}                              -> {address, pair_address, ...}
"""
import asyncio
from typing import Dict, List, Optional

import requests

from lpkit.config import LpConfig
from lpkit.errors import InvalidParametersError, NotFoundError, PoolNotFoundError
from lpkit.models import Bin, Pool, PoolState, Position
from lpkit.retry import retry_unless, with_retry
from lpkit.trading.executor import DlmmBridge


class MeteoraPoolClient:
    """Read-only queries against the Meteora indexer and the DLMM program."""

    def __init__(self, bridge: DlmmBridge = None, config: LpConfig = None):
        self.config = config or LpConfig()
        self.bridge = bridge or DlmmBridge(self.config)
        self._session = requests.Session()

    async def _retry(self, operation, label: str):
        # "not found" is an answer, not a transient failure
        return await with_retry(
            operation,
            label,
            max_attempts=self.config.READ_RETRY_ATTEMPTS,
            backoff=self.config.READ_RETRY_BACKOFF_SEC,
            should_retry=retry_unless(NotFoundError),
        )

    async def _get_json(self, path: str, params: Dict = None) -> Dict:
        url = f"{self.config.METEORA_API_URL}{path}"
        response = await asyncio.to_thread(
            self._session.get, url, params=params, timeout=self.config.HTTP_TIMEOUT_SEC,
        )
        response.raise_for_status()
        return response.json()

    # ── Indexer ───────────────────────────────────────────────────────

    async def list_pools(self, token_a: str, token_b: str, limit: int = None) -> List[Pool]:
        """Pools for an unordered token pair (symbols or mints), best matches first."""
        if not token_a or not token_b:
            raise InvalidParametersError("Asset A and Asset B are required for Meteora getPools")
        limit = limit or self.config.POOL_LIST_LIMIT

        data = await self._retry(
            lambda: self._get_json(
                '/pair/all_with_pagination',
                {'search_term': f"{token_a}-{token_b}", 'limit': limit},
            ),
            'Meteora getPools',
        )
        pairs = (data or {}).get('pairs') or []
        if not pairs:
            raise NotFoundError(f"No pool found for {token_a}-{token_b}")

        pools = [Pool.from_api(p) for p in pairs[:limit]]
        print(f"✓ Found {len(pools)} Meteora pool(s) for {token_a}-{token_b}")
        return pools

    async def get_position_info(self, position_address: str) -> Dict:
        """Indexer metadata for one position (pair address, owner, totals)."""
        async def fetch():
            try:
                return await self._get_json(f'/position_v2/{position_address}')
            except requests.HTTPError as e:
                if e.response is not None and e.response.status_code == 404:
                    raise NotFoundError(f"Position not found: {position_address}")
                raise

        return await self._retry(fetch, 'Meteora getPositionInfo')

    # ── On-chain ──────────────────────────────────────────────────────

    async def get_pool_state(self, pool_address: str) -> PoolState:
        if not pool_address:
            raise PoolNotFoundError(pool_address)
        return await self._retry(lambda: self.bridge.get_pool_state(pool_address), 'Meteora create pool')

    async def get_active_bin(self, pool_address: str) -> Bin:
        state = await self.get_pool_state(pool_address)
        return state.active_bin

    async def get_user_positions(self, wallet_public_key: str, pool_address: Optional[str] = None) -> List[Position]:
        """Positions of a wallet in one pool, or across all pools when pool_address is None."""
        owner = str(wallet_public_key)
        if pool_address:
            return await self._retry(
                lambda: self.bridge.get_positions_by_user_and_pair(owner, pool_address),
                'Meteora get user positions',
            )
        by_pool = await self._retry(
            lambda: self.bridge.get_all_positions_by_user(owner),
            'Meteora getPositions',
        )
        return [pos for positions in by_pool.values() for pos in positions]

    async def get_position(self, pool_address: str, position_address: str) -> Optional[Position]:
        return await self._retry(
            lambda: self.bridge.get_position(pool_address, position_address),
            'Meteora get position',
        )
