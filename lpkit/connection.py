"""
Solana RPC connection handle

Wraps solana-py's AsyncClient for typed calls (send, signature status,
token balances) and adds a raw JSON-RPC call for the few methods whose
options solana-py does not expose (jsonParsed transactions, simulation
with inner instructions).
"""
import asyncio
import itertools
from typing import Any, Dict, List, Optional

import requests
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment

from lpkit.config import LpConfig


class RpcError(Exception):
    """JSON-RPC error object returned by the node."""

    def __init__(self, method: str, error: Dict):
        super().__init__(f"RPC {method} error {error.get('code')}: {error.get('message')}")
        self.method = method
        self.error = error


class SolanaConnection:
    """One RPC endpoint. Created explicitly and passed to every client that needs it."""

    def __init__(self, config: LpConfig = None, rpc_url: str = None):
        self.config = config or LpConfig()
        self.rpc_url = rpc_url or self.config.RPC_ENDPOINT
        self.commitment = Commitment(self.config.COMMITMENT)
        self.client = AsyncClient(self.rpc_url, commitment=self.commitment)
        self._session = requests.Session()
        self._ids = itertools.count(1)

    async def rpc(self, method: str, params: List[Any]) -> Optional[Any]:
        """Raw JSON-RPC call. Returns the `result` field; raises RpcError on an error object."""
        body = {'jsonrpc': '2.0', 'id': next(self._ids), 'method': method, 'params': params}
        response = await asyncio.to_thread(
            self._session.post, self.rpc_url, json=body, timeout=self.config.HTTP_TIMEOUT_SEC,
        )
        response.raise_for_status()
        data = response.json()
        if data.get('error'):
            raise RpcError(method, data['error'])
        return data.get('result')

    async def get_parsed_transaction(self, signature: str) -> Optional[Dict]:
        return await self.rpc('getTransaction', [
            signature,
            {
                'encoding': 'jsonParsed',
                'maxSupportedTransactionVersion': 0,
                'commitment': self.config.COMMITMENT,
            },
        ])

    async def close(self):
        await self.client.close()
        self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()
