"""
Wallet collaborator

The position manager only needs four things from a wallet: its public
key, an RPC connection, sign-and-send, and confirmation polling. Any
object with those methods works (see SolanaWallet). KeypairWallet is the
local-keypair implementation.

Signing for one account is serialized with an asyncio.Lock so concurrent
operations on the same wallet never race on blockhash/fee-payer state.
"""
import asyncio
import os
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

import base58
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from lpkit.config import LpConfig
from lpkit.connection import SolanaConnection
from lpkit.errors import ConfirmationTimeoutError, TransactionFailedError


@dataclass
class ConfirmationStatus:
    err: Optional[Any] = None
    confirmation_status: str = ""
    slot: int = 0


class SolanaWallet(Protocol):
    def get_public_key(self) -> Pubkey: ...

    def get_connection(self) -> SolanaConnection: ...

    async def sign_and_send(
        self,
        connection: SolanaConnection,
        unsigned_tx: VersionedTransaction,
        extra_signers: Sequence[Keypair] = (),
    ) -> str: ...

    async def wait_for_confirmation(self, connection: SolanaConnection, signature: str) -> ConfirmationStatus: ...


def load_keypair(private_key: str) -> Keypair:
    """Keypair from a base58 secret key or a JSON-style byte list ("[1,2,...]")."""
    try:
        if ',' in private_key:
            key_bytes = bytes([int(x.strip()) for x in private_key.strip('[]').split(',')])
        else:
            key_bytes = base58.b58decode(private_key)
        return Keypair.from_bytes(key_bytes)
    except Exception as e:
        raise ValueError(f"Failed to load wallet: {e}")


class KeypairWallet:
    """Signs with a local keypair loaded from WALLET_PRIVATE_KEY."""

    _CONFIRMED = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)

    def __init__(self, private_key: str = None, config: LpConfig = None, connection: SolanaConnection = None):
        self.config = config or LpConfig()
        private_key = private_key or os.getenv('WALLET_PRIVATE_KEY')
        if not private_key:
            raise ValueError("WALLET_PRIVATE_KEY not found in .env file!")
        self.keypair = load_keypair(private_key)
        self._connection = connection
        self._sign_lock = asyncio.Lock()
        print(f"✓ Wallet loaded: {self.keypair.pubkey()}")

    def get_public_key(self) -> Pubkey:
        return self.keypair.pubkey()

    def get_address(self) -> str:
        return str(self.keypair.pubkey())

    def get_connection(self) -> SolanaConnection:
        if self._connection is None:
            self._connection = SolanaConnection(self.config)
        return self._connection

    async def sign_and_send(
        self,
        connection: SolanaConnection,
        unsigned_tx: VersionedTransaction,
        extra_signers: Sequence[Keypair] = (),
    ) -> str:
        signers = [self.keypair] + [s for s in extra_signers if s.pubkey() != self.keypair.pubkey()]
        async with self._sign_lock:
            try:
                signed = VersionedTransaction(unsigned_tx.message, signers)
            except Exception as e:
                raise TransactionFailedError(f"Could not sign transaction: {e}")
            try:
                resp = await connection.client.send_raw_transaction(
                    bytes(signed),
                    opts=TxOpts(skip_preflight=False, preflight_commitment=connection.commitment),
                )
            except RPCException as e:
                raise TransactionFailedError(f"Transaction rejected: {e}", chain_error=e.args[0] if e.args else None)
        return str(resp.value)

    async def wait_for_confirmation(
        self,
        connection: SolanaConnection,
        signature: str,
        timeout: float = None,
    ) -> ConfirmationStatus:
        """Poll signature status until confirmed/finalized or timeout.

        A status carrying an error is returned as-is; deciding what a
        failed transaction means is the caller's job.
        """
        timeout = timeout if timeout is not None else self.config.CONFIRMATION_TIMEOUT_SEC
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        sig = Signature.from_string(signature)

        while loop.time() < deadline:
            resp = await connection.client.get_signature_statuses([sig], search_transaction_history=True)
            status = resp.value[0] if resp.value else None
            if status is not None:
                if status.err is not None:
                    return ConfirmationStatus(err=status.err, slot=status.slot)
                if status.confirmation_status in self._CONFIRMED:
                    return ConfirmationStatus(
                        confirmation_status=str(status.confirmation_status),
                        slot=status.slot,
                    )
            await asyncio.sleep(self.config.CONFIRMATION_POLL_SEC)

        raise ConfirmationTimeoutError(signature, timeout)
