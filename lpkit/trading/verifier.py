"""
Transaction verification

Reads what a confirmed (or simulated) transaction actually moved for the
acting wallet, from the jsonParsed RPC view:

  - meta.preTokenBalances / meta.postTokenBalances give the net delta
    per mint for wallet-owned token accounts.
  - meta.logMessages name each top-level instruction
    ("Program log: Instruction: ClaimFee" after an "invoke [1]" line).
  - meta.innerInstructions hold the SPL transfers each top-level
    instruction performed.

Fee attribution: transfers into wallet accounts made by a claim-fee
instruction are fees; the rest of the net delta is liquidity. If the
remove and claim instructions pay out the same mint, this split relies
entirely on the claim instruction's own transfers.
"""
import base64
import re
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from lpkit.config import LpConfig
from lpkit.connection import SolanaConnection
from lpkit.errors import (
    MalformedTransactionError,
    SimulationFailedError,
    TransactionNotFoundError,
)
from lpkit.models import BalanceChanges
from lpkit.retry import retry_unless, with_retry


_INVOKE_RE = re.compile(r'^Program (\S+) invoke \[(\d+)\]$')
_EXIT_RE = re.compile(r'^Program (\S+) (success|failed)')
_INSTRUCTION_PREFIX = 'Program log: Instruction: '
_TRANSFER_TYPES = ('transfer', 'transferChecked')

CLAIM_FEE_MARKER = 'ClaimFee'


def instruction_names(log_messages: Iterable[str]) -> Dict[int, str]:
    """Map top-level instruction index -> Anchor instruction name from program logs."""
    names: Dict[int, str] = {}
    top = -1
    depth = 0
    for line in log_messages or []:
        m = _INVOKE_RE.match(line)
        if m:
            depth = int(m.group(2))
            if depth == 1:
                top += 1
            continue
        if _EXIT_RE.match(line):
            depth -= 1
            continue
        if depth == 1 and line.startswith(_INSTRUCTION_PREFIX) and top not in names:
            names[top] = line[len(_INSTRUCTION_PREFIX):].strip()
    return names


def _ui(amount: str, decimals: int) -> Decimal:
    return Decimal(amount) / (Decimal(10) ** int(decimals))


def _round(value: Decimal, decimals: int) -> float:
    return float(round(value, decimals))


class _ParsedTx:
    """Helpers over one jsonParsed transaction `meta` + account key list."""

    def __init__(self, meta: Dict, account_keys: List[str]):
        self.meta = meta
        self.account_keys = account_keys
        # token account -> (mint, decimals, owner)
        self.accounts: Dict[str, Tuple[str, int, Optional[str]]] = {}
        for entry in (meta.get('preTokenBalances') or []) + (meta.get('postTokenBalances') or []):
            idx = entry.get('accountIndex')
            if idx is None or idx >= len(account_keys):
                continue
            self.accounts[account_keys[idx]] = (
                entry['mint'], int(entry['uiTokenAmount']['decimals']), entry.get('owner'),
            )

    def wallet_accounts(self, owner: str, mints: Iterable[str]) -> Set[str]:
        """Token accounts owned by `owner`: from the balance snapshots plus derived ATAs."""
        found = {acct for acct, (_, _, acct_owner) in self.accounts.items() if acct_owner == owner}
        owner_key = Pubkey.from_string(owner)
        for mint in mints:
            mint_key = Pubkey.from_string(mint)
            for program in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
                found.add(str(get_associated_token_address(owner_key, mint_key, program)))
        return found

    def net_delta(self, owner: str, mint: str) -> Optional[Tuple[Decimal, int]]:
        """post - pre for owner's accounts of `mint`.

        None if the wallet has no snapshot entry for the mint, or if one of
        its accounts is missing from the post snapshot. A wrapped SOL
        account closed inside the transaction pays out as lamports, so its
        token balances no longer show what came in.
        """
        def total(entries):
            amount, decimals, indices = Decimal(0), 0, set()
            for e in entries or []:
                if e.get('owner') == owner and e.get('mint') == mint:
                    ui = e['uiTokenAmount']
                    decimals = int(ui['decimals'])
                    amount += _ui(ui['amount'], decimals)
                    indices.add(e.get('accountIndex'))
            return amount, decimals, indices

        pre, dec_pre, pre_accounts = total(self.meta.get('preTokenBalances'))
        post, dec_post, post_accounts = total(self.meta.get('postTokenBalances'))
        if not (pre_accounts or post_accounts) or pre_accounts - post_accounts:
            return None
        return post - pre, dec_post if post_accounts else dec_pre

    def transfers(self, groups: Optional[Set[int]] = None):
        """Yield (top_level_index, mint, decimals, ui_amount, info) for each parsed SPL transfer."""
        for group in self.meta.get('innerInstructions') or []:
            index = group.get('index')
            if groups is not None and index not in groups:
                continue
            for ix in group.get('instructions', []):
                parsed = ix.get('parsed')
                if not isinstance(parsed, dict) or parsed.get('type') not in _TRANSFER_TYPES:
                    continue
                info = parsed.get('info', {})
                if parsed['type'] == 'transferChecked':
                    mint = info.get('mint')
                    token_amount = info.get('tokenAmount', {})
                    decimals = int(token_amount.get('decimals', 0))
                    raw = token_amount.get('amount', '0')
                else:
                    known = self.accounts.get(info.get('destination')) or self.accounts.get(info.get('source'))
                    if not known:
                        continue
                    mint, decimals = known[0], known[1]
                    raw = info.get('amount', '0')
                yield index, mint, decimals, _ui(raw, decimals), info


class TransactionVerifier:
    """Extracts actual per-token movements for one wallet from transactions.

    `owner` is the acting wallet; if omitted the fee payer of each
    transaction is used.
    """

    def __init__(self, owner: Optional[str] = None, config: LpConfig = None):
        self.owner = owner
        self.config = config or LpConfig()

    async def _fetch(self, connection: SolanaConnection, signature: str) -> Tuple[_ParsedTx, str]:
        """Read a confirmed transaction, retrying RPC errors and not-yet-indexed results."""
        try:
            Signature.from_string(signature)
        except Exception:
            raise TransactionNotFoundError(signature)

        async def fetch():
            result = await connection.get_parsed_transaction(signature)
            if not result:
                # The node may not have indexed a just-confirmed transaction yet
                raise TransactionNotFoundError(signature)

            meta = result.get('meta')
            if not meta:
                raise MalformedTransactionError(f"Transaction {signature} has no status meta")
            if meta.get('preTokenBalances') is None or meta.get('postTokenBalances') is None:
                raise MalformedTransactionError(f"Transaction {signature} has no token balance snapshots")

            try:
                keys = result['transaction']['message']['accountKeys']
            except (KeyError, TypeError):
                raise MalformedTransactionError(f"Transaction {signature} has no account keys")
            account_keys = [k['pubkey'] if isinstance(k, dict) else k for k in keys]
            if not account_keys:
                raise MalformedTransactionError(f"Transaction {signature} has no account keys")
            return meta, account_keys

        meta, account_keys = await with_retry(
            fetch,
            'Get parsed transaction',
            max_attempts=self.config.READ_RETRY_ATTEMPTS,
            backoff=self.config.READ_RETRY_BACKOFF_SEC,
            should_retry=retry_unless(MalformedTransactionError),
        )
        return _ParsedTx(meta, account_keys), self.owner or account_keys[0]

    async def extract_balance_changes(
        self,
        connection: SolanaConnection,
        signature: str,
        mint_x: str,
        mint_y: str,
    ) -> BalanceChanges:
        """Split the wallet's X/Y inflow from a withdrawal into liquidity and fees (UI units)."""
        tx, owner = await self._fetch(connection, signature)
        mints = (mint_x, mint_y)
        wallet_accounts = tx.wallet_accounts(owner, mints)

        names = instruction_names(tx.meta.get('logMessages'))
        claim_groups = {i for i, name in names.items() if CLAIM_FEE_MARKER in name}

        inflow = {m: Decimal(0) for m in mints}
        fees = {m: Decimal(0) for m in mints}
        decimals = {}
        for index, mint, dec, amount, info in tx.transfers():
            if mint not in inflow or info.get('destination') not in wallet_accounts:
                continue
            if info.get('source') in wallet_accounts:
                continue
            decimals[mint] = dec
            inflow[mint] += amount
            if index in claim_groups:
                fees[mint] += amount

        liquidity, claimed = [], []
        for mint in mints:
            delta = tx.net_delta(owner, mint)
            if delta is None:
                # Wrapped SOL opened or closed inside the tx: only the transfers remain.
                total, dec = inflow[mint], decimals.get(mint, 9)
            else:
                total, dec = delta
            fee = min(fees[mint], max(total, Decimal(0)))
            liquidity.append(_round(max(total - fee, Decimal(0)), dec))
            claimed.append(_round(fee, dec))

        return BalanceChanges(liquidity_removed=liquidity, fees_claimed=claimed)

    async def verify_add_liquidity_token_amounts(
        self,
        connection: SolanaConnection,
        signature: str,
        mint_x: str,
        mint_y: str,
    ) -> List[float]:
        """Amounts of X and Y that actually left the wallet in a confirmed deposit."""
        tx, owner = await self._fetch(connection, signature)
        return _outflows(tx, owner, mint_x, mint_y)

    async def simulate_add_liquidity_transaction(
        self,
        connection: SolanaConnection,
        unsigned_tx: VersionedTransaction,
        wallet: str,
        mint_x: str,
        mint_y: str,
    ) -> List[float]:
        """Dry-run a deposit and return the predicted X and Y amounts it would move.

        Nothing is committed. Raises SimulationFailedError when the
        program would reject the transaction.
        """
        encoded = base64.b64encode(bytes(unsigned_tx)).decode()
        result = await connection.rpc('simulateTransaction', [
            encoded,
            {
                'encoding': 'base64',
                'sigVerify': False,
                'replaceRecentBlockhash': True,
                'innerInstructions': True,
                'commitment': connection.config.COMMITMENT,
            },
        ])
        value = (result or {}).get('value') or {}
        if value.get('err') is not None:
            logs = '\n'.join(value.get('logs') or [])
            raise SimulationFailedError(f"Simulation failed: {value['err']}\nLogs: {logs}")

        account_keys = [str(k) for k in unsigned_tx.message.account_keys]
        meta = {
            'innerInstructions': value.get('innerInstructions') or [],
            'preTokenBalances': [],
            'postTokenBalances': [],
        }
        return _outflows(_ParsedTx(meta, account_keys), wallet, mint_x, mint_y)


def _outflows(tx: _ParsedTx, owner: str, mint_x: str, mint_y: str) -> List[float]:
    """Sum of X/Y transfers signed by `owner` out of its own accounts."""
    wallet_accounts = tx.wallet_accounts(owner, (mint_x, mint_y))
    totals = {mint_x: Decimal(0), mint_y: Decimal(0)}
    decimals = {}
    for _, mint, dec, amount, info in tx.transfers():
        if mint not in totals:
            continue
        if info.get('authority') != owner and info.get('source') not in wallet_accounts:
            continue
        if info.get('destination') in wallet_accounts:
            continue
        totals[mint] += amount
        decimals[mint] = dec
    return [_round(totals[m], decimals.get(m, 9)) for m in (mint_x, mint_y)]
