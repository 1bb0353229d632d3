"""
Configuration for the Meteora DLMM liquidity manager

Every client takes an LpConfig at construction time. Defaults are read
from the environment (and .env) when the instance is created, so two
managers in one process can run against different RPCs or bridges.
"""
import os
from dataclasses import dataclass, field
from dotenv import load_dotenv


load_dotenv()

# Project root directory (for resolving paths to bridge/, etc.)
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _env(name: str, default: str):
    return field(default_factory=lambda: os.getenv(name, default))


def _env_int(name: str, default: int):
    return field(default_factory=lambda: int(os.getenv(name, default)))


def _env_float(name: str, default: float):
    return field(default_factory=lambda: float(os.getenv(name, default)))


@dataclass
class LpConfig:
    # Solana RPC
    RPC_ENDPOINT: str = _env('SOLANA_RPC_URL', "https://api.mainnet-beta.solana.com")
    COMMITMENT: str = "confirmed"

    # Meteora indexer
    METEORA_API_URL: str = _env('METEORA_API_URL', "https://dlmm-api.meteora.ag")
    HTTP_TIMEOUT_SEC: float = 15.0
    POOL_LIST_LIMIT: int = 10

    # Read-path retries (indexer / RPC flakiness)
    READ_RETRY_ATTEMPTS: int = 3
    READ_RETRY_BACKOFF_SEC: float = 1.0

    # Deposits
    RANGE_INTERVAL: int = _env_int('METEORA_TOTAL_RANGE_INTERVAL', 10)  # bins each side of the active bin
    STRATEGY: str = "SpotImBalanced"
    MAX_ADD_ATTEMPTS: int = 3  # statistical-bug cleanup/retry budget
    EXISTING_POSITION_POLICY: str = "reuse"  # "reuse" or "refuse"

    # Withdrawals
    REMOVE_BPS: int = 10_000  # 100%

    # Confirmation
    CONFIRMATION_TIMEOUT_SEC: float = _env_float('CONFIRMATION_TIMEOUT_SEC', 120.0)
    CONFIRMATION_POLL_SEC: float = 2.0

    # Paths
    BRIDGE_SCRIPT: str = _env('DLMM_BRIDGE_SCRIPT', os.path.join(PROJECT_ROOT, 'bridge', 'dlmm_bridge.js'))
    BRIDGE_TIMEOUT_SEC: int = 60

    def __post_init__(self):
        if self.EXISTING_POSITION_POLICY not in ("reuse", "refuse"):
            raise ValueError(
                f"EXISTING_POSITION_POLICY must be 'reuse' or 'refuse', got {self.EXISTING_POSITION_POLICY!r}"
            )
        if self.MAX_ADD_ATTEMPTS < 1:
            raise ValueError("MAX_ADD_ATTEMPTS must be at least 1")
