from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

ArkNetwork = Literal["mainnet", "testnet", "signet", "regtest"]

# Per-network constants:
# - segwit_hrp: bech32 prefix of on-chain addresses
# - bitcoinlib: python-bitcoinlib chain params (signet shares testnet's
#   address and WIF prefixes)
# - ark_hrp: prefix of off-chain (Ark) addresses
# - esplora_url: default indexer base URL
NETWORK_PARAMS: dict[str, dict[str, str]] = {
    "mainnet": {
        "segwit_hrp": "bc",
        "bitcoinlib": "mainnet",
        "ark_hrp": "ark",
        "esplora_url": "https://mempool.space/api",
    },
    "testnet": {
        "segwit_hrp": "tb",
        "bitcoinlib": "testnet",
        "ark_hrp": "tark",
        "esplora_url": "https://mempool.space/testnet/api",
    },
    "signet": {
        "segwit_hrp": "tb",
        "bitcoinlib": "testnet",
        "ark_hrp": "tark",
        "esplora_url": "https://mempool.space/signet/api",
    },
    "regtest": {
        "segwit_hrp": "bcrt",
        "bitcoinlib": "regtest",
        "ark_hrp": "tark",
        "esplora_url": "http://localhost:3000",
    },
}


class ArkWalletConfigError(Exception):
    """Configuration or key-material error for the Ark wallet."""

    pass


@dataclass
class ArkWalletConfig:
    """
    Configuration for the Ark wallet core.

    Values are sourced from environment variables or a .env file.

    Network and services:
    - ARK_NETWORK: "mainnet", "testnet", "signet" or "regtest" (defaults to "testnet").
    - ARK_ESPLORA_URL: Esplora / mempool.space API base (defaults per network).
    - ARK_SERVER_URL: Ark settlement server REST base (defaults to http://localhost:7070).
    - ARK_SERVER_PUBKEY: optional x-only signer pubkey (hex). When unset it is
      fetched from the server's info endpoint on first off-chain derivation.
    - ARK_REMOTE_TIMEOUT_SECONDS: per-request timeout for both services.

    Storage and keys:
    - ARK_DATABASE_URL: SQLAlchemy URL (defaults to sqlite under ./data).
    - ARK_SEED_PASSWORD: password protecting wallet seeds at rest. Required.
    - ARK_KDF_ITERATIONS: PBKDF2 iterations for the seed cipher.

    Fees and background work:
    - ARK_MIN_RELAY_FEE_RATE: floor fee rate (sat/vB) used when the fee
      service is unreachable and as a lower bound otherwise.
    - ARK_FEE_CACHE_SECONDS: how long fetched fee rates are reused.
    - ARK_SYNC_INTERVAL_SECONDS: period of the background sync loop.
    - ARK_LOG_LEVEL: stdlib logging level name.
    """

    network: ArkNetwork
    database_url: str
    esplora_url: str
    ark_server_url: str
    seed_password: str
    ark_server_pubkey: str | None = None
    remote_timeout_seconds: float = 10.0
    min_relay_fee_rate: int = 1
    fee_cache_seconds: int = 60
    sync_interval_seconds: int = 60
    kdf_iterations: int = 200_000
    log_level: str = "INFO"

    @property
    def segwit_hrp(self) -> str:
        return NETWORK_PARAMS[self.network]["segwit_hrp"]

    @property
    def ark_hrp(self) -> str:
        return NETWORK_PARAMS[self.network]["ark_hrp"]

    @property
    def bitcoinlib_params(self) -> str:
        return NETWORK_PARAMS[self.network]["bitcoinlib"]

    @classmethod
    def from_env(cls) -> ArkWalletConfig:
        raw_network_env = os.getenv("ARK_NETWORK", "testnet")
        raw_network = raw_network_env.strip().lower()
        if raw_network not in NETWORK_PARAMS:
            raise ArkWalletConfigError(
                f"Invalid ARK_NETWORK={raw_network_env!r}. "
                f"Expected one of {', '.join(NETWORK_PARAMS)}."
            )
        network: ArkNetwork = raw_network  # type: ignore[assignment]

        seed_password = os.getenv("ARK_SEED_PASSWORD")
        if not seed_password:
            raise ArkWalletConfigError(
                "No seed password configured. Set ARK_SEED_PASSWORD in your "
                "environment or .env file."
            )

        database_url = os.getenv("ARK_DATABASE_URL")
        if not database_url:
            data_dir = PROJECT_ROOT / "data"
            data_dir.mkdir(parents=True, exist_ok=True)
            database_url = f"sqlite:///{data_dir / 'ark_wallet.db'}"

        esplora_url = os.getenv("ARK_ESPLORA_URL") or NETWORK_PARAMS[network]["esplora_url"]
        ark_server_url = os.getenv("ARK_SERVER_URL", "http://localhost:7070")

        server_pubkey = (os.getenv("ARK_SERVER_PUBKEY") or "").strip() or None
        if server_pubkey is not None:
            _check_xonly_hex(server_pubkey)

        return cls(
            network=network,
            database_url=database_url,
            esplora_url=esplora_url.rstrip("/"),
            ark_server_url=ark_server_url.rstrip("/"),
            seed_password=seed_password,
            ark_server_pubkey=server_pubkey,
            remote_timeout_seconds=_env_float("ARK_REMOTE_TIMEOUT_SECONDS", 10.0),
            min_relay_fee_rate=max(1, _env_int("ARK_MIN_RELAY_FEE_RATE", 1)),
            fee_cache_seconds=max(0, _env_int("ARK_FEE_CACHE_SECONDS", 60)),
            sync_interval_seconds=max(1, _env_int("ARK_SYNC_INTERVAL_SECONDS", 60)),
            kdf_iterations=max(1, _env_int("ARK_KDF_ITERATIONS", 200_000)),
            log_level=os.getenv("ARK_LOG_LEVEL", "INFO").upper(),
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ArkWalletConfigError(f"{name} must be an integer, got {raw!r}.") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ArkWalletConfigError(f"{name} must be a number, got {raw!r}.") from exc


def _check_xonly_hex(value: str) -> None:
    try:
        raw = bytes.fromhex(value)
    except ValueError as exc:
        raise ArkWalletConfigError("ARK_SERVER_PUBKEY must be hex.") from exc
    if len(raw) != 32:
        raise ArkWalletConfigError("ARK_SERVER_PUBKEY must be a 32-byte x-only key.")


def configure_logging(level: str = "INFO") -> None:
    # MCP stdio transport owns stdout, so logs go to stderr.
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
