# relaybridge/config.py
"""
Runtime configuration for the relay bridge.

Everything is read from environment variables (entry points call load_dotenv()
first so a local .env works). See Settings.from_env() for names and defaults.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from relaybridge.errors import ConfigError

DEFAULT_INDEX_PRIMARY_URL = "https://arweave-search.goldsky.com/graphql"
DEFAULT_INDEX_FALLBACK_URL = "https://arweave.net/graphql"
DEFAULT_GATEWAY_URL = "https://arweave.net"
DEFAULT_MU_URL = "https://mu.ao-testnet.xyz"
DEFAULT_PRICE_API_PATTERN = r"^https://GusHasTheBestPrices\.com/api/v69/price/(.+)$"
DEFAULT_PRICE_QUOTE_TOKEN_ID = "7zH9dlMNoxprab9loshv3Y7WG45DOny_Vrq9KrXObdQ"

MIB = 1024 * 1024
# longest UTF-8 sequence, so every chunk holds at least one whole character
MIN_CHUNK_BYTES = 4

REQUIRED_VARS = ("RELAY_PROCESS_ID", "COMPANION_PROCESS_ID", "WALLET_PATH")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _load_credentials() -> List[Tuple[str, str, str]]:
    """(integration, placeholder, secret) triples; missing halves stay empty."""
    names = os.getenv("CREDENTIAL_INTEGRATIONS", "BREVO,OPENWEATHER")
    creds: List[Tuple[str, str, str]] = []
    for name in names.split(","):
        name = name.strip().upper()
        if not name:
            continue
        placeholder = os.getenv(f"{name}_API_KEY_PLACEHOLDER", "")
        secret = os.getenv(f"{name}_API_KEY", "")
        creds.append((name, placeholder, secret))
    return creds


@dataclass(frozen=True)
class Settings:
    relay_process_id: str = ""
    companion_process_id: str = ""
    wallet_path: str = "~/.aos.json"

    poll_interval: float = 60.0
    max_index_failures: int = 3
    index_failure_cooldown: float = 120.0
    index_primary_url: str = DEFAULT_INDEX_PRIMARY_URL
    index_fallback_url: str = DEFAULT_INDEX_FALLBACK_URL
    index_timeout: float = 15.0
    index_page_size: int = 100

    gateway_url: str = DEFAULT_GATEWAY_URL
    mu_url: str = DEFAULT_MU_URL

    max_message_bytes: int = 9 * MIB
    chunk_bytes: int = 6 * MIB
    default_request_timeout_ms: int = 30000

    credentials: List[Tuple[str, str, str]] = field(default_factory=list)

    price_api_pattern: str = DEFAULT_PRICE_API_PATTERN
    price_bearer_token: str = ""
    price_quote_url: str = ""
    price_quote_token_id: str = DEFAULT_PRICE_QUOTE_TOKEN_ID
    price_quote_address: str = ""
    price_retry_limit: int = 10
    price_retry_delay: float = 2.0

    companion_retry_interval: float = 300.0
    database_url: str = "sqlite:///./relay_requests.db"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            relay_process_id=os.getenv("RELAY_PROCESS_ID", "").strip(),
            companion_process_id=os.getenv("COMPANION_PROCESS_ID", "").strip(),
            wallet_path=os.getenv("WALLET_PATH", "~/.aos.json").strip(),
            poll_interval=_float_env("POLL_INTERVAL_SECONDS", 60.0),
            max_index_failures=_int_env("MAX_INDEX_FAILURES", 3),
            index_failure_cooldown=_float_env("INDEX_FAILURE_COOLDOWN_SECONDS", 120.0),
            index_primary_url=os.getenv("INDEX_PRIMARY_URL", DEFAULT_INDEX_PRIMARY_URL),
            index_fallback_url=os.getenv("INDEX_FALLBACK_URL", DEFAULT_INDEX_FALLBACK_URL),
            index_timeout=_float_env("INDEX_TIMEOUT_SECONDS", 15.0),
            index_page_size=_int_env("INDEX_PAGE_SIZE", 100),
            gateway_url=os.getenv("GATEWAY_URL", DEFAULT_GATEWAY_URL),
            mu_url=os.getenv("MU_URL", DEFAULT_MU_URL),
            max_message_bytes=_int_env("MAX_MESSAGE_BYTES", 9 * MIB),
            chunk_bytes=_int_env("CHUNK_BYTES", 6 * MIB),
            default_request_timeout_ms=_int_env("DEFAULT_REQUEST_TIMEOUT_MS", 30000),
            credentials=_load_credentials(),
            price_api_pattern=os.getenv("PRICE_API_PATTERN", DEFAULT_PRICE_API_PATTERN),
            price_bearer_token=os.getenv("PRICE_BEARER_TOKEN", ""),
            price_quote_url=os.getenv("PRICE_QUOTE_URL", ""),
            price_quote_token_id=os.getenv("PRICE_QUOTE_TOKEN_ID", DEFAULT_PRICE_QUOTE_TOKEN_ID),
            price_quote_address=os.getenv("PRICE_QUOTE_ADDRESS", ""),
            price_retry_limit=_int_env("PRICE_RETRY_LIMIT", 10),
            price_retry_delay=_float_env("PRICE_RETRY_DELAY_SECONDS", 2.0),
            companion_retry_interval=_float_env("COMPANION_RETRY_SECONDS", 300.0),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./relay_requests.db"),
        )

    @property
    def expanded_wallet_path(self) -> str:
        return os.path.expanduser(self.wallet_path)

    def credential_map(self) -> Dict[str, Tuple[str, str]]:
        return {name: (placeholder, secret) for name, placeholder, secret in self.credentials}

    def validate(self) -> None:
        """Raise ConfigError listing every problem at once."""
        problems = []
        values = {
            "RELAY_PROCESS_ID": self.relay_process_id,
            "COMPANION_PROCESS_ID": self.companion_process_id,
            "WALLET_PATH": self.wallet_path,
        }
        for name in REQUIRED_VARS:
            if not values[name]:
                problems.append(f"missing {name}")
        if self.chunk_bytes >= self.max_message_bytes:
            problems.append("CHUNK_BYTES must be smaller than MAX_MESSAGE_BYTES")
        if self.chunk_bytes < MIN_CHUNK_BYTES:
            problems.append(f"CHUNK_BYTES must be at least {MIN_CHUNK_BYTES}")
        if self.max_index_failures < 1:
            problems.append("MAX_INDEX_FAILURES must be at least 1")
        if self.poll_interval <= 0:
            problems.append("POLL_INTERVAL_SECONDS must be positive")
        if problems:
            raise ConfigError("Invalid configuration: " + "; ".join(problems))
