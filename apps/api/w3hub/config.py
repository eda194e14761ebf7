"""Application configuration settings."""
import os
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Tuple

from pydantic_settings import BaseSettings

# Find the .env file; works whether CWD is workspace root or apps/api
_here = os.path.dirname(os.path.abspath(__file__))           # .../apps/api/w3hub
_api_env = os.path.join(_here, "..", ".env")                  # .../apps/api/.env
_root_env = os.path.join(_here, "..", "..", "..", ".env")      # .../.env
_env_file = _api_env if os.path.exists(_api_env) else (_root_env if os.path.exists(_root_env) else ".env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./w3hub.db"

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    cache_enabled: bool = True

    # Chain backends
    eth_rpc_url: str = ""  # Alchemy-compatible endpoint, registers "ethereum"
    evm_rpc_urls: Dict[str, str] = {}  # e.g. {"base": "https://base-mainnet.g.alchemy.com/v2/KEY"}
    evm_native_symbols: Dict[str, str] = {}  # e.g. {"polygon": "POL"}
    rpc_timeout_seconds: float = 15.0

    # Tracking engine
    poll_interval_seconds: float = 30.0
    max_backoff_seconds: float = 300.0
    degraded_after_failures: int = 3
    storage_retry_attempts: int = 3
    storage_retry_base_delay: float = 0.5
    shutdown_grace_seconds: float = 10.0
    balance_epsilon: Decimal = Decimal("0.000000001")
    history_lookback_hours: int = 24
    stream_poll_interval_seconds: float = 12.0

    # Query path
    stale_max_age_seconds: int = 0  # 0 = stored snapshots never expire

    # Addresses handed to the engine at startup: "ethereum:0xabc,base:0xdef"
    watch_addresses: str = ""

    # Application
    admin_api_key: str = ""
    debug: bool = False
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:8000"]
    api_v1_prefix: str = "/api/v1"
    project_name: str = "W3Hub Asset Tracker"

    # Notification Settings
    notification_enabled: bool = True

    # SMTP Configuration (Gmail, Outlook, etc.)
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    notification_from_email: str = "alerts@example.com"
    notification_to_emails: str = ""  # comma-separated recipients

    # Telegram Bot API
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    @property
    def has_email_credentials(self) -> bool:
        """Check if SMTP credentials and at least one recipient are configured."""
        return bool(self.smtp_host and self.smtp_user and self.smtp_password and self.notification_recipients)

    @property
    def clean_smtp_password(self) -> str:
        """Remove spaces from password (essential for Gmail App Passwords)."""
        return self.smtp_password.replace(" ", "") if self.smtp_password else ""

    @property
    def has_telegram_credentials(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    @property
    def notification_recipients(self) -> List[str]:
        """Parse notification_to_emails into a list."""
        if not self.notification_to_emails:
            return []
        return [e.strip() for e in self.notification_to_emails.split(",") if e.strip()]

    @property
    def watch_address_list(self) -> List[Tuple[str, str]]:
        """Parse watch_addresses into (chain, address) pairs, skipping malformed entries."""
        pairs: List[Tuple[str, str]] = []
        for entry in self.watch_addresses.split(","):
            chain, sep, address = entry.strip().partition(":")
            if sep and chain.strip() and address.strip():
                pairs.append((chain.strip().lower(), address.strip()))
        return pairs

    @property
    def chain_rpc_urls(self) -> Dict[str, str]:
        """All Ethereum-like chains to register, keyed by chain id."""
        urls = {k.lower(): v for k, v in self.evm_rpc_urls.items() if v}
        if self.eth_rpc_url:
            urls["ethereum"] = self.eth_rpc_url
        return urls

    class Config:
        env_file = _env_file
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
