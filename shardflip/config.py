"""
Configuration management for ShardFlip.
Supports config.json with environment variable overrides.
All paths are resolved relative to the project root.
"""

import json
import os
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()

# Project root directory (parent of 'shardflip' folder)
PROJECT_ROOT = Path(__file__).parent.parent


def get_env(key: str, default: str = None) -> Optional[str]:
    """Get environment variable with optional default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes", "on")


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


# ==================== Configuration Models ====================

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = True
    name: str = "ShardFlip"


class SecurityConfig(BaseModel):
    secret_key: str = "CHANGE_THIS_IN_PRODUCTION_PLEASE"
    api_key: str = ""  # Required by the mirror ingestion endpoint
    token_max_age_seconds: int = 30 * 24 * 3600


class LedgerConfig(BaseModel):
    """Bounds and economics of the betting pool. Amounts are base units."""
    owner: str = "0xowner"
    min_bet: int = 10_000_000_000_000_000  # 0.01
    max_bet: int = 10_000_000_000_000_000_000  # 10
    payout_multiplier: int = 2
    initial_pool: int = 0
    recent_window: int = 50
    randomness: str = "secure"  # "secure" or "commit_reveal"
    persist: bool = True


class WalletConfig(BaseModel):
    starting_balance: int = 100_000_000_000_000_000_000  # 100


class MirrorConfig(BaseModel):
    enabled: bool = True
    cache_ttl_seconds: int = 30
    sync_interval_seconds: int = 60


class RateLimitConfig(BaseModel):
    enabled: bool = True
    game_requests: str = "10/minute"  # For flips
    api_requests: str = "50/minute"   # For general API calls


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    formatter: str = "color"


class PathsConfig(BaseModel):
    """All paths are relative to PROJECT_ROOT."""
    config_file: str = "config.json"
    database: str = "data/shardflip.db"
    mirror_database: str = "data/mirror.db"
    log_file: str = "data/app.log"

    def _resolve(self, value: str) -> Path:
        path = Path(value)
        return path if path.is_absolute() else PROJECT_ROOT / path

    def get_config_path(self) -> Path:
        return self._resolve(self.config_file)

    def get_db_path(self) -> Path:
        return self._resolve(self.database)

    def get_mirror_db_path(self) -> Path:
        return self._resolve(self.mirror_database)

    def get_log_path(self) -> Path:
        return self._resolve(self.log_file)


class AppConfig(BaseModel):
    """Main application configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    wallets: WalletConfig = Field(default_factory=WalletConfig)
    mirror: MirrorConfig = Field(default_factory=MirrorConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


# ==================== Configuration Loading ====================

def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """
    Load configuration from config.json with environment variable overrides.
    Environment variables take precedence over config.json values.
    """
    if config_path is None:
        config_path = PROJECT_ROOT / get_env("SHARDFLIP_CONFIG", "config.json")

    # Start with defaults
    data = {}

    # Load from config.json if it exists
    if config_path.exists():
        with open(config_path, "r") as f:
            data = json.load(f)

    # Apply environment variable overrides
    if get_env("SERVER_HOST"):
        data.setdefault("server", {})["host"] = get_env("SERVER_HOST")
    if get_env("SERVER_PORT"):
        data.setdefault("server", {})["port"] = get_env_int("SERVER_PORT", 8000)
    if get_env("DEBUG"):
        data.setdefault("server", {})["debug"] = get_env_bool("DEBUG")

    if get_env("SECRET_KEY"):
        data.setdefault("security", {})["secret_key"] = get_env("SECRET_KEY")
    if get_env("API_SECRET_KEY"):
        data.setdefault("security", {})["api_key"] = get_env("API_SECRET_KEY")

    if get_env("LEDGER_OWNER"):
        data.setdefault("ledger", {})["owner"] = get_env("LEDGER_OWNER")
    if get_env("LEDGER_MIN_BET"):
        data.setdefault("ledger", {})["min_bet"] = get_env_int("LEDGER_MIN_BET")
    if get_env("LEDGER_MAX_BET"):
        data.setdefault("ledger", {})["max_bet"] = get_env_int("LEDGER_MAX_BET")
    if get_env("LEDGER_PAYOUT_MULTIPLIER"):
        data.setdefault("ledger", {})["payout_multiplier"] = get_env_int(
            "LEDGER_PAYOUT_MULTIPLIER", 2
        )
    if get_env("LEDGER_RANDOMNESS"):
        data.setdefault("ledger", {})["randomness"] = get_env("LEDGER_RANDOMNESS")

    if get_env("DB_PATH"):
        data.setdefault("paths", {})["database"] = get_env("DB_PATH")
    if get_env("MIRROR_DB_PATH"):
        data.setdefault("paths", {})["mirror_database"] = get_env("MIRROR_DB_PATH")

    if get_env("LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = get_env("LOG_LEVEL")
    if get_env("LOG_TO_FILE"):
        data.setdefault("logging", {})["log_to_file"] = get_env_bool("LOG_TO_FILE")
    if get_env("LOG_FORMATTER"):
        data.setdefault("logging", {})["formatter"] = get_env("LOG_FORMATTER")

    if get_env("RATE_LIMIT_ENABLED"):
        data.setdefault("rate_limit", {})["enabled"] = get_env_bool("RATE_LIMIT_ENABLED", True)
    if get_env("RATE_LIMIT_GAME_REQUESTS"):
        data.setdefault("rate_limit", {})["game_requests"] = get_env("RATE_LIMIT_GAME_REQUESTS")
    if get_env("RATE_LIMIT_API_REQUESTS"):
        data.setdefault("rate_limit", {})["api_requests"] = get_env("RATE_LIMIT_API_REQUESTS")

    return AppConfig(**data)


def save_config(config: AppConfig, config_path: Optional[Path] = None):
    """Save configuration to config.json."""
    if config_path is None:
        config_path = config.paths.get_config_path()

    # Convert to dict, excluding paths (they're computed)
    data = config.model_dump(exclude={"paths"})

    with open(config_path, "w") as f:
        json.dump(data, f, indent=4)


# Global config instance
settings = load_config()
