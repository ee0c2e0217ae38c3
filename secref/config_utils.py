#!/usr/bin/env python3
"""
Configuration utilities for identifier resolution and filing sync.

This module provides centralized configuration loading and environment
management functions used across the clients, the cache and the sync jobs.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv
from loguru import logger

from secref.constants import (
    ALL_SOURCES,
    DEFAULT_USER_AGENT,
    OPENFIGI_BATCH_SIZE,
    OPENFIGI_CONCURRENCY,
    OPENFIGI_RATE_LIMIT_NO_KEY,
    OPENFIGI_RATE_LIMIT_WITH_KEY,
)


def load_environment_config(environment: Optional[str] = None) -> None:
    """
    Load environment-specific configuration files.

    Args:
        environment: Specific environment to load ('dev', 'prod'),
                    or None to use ENVIRONMENT variable
    """
    if environment is None:
        environment = os.getenv("ENVIRONMENT", "")

    if environment in ["dev", "prod"]:
        env_file = f".env.{environment}"
        if os.path.exists(env_file):
            load_dotenv(env_file, override=True)
            logger.info(f"Loaded environment config: {env_file}")
        else:
            logger.warning(f"Environment config file not found: {env_file}")
    else:
        load_dotenv()
        if environment:
            logger.warning(f"Unknown environment '{environment}', loaded default .env")


def get_database_url_from_env() -> Optional[str]:
    """
    Get database URL from environment variables.

    Environment variable priority:
    1. SUPABASE_DATABASE_URL
    2. DATABASE_URL

    Returns:
        Database URL string, or None when neither variable is set
    """
    database_url = os.getenv("SUPABASE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not database_url:
        return None

    # SQLAlchemy 2.x only accepts the postgresql:// scheme
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
        logger.debug("Converted postgres:// to postgresql:// for SQLAlchemy 2.x compatibility")

    return database_url


def get_openfigi_api_key() -> Optional[str]:
    """Get OpenFIGI API key from environment variables."""
    return os.getenv("OPENFIGI_API_KEY") or None


def get_sec_user_agent() -> str:
    """Get SEC-compliant User-Agent string from environment or use default."""
    return os.getenv("SEC_USER_AGENT", DEFAULT_USER_AGENT)


def get_data_dir() -> str:
    """Directory holding the local cache, master and sync state files."""
    return os.getenv("SEC_DATA_DIR", "data")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}, using {default}")
        return default


@dataclass
class SecRefConfig:
    """Runtime configuration for the mapping client and the sync orchestrator."""

    openfigi_api_key: Optional[str] = None
    openfigi_requests_per_minute: int = OPENFIGI_RATE_LIMIT_NO_KEY
    mapping_batch_size: int = OPENFIGI_BATCH_SIZE
    mapping_concurrency: int = OPENFIGI_CONCURRENCY
    http_timeout: float = 30.0
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 60.0
    backoff_jitter: float = 0.2
    rate_limit_max_wait: Optional[float] = None

    sec_user_agent: str = DEFAULT_USER_AGENT
    sec_requests_per_second: int = 10

    sync_batch_size: int = 100
    bootstrap_lookback_days: int = 7
    retention_years: int = 3
    rss_count: int = 100
    sources: List[str] = field(default_factory=lambda: list(ALL_SOURCES))

    data_dir: str = "data"
    database_url: Optional[str] = None

    @property
    def mapping_cache_path(self) -> str:
        return os.path.join(self.data_dir, "cusip_mapping_cache.json")

    @property
    def securities_master_path(self) -> str:
        return os.path.join(self.data_dir, "securities_master.json")

    @property
    def sync_state_path(self) -> str:
        return os.path.join(self.data_dir, "sync_state.json")

    @classmethod
    def from_env(cls, environment: Optional[str] = None) -> "SecRefConfig":
        """Build a config from .env files and process environment."""
        load_environment_config(environment)

        api_key = get_openfigi_api_key()
        default_rpm = OPENFIGI_RATE_LIMIT_WITH_KEY if api_key else OPENFIGI_RATE_LIMIT_NO_KEY

        return cls(
            openfigi_api_key=api_key,
            openfigi_requests_per_minute=_env_int("OPENFIGI_REQUESTS_PER_MINUTE", default_rpm),
            mapping_batch_size=_env_int("OPENFIGI_BATCH_SIZE", OPENFIGI_BATCH_SIZE),
            mapping_concurrency=_env_int("OPENFIGI_CONCURRENCY", OPENFIGI_CONCURRENCY),
            http_timeout=float(_env_int("HTTP_TIMEOUT_SECONDS", 30)),
            sec_user_agent=get_sec_user_agent(),
            sync_batch_size=_env_int("SYNC_BATCH_SIZE", 100),
            bootstrap_lookback_days=_env_int("SYNC_LOOKBACK_DAYS", 7),
            retention_years=_env_int("RETENTION_YEARS", 3),
            data_dir=get_data_dir(),
            database_url=get_database_url_from_env(),
        )
