"""Configuration management for the Aid Claims service"""

import os
import logging
from typing import Dict, Any, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    """Read an integer environment variable, falling back on bad values"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}={raw!r}, using default {default}")
        return default


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    # Production runs on PostgreSQL through asyncpg (postgresql+asyncpg://...)
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./aid_claims.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # On-chain settlement
    ONCHAIN_ENABLED = os.getenv("ONCHAIN_ENABLED", "false").lower() == "true"
    ONCHAIN_ADAPTER = os.getenv("ONCHAIN_ADAPTER", "mock").lower().strip() or "mock"
    ONCHAIN_ADAPTER_TIMEOUT_SECONDS = _float_env("ONCHAIN_ADAPTER_TIMEOUT_SECONDS", 30.0)
    SUPPORTED_ONCHAIN_ADAPTERS = ("mock", "soroban")

    # Background queues
    QUEUE_CONCURRENCY = _int_env("QUEUE_CONCURRENCY", 5)
    # Chain-affecting jobs share one signing account, so they run one at a time
    ONCHAIN_QUEUE_CONCURRENCY = _int_env("ONCHAIN_QUEUE_CONCURRENCY", 1)
    QUEUE_POLL_INTERVAL_SECONDS = _float_env("QUEUE_POLL_INTERVAL_SECONDS", 1.0)
    # A claimed job not finished or refreshed within this window is handed back
    QUEUE_LOCK_TIMEOUT_SECONDS = _int_env("QUEUE_LOCK_TIMEOUT_SECONDS", 300)
    QUEUE_LOCK_REFRESH_SECONDS = _int_env("QUEUE_LOCK_REFRESH_SECONDS", 60)

    # OTP verification flow
    VERIFICATION_OTP_LENGTH = _int_env("VERIFICATION_OTP_LENGTH", 6)
    VERIFICATION_OTP_TTL_MINUTES = _int_env("VERIFICATION_OTP_TTL_MINUTES", 10)
    VERIFICATION_MAX_STARTS_PER_IDENTIFIER_PER_HOUR = _int_env(
        "VERIFICATION_MAX_STARTS_PER_IDENTIFIER_PER_HOUR", 5
    )
    VERIFICATION_MAX_RESENDS_PER_SESSION = _int_env("VERIFICATION_MAX_RESENDS_PER_SESSION", 3)
    VERIFICATION_MAX_ATTEMPTS_PER_SESSION = _int_env("VERIFICATION_MAX_ATTEMPTS_PER_SESSION", 5)
    VERIFICATION_OTP_SECURE_RNG = os.getenv("VERIFICATION_OTP_SECURE_RNG", "true").lower() == "true"
    VERIFICATION_SWEEP_INTERVAL_SECONDS = _int_env("VERIFICATION_SWEEP_INTERVAL_SECONDS", 300)

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Aid Claims Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('://')[0]}")
        logger.info(f"   On-chain enabled: {Config.ONCHAIN_ENABLED} (adapter={Config.ONCHAIN_ADAPTER})")
        logger.info(
            f"   Queue concurrency: default={Config.QUEUE_CONCURRENCY}, "
            f"onchain={Config.ONCHAIN_QUEUE_CONCURRENCY}"
        )
        if not Config.VERIFICATION_OTP_SECURE_RNG:
            logger.warning("⚠️ OTP codes are generated with a non-cryptographic RNG")

    @staticmethod
    def validate() -> Dict[str, Any]:
        """
        Validate configuration values.

        Returns:
            Dict with ``issues`` (blocking) and ``warnings`` (informational)
        """
        issues: List[str] = []
        warnings: List[str] = []

        if Config.ONCHAIN_ADAPTER not in Config.SUPPORTED_ONCHAIN_ADAPTERS:
            issues.append(
                f"Unknown ONCHAIN_ADAPTER: {Config.ONCHAIN_ADAPTER}. "
                f"Supported values: {', '.join(Config.SUPPORTED_ONCHAIN_ADAPTERS)}"
            )
        if Config.ONCHAIN_ADAPTER_TIMEOUT_SECONDS <= 0:
            issues.append("ONCHAIN_ADAPTER_TIMEOUT_SECONDS must be positive")

        if not 4 <= Config.VERIFICATION_OTP_LENGTH <= 8:
            issues.append("VERIFICATION_OTP_LENGTH must be between 4 and 8")
        for name in (
            "VERIFICATION_OTP_TTL_MINUTES",
            "VERIFICATION_MAX_STARTS_PER_IDENTIFIER_PER_HOUR",
            "VERIFICATION_MAX_ATTEMPTS_PER_SESSION",
            "QUEUE_CONCURRENCY",
            "ONCHAIN_QUEUE_CONCURRENCY",
            "QUEUE_LOCK_TIMEOUT_SECONDS",
            "QUEUE_LOCK_REFRESH_SECONDS",
        ):
            if getattr(Config, name) < 1:
                issues.append(f"{name} must be at least 1")
        if Config.VERIFICATION_MAX_RESENDS_PER_SESSION < 0:
            issues.append("VERIFICATION_MAX_RESENDS_PER_SESSION cannot be negative")

        if Config.QUEUE_LOCK_REFRESH_SECONDS >= Config.QUEUE_LOCK_TIMEOUT_SECONDS:
            issues.append("QUEUE_LOCK_REFRESH_SECONDS must be less than QUEUE_LOCK_TIMEOUT_SECONDS")

        if Config.ONCHAIN_QUEUE_CONCURRENCY > 1:
            warnings.append(
                "ONCHAIN_QUEUE_CONCURRENCY > 1 allows parallel chain transactions "
                "from one account (nonce/ordering races)"
            )
        if Config.IS_PRODUCTION and Config.DATABASE_URL.startswith("sqlite"):
            warnings.append("SQLite database configured in production")
        if Config.IS_PRODUCTION and not Config.VERIFICATION_OTP_SECURE_RNG:
            warnings.append("VERIFICATION_OTP_SECURE_RNG=false in production")

        for issue in issues:
            logger.error(f"❌ CONFIG: {issue}")
        for warning in warnings:
            logger.warning(f"⚠️ CONFIG: {warning}")

        return {"issues": issues, "warnings": warnings}
