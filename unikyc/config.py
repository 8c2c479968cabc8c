"""
Configuration module for UniKYC.

Centralizes all configuration with environment variable support,
validation, and caching of file-backed settings.
"""

import json
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("UNIKYC_ENV", "dev")  # dev|stage|prod

# Persistence
DB_PATH = os.getenv("UNIKYC_DB_PATH", "data/unikyc.db")
RECORD_STORE_BACKEND = os.getenv("UNIKYC_RECORD_STORE", "sqlite")  # sqlite|memory

# Name service snapshot (label -> address, address -> [labels])
NAME_SNAPSHOT_PATH = os.getenv("UNIKYC_NAME_SNAPSHOT_PATH", "names/ens_snapshot.json")

# Content storage
STORAGE_BACKEND = os.getenv("UNIKYC_STORAGE_BACKEND", "memory")  # memory|gateway|s3
STORAGE_UPLOAD_URL = os.getenv("UNIKYC_STORAGE_UPLOAD_URL", "")
STORAGE_GATEWAY_TEMPLATE = os.getenv(
    "UNIKYC_STORAGE_GATEWAY_TEMPLATE", "https://{cid}.ipfs.storacha.link/"
)
STORAGE_SPACE = os.getenv("STORACHA_SPACE", "unikyc-space")
STORAGE_TIMEOUT_SECONDS = float(os.getenv("UNIKYC_STORAGE_TIMEOUT", "10"))
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "unikyc/payloads/")

# Time-lock network
CHAIN = os.getenv("UNIKYC_CHAIN", "baseSepolia")
DEFAULT_GAS_BUDGET = int(os.getenv("UNIKYC_DEFAULT_GAS_BUDGET", "500000"))
REGISTRATION_RETRIES = int(os.getenv("UNIKYC_REGISTRATION_RETRIES", "1"))
BLOCKLOCK_NETWORK = os.getenv("UNIKYC_BLOCKLOCK_NETWORK", "relay")  # relay|simulated
BLOCKLOCK_RELAY_URL = os.getenv("UNIKYC_BLOCKLOCK_RELAY_URL", "")
# Base64 Ed25519 public key the network signs unlock conditions with (see `unikyc keygen`)
BLOCKLOCK_VERIFY_KEY = os.getenv("UNIKYC_BLOCKLOCK_VERIFY_KEY", "")
BLOCKLOCK_TIMEOUT_SECONDS = float(os.getenv("UNIKYC_BLOCKLOCK_TIMEOUT", "10"))

# KYC policy
KYC_VALIDITY_DAYS = int(os.getenv("UNIKYC_KYC_VALIDITY_DAYS", "365"))
DEFAULT_TOTAL_SHARES = int(os.getenv("UNIKYC_DEFAULT_TOTAL_SHARES", "5"))
DEFAULT_REQUIRED_SHARES = int(os.getenv("UNIKYC_DEFAULT_REQUIRED_SHARES", "3"))

# Sessions issued by /auth/login
SESSION_TTL_MINUTES = int(os.getenv("UNIKYC_SESSION_TTL_MINUTES", "60"))
# Comma-separated keys accepted in x-api-key on operator endpoints (approve/reject)
OPERATOR_API_KEYS = frozenset(
    k.strip() for k in os.getenv("UNIKYC_OPERATOR_API_KEYS", "").split(",") if k.strip()
)

# Rate limits (requests per minute)
SUBMIT_RPM = int(os.getenv("SUBMIT_RPM", "30"))
STATUS_RPM = int(os.getenv("STATUS_RPM", "240"))

# Logging
LOG_LEVEL = os.getenv("UNIKYC_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("UNIKYC_LOG_JSON", "1").lower() in ("1", "true", "yes")
LOG_FILE = os.getenv("UNIKYC_LOG_FILE") or None

# Cache TTL (seconds)
CONFIG_CACHE_TTL = int(os.getenv("CONFIG_CACHE_TTL", "60"))

RECORD_METADATA = {
    "version": "1.0.0",
    "schema": "kyc-v1",
    "tags": ["kyc", "verification"],
}


# ============================================================
# Chain Presets
# ============================================================

@dataclass(frozen=True)
class ChainConfig:
    """Network a time-lock request is registered on."""
    name: str
    chain_id: int
    rpc_url: str
    blocklock_sender: str
    block_time_seconds: int


CHAINS: Dict[str, ChainConfig] = {
    "baseSepolia": ChainConfig(
        name="baseSepolia",
        chain_id=84532,
        rpc_url="https://sepolia.base.org",
        blocklock_sender="0x82Fed730CbdeC5A2D8724F2e3b316a70A565e27e",
        block_time_seconds=2,
    ),
    "filecoinCalibration": ChainConfig(
        name="filecoinCalibration",
        chain_id=314159,
        rpc_url="https://api.calibration.node.glif.io/rpc/v1",
        blocklock_sender="0xF00aB3B64c81b6Ce51f8220EB2bFaa2D469cf702",
        block_time_seconds=30,
    ),
    "polygon": ChainConfig(
        name="polygon",
        chain_id=137,
        rpc_url="https://polygon-rpc.com",
        blocklock_sender="0x82Fed730CbdeC5A2D8724F2e3b316a70A565e27e",
        block_time_seconds=2,
    ),
}


def get_chain(name: Optional[str] = None) -> ChainConfig:
    """Look up a chain preset by name (default: UNIKYC_CHAIN)."""
    key = name or CHAIN
    try:
        return CHAINS[key]
    except KeyError:
        raise ValueError(f"Unknown chain '{key}': must be one of {sorted(CHAINS)}")


# ============================================================
# Cached Configuration Loaders
# ============================================================

class CachedConfig:
    """
    Thread-safe cached configuration loader.
    Reloads configuration files periodically based on TTL.
    """

    def __init__(self, ttl_seconds: int = 60):
        self._cache: Dict[str, Any] = {}
        self._timestamps: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._ttl = ttl_seconds

    def _is_stale(self, key: str) -> bool:
        if key not in self._timestamps:
            return True
        return (time.monotonic() - self._timestamps[key]) > self._ttl

    def get_json(self, path: str, force_reload: bool = False) -> Dict[str, Any]:
        """
        Load JSON file with caching.
        Returns cached version if within TTL, otherwise reloads.
        """
        with self._lock:
            if not force_reload and path in self._cache and not self._is_stale(path):
                return self._cache[path]

            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

            self._cache[path] = data
            self._timestamps[path] = time.monotonic()
            return data

    def invalidate(self, path: Optional[str] = None) -> None:
        """Invalidate cache for a specific path or all paths."""
        with self._lock:
            if path:
                self._cache.pop(path, None)
                self._timestamps.pop(path, None)
            else:
                self._cache.clear()
                self._timestamps.clear()


_config_cache = CachedConfig(ttl_seconds=CONFIG_CACHE_TTL)


def load_json_cached(path: str) -> Dict[str, Any]:
    """Load JSON file with caching."""
    return _config_cache.get_json(path)


def invalidate_config_cache(path: Optional[str] = None) -> None:
    _config_cache.invalidate(path)


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Check that the configured settings are usable.
    Returns dict of check name -> ok.
    """
    checks = {
        "chain": CHAIN in CHAINS,
        "name_snapshot": Path(NAME_SNAPSHOT_PATH).exists(),
        "default_scheme": 2 <= DEFAULT_REQUIRED_SHARES <= DEFAULT_TOTAL_SHARES,
        "gas_budget": DEFAULT_GAS_BUDGET > 0,
        "blocklock_network": BLOCKLOCK_NETWORK in ("relay", "simulated"),
        "operator_api_keys": bool(OPERATOR_API_KEYS),
    }
    if BLOCKLOCK_NETWORK == "relay":
        checks["blocklock_relay_url"] = bool(BLOCKLOCK_RELAY_URL)
        checks["blocklock_verify_key"] = bool(BLOCKLOCK_VERIFY_KEY)
    if BLOCKLOCK_NETWORK == "simulated":
        checks["blocklock_not_simulated_in_prod"] = not is_production()
    if STORAGE_BACKEND == "gateway":
        checks["storage_upload_url"] = bool(STORAGE_UPLOAD_URL)
    if STORAGE_BACKEND == "s3":
        checks["s3_bucket"] = bool(S3_BUCKET)
    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("UNIKYC_DEBUG", "").lower() in ("1", "true", "yes")
