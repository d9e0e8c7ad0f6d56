"""Runtime configuration for the credits and generation services."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Mapping, Optional
import os


@dataclass(frozen=True)
class AppConfig:
    """Configuration resolved from environment variables."""

    ledger_backend: str
    db_config: Dict[str, object]
    kie_api_key: Optional[str]
    kie_base_url: str
    poll_interval_seconds: float
    poll_max_backoff_seconds: float
    max_poll_seconds: float
    submit_attempts: int
    storage_retry_attempts: int
    storage_retry_backoff: float
    polar_access_token: Optional[str]
    polar_api_url: str
    billing_webhook_secret: Optional[str]
    product_tiers: Dict[str, str] = field(default_factory=dict)
    unlimited_account_ids: FrozenSet[str] = frozenset()
    session_token_secret: Optional[str] = None
    session_token_algorithm: str = "HS256"


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_csv_set(value: Optional[str]) -> FrozenSet[str]:
    if not value:
        return frozenset()
    return frozenset(item.strip() for item in value.split(",") if item.strip())


def _to_mapping(value: Optional[str]) -> Dict[str, str]:
    """Parse ``key:value,key:value`` pairs."""

    mapping: Dict[str, str] = {}
    if not value:
        return mapping
    for item in value.split(","):
        if not item.strip():
            continue
        key, sep, mapped = item.partition(":")
        if not sep or not key.strip() or not mapped.strip():
            raise ValueError(f"Expected key:value pair, got {item!r}")
        mapping[key.strip()] = mapped.strip().lower()
    return mapping


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load :class:`AppConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    ledger_backend = (env_mapping.get("LEDGER_BACKEND") or "memory").strip().lower() or "memory"
    if ledger_backend not in {"memory", "postgres"}:
        raise ValueError(f"Unsupported LEDGER_BACKEND {ledger_backend!r}")

    db_config: Dict[str, object] = {
        "host": env_mapping.get("DB_HOST", "127.0.0.1"),
        "port": _to_int(env_mapping.get("DB_PORT"), default=5432),
        "database": env_mapping.get("DB_NAME", "fitcheck"),
        "user": env_mapping.get("DB_USER", "fitcheck"),
        "password": env_mapping.get("DB_PASSWORD", "fitcheck"),
        "timeout": max(0.0, _to_float(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5.0)),
    }

    return AppConfig(
        ledger_backend=ledger_backend,
        db_config=db_config,
        kie_api_key=env_mapping.get("KIE_API_KEY") or None,
        kie_base_url=(env_mapping.get("KIE_BASE_URL") or "https://api.kie.ai/api/v1").rstrip("/"),
        poll_interval_seconds=max(0.0, _to_float(env_mapping.get("GENERATION_POLL_INTERVAL"), default=3.0)),
        poll_max_backoff_seconds=max(
            0.0, _to_float(env_mapping.get("GENERATION_POLL_MAX_BACKOFF"), default=30.0)
        ),
        max_poll_seconds=max(1.0, _to_float(env_mapping.get("GENERATION_MAX_POLL_SECONDS"), default=360.0)),
        submit_attempts=max(1, _to_int(env_mapping.get("GENERATION_SUBMIT_ATTEMPTS"), default=3)),
        storage_retry_attempts=max(1, _to_int(env_mapping.get("STORAGE_RETRY_ATTEMPTS"), default=3)),
        storage_retry_backoff=max(0.0, _to_float(env_mapping.get("STORAGE_RETRY_BACKOFF"), default=0.2)),
        polar_access_token=env_mapping.get("POLAR_ACCESS_TOKEN") or None,
        polar_api_url=(env_mapping.get("POLAR_API_URL") or "https://api.polar.sh/v1").rstrip("/"),
        billing_webhook_secret=env_mapping.get("BILLING_WEBHOOK_SECRET") or None,
        product_tiers=_to_mapping(env_mapping.get("BILLING_PRODUCT_TIERS")),
        unlimited_account_ids=_to_csv_set(env_mapping.get("UNLIMITED_ACCOUNT_IDS")),
        session_token_secret=env_mapping.get("SESSION_TOKEN_SECRET") or None,
        session_token_algorithm=env_mapping.get("SESSION_TOKEN_ALGORITHM", "HS256"),
    )


def debug_enabled(env: Optional[Mapping[str, str]] = None) -> bool:
    env_mapping = os.environ if env is None else env
    return _to_bool(env_mapping.get("FITCHECK_DEBUG"), default=False)
