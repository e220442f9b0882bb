"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      — committed static defaults
  2. ``config/local.toml``        — optional local overrides (gitignored)
  3. ``.env``                     — local secrets and env overrides (gitignored)
  4. Environment variables        — ``PERF_INGESTOR_*`` prefix

Entry point: ``load_config(config_path=None) -> AppConfig``

Secrets are never read from TOML.  The report service credentials come from
the environment (or ``.env``) via ``load_report_credentials()``, and pooled
API secrets come from ``<SERVICE>_API_KEYS`` via ``desired_secrets_from_env()``.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

from perf_ingestor.exceptions import ConfigurationError

# ── Sub-config models ─────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    """SQLite database connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/perf_ingestor.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/perf_ingestor.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class AuthConfig(BaseModel):
    """Refresh-token exchange settings for the report service."""

    model_config = ConfigDict(frozen=True)

    token_url: str = "https://api.amazon.com/auth/o2/token"
    safety_margin_seconds: int = 300
    timeout_seconds: float = 30.0

    @field_validator("safety_margin_seconds")
    @classmethod
    def validate_margin(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"safety_margin_seconds must be >= 0, got {v}.")
        return v


class ReportsConfig(BaseModel):
    """Report job submission and polling parameters."""

    model_config = ConfigDict(frozen=True)

    endpoint: str = "https://sellingpartnerapi-na.amazon.com"
    report_type: str = "GET_BRAND_ANALYTICS_SEARCH_QUERY_PERFORMANCE_REPORT"
    report_period: str = "WEEK"
    record_field: str = "dataByAsin"
    poll_interval_seconds: float = 30.0
    max_poll_attempts: int = 100
    request_timeout_seconds: float = 60.0
    max_request_retries: int = 3
    retry_backoff_seconds: float = 2.0

    @field_validator("poll_interval_seconds", "request_timeout_seconds")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Value must be > 0, got {v}.")
        return v

    @field_validator("max_poll_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_poll_attempts must be >= 1, got {v}.")
        return v

    @field_validator("max_request_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"max_request_retries must be >= 0, got {v}.")
        return v


class BatchConfig(BaseModel):
    """Batch orchestration parameters."""

    model_config = ConfigDict(frozen=True)

    chunk_size: int = 10
    inter_chunk_delay_seconds: float = 5.0
    activity_lookback_days: int = 7

    @field_validator("chunk_size", "activity_lookback_days")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be >= 1, got {v}.")
        return v

    @field_validator("inter_chunk_delay_seconds")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"inter_chunk_delay_seconds must be >= 0, got {v}.")
        return v


class CredentialsConfig(BaseModel):
    """Rotating API credential pool settings."""

    model_config = ConfigDict(frozen=True)

    usage_limit: int = 10
    services: list[str] = ["gemini"]

    @field_validator("usage_limit")
    @classmethod
    def validate_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"usage_limit must be >= 1, got {v}.")
        return v


class AppConfig(BaseModel):
    """Complete application configuration — the single source of truth.

    All CLI commands receive an ``AppConfig`` instance.
    It is constructed by ``load_config()`` which merges TOML + .env.
    """

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    logging: LoggingConfig = LoggingConfig()
    auth: AuthConfig = AuthConfig()
    reports: ReportsConfig = ReportsConfig()
    batch: BatchConfig = BatchConfig()
    credentials: CredentialsConfig = CredentialsConfig()
    debug: bool = False


class ReportCredentials(BaseModel):
    """Secrets for the report service, read from the environment."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: str
    refresh_token: str
    marketplace_id: str

    def __repr__(self) -> str:
        return f"ReportCredentials(client_id={self.client_id!r}, marketplace_id={self.marketplace_id!r})"

    __str__ = __repr__


# Env var name → ReportCredentials field
REPORT_CREDENTIAL_ENV_VARS: dict[str, str] = {
    "SP_API_CLIENT_ID": "client_id",
    "SP_API_CLIENT_SECRET": "client_secret",
    "SP_API_REFRESH_TOKEN": "refresh_token",
    "SP_API_MARKETPLACE_ID": "marketplace_id",
}


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        pydantic.ValidationError: If merged config values fail validation.
    """
    root = _find_project_root()

    # 1. Load .env file (silently skip if missing)
    load_dotenv(dotenv_path=root / ".env", override=False)

    # 2. Load TOML config
    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    # 3. Apply PERF_INGESTOR_* environment variable overrides
    raw = _apply_env_overrides(raw)

    # 4. Build and validate AppConfig
    return _build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply PERF_INGESTOR_* env vars to the raw config dict.

    Supported overrides:
      PERF_INGESTOR_DB_PATH     → raw["database"]["db_path"]
      PERF_INGESTOR_LOG_LEVEL   → raw["logging"]["level"]
      PERF_INGESTOR_CHUNK_SIZE  → raw["batch"]["chunk_size"]
      PERF_INGESTOR_DEBUG       → raw["debug"]
    """
    if db_path := os.environ.get("PERF_INGESTOR_DB_PATH"):
        raw.setdefault("database", {})["db_path"] = db_path

    if log_level := os.environ.get("PERF_INGESTOR_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    if chunk_size := os.environ.get("PERF_INGESTOR_CHUNK_SIZE"):
        raw.setdefault("batch", {})["chunk_size"] = chunk_size

    if debug := os.environ.get("PERF_INGESTOR_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    return raw


def _build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map raw TOML dict to ``AppConfig`` model structure."""
    project = raw.pop("project", {})

    return AppConfig(
        database=DatabaseConfig(**raw.get("database", {})),
        logging=LoggingConfig(**raw.get("logging", {})),
        auth=AuthConfig(**raw.get("auth", {})),
        reports=ReportsConfig(**raw.get("reports", {})),
        batch=BatchConfig(**raw.get("batch", {})),
        credentials=CredentialsConfig(**raw.get("credentials", {})),
        debug=raw.get("debug", project.get("debug", False)),
    )


# ── Secrets ───────────────────────────────────────────────────────────────────

def load_report_credentials(
    environ: Optional[dict[str, str]] = None,
) -> ReportCredentials:
    """Read the report service secrets from the environment.

    Args:
        environ: Mapping to read from. Defaults to ``os.environ``.

    Returns:
        A populated ``ReportCredentials``.

    Raises:
        ConfigurationError: If any required variable is missing or blank.
            The message lists every missing variable, not just the first.
    """
    env = os.environ if environ is None else environ
    values: dict[str, str] = {}
    missing: list[str] = []
    for var, field_name in REPORT_CREDENTIAL_ENV_VARS.items():
        value = (env.get(var) or "").strip()
        if not value:
            missing.append(var)
        else:
            values[field_name] = value

    if missing:
        raise ConfigurationError(
            "Missing report service credentials: "
            f"{', '.join(missing)}. Set them in the environment or .env."
        )
    return ReportCredentials(**values)


def secrets_env_var(service: str) -> str:
    """Return the env var holding desired secrets for ``service``."""
    return f"{service.upper()}_API_KEYS"


def desired_secrets_from_env(
    service: str,
    environ: Optional[dict[str, str]] = None,
) -> Optional[list[str]]:
    """Parse ``<SERVICE>_API_KEYS`` into an ordered, de-duplicated list.

    Returns:
        The list of secrets, or ``None`` when the variable is unset or holds
        no usable entries.
    """
    env = os.environ if environ is None else environ
    raw = env.get(secrets_env_var(service))
    if not raw:
        return None
    secrets: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part and part not in secrets:
            secrets.append(part)
    return secrets or None
