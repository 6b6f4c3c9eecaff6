import os
import sys
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, ConfigDict, model_validator, field_validator


_ENV_LOADED = False

DEFAULT_SEARCH_PATH = 'ag_catalog, "$user", public'


def _load_env_file(path: str, allow_override: bool = False) -> None:
    """
    Minimal .env loader: loads KEY=VALUE pairs into os.environ.
    - Ignores empty lines and lines starting with '#'
    - Supports values wrapped in single or double quotes
    - By default, does not override existing environment variables
    """
    if not path or not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[len("export "):].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip()
                if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]
                if allow_override or key not in os.environ:
                    os.environ[key] = value
    except PermissionError as e:
        print(f"FATAL: Permission denied reading environment file {path}: {e}", file=sys.stderr)
        raise


def load_env_if_present(force_reload: bool = False) -> None:
    """
    Load environment variables from .env files in order of precedence:
    1. AGEBRIDGE_ENV_FILE (when set, the only file read)
    2. .env.local
    3. .env
    """
    global _ENV_LOADED
    if _ENV_LOADED and not force_reload:
        return

    custom = os.environ.get("AGEBRIDGE_ENV_FILE")
    if custom:
        _load_env_file(custom, allow_override=False)
    else:
        for env_file in ('.env.local', '.env'):
            _load_env_file(env_file, allow_override=False)

    _ENV_LOADED = True


def _env(names, default=None) -> Optional[str]:
    for name in names:
        raw = os.getenv(name)
        if raw is not None and raw.strip():
            return raw.strip()
    return default


class RetryPolicy(BaseModel):
    """
    Exponential backoff with symmetric jitter used by pool acquisition.

    delay for attempt n = min(delay * factor^(n-1), max_delay), then
    jittered by +/- delay * jitter.
    """
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=100)
    delay: float = Field(default=1.0, ge=0, description="Base delay in seconds")
    max_delay: float = Field(default=5.0, ge=0, description="Upper bound of the un-jittered delay in seconds")
    factor: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)

    @model_validator(mode='after')
    def validate_bounds(self):
        if self.max_delay < self.delay:
            raise ValueError(f"max_delay ({self.max_delay}) must be >= delay ({self.delay})")
        return self


class PoolSettings(BaseModel):
    """
    Connection pool limits, passed through to psycopg_pool.AsyncConnectionPool.
    """
    model_config = ConfigDict(extra="forbid")

    min_size: int = Field(default=1, ge=0, le=100)
    max_size: int = Field(default=10, ge=1, le=1000)
    idle_timeout: float = Field(default=300.0, gt=0, description="Seconds before an idle connection is closed")
    acquire_timeout: float = Field(default=30.0, gt=0, description="Seconds to wait for a free connection")
    max_lifetime: float = Field(default=3600.0, gt=0)
    max_waiting: int = Field(default=0, ge=0, description="0 means unbounded queue")

    @field_validator('max_size')
    @classmethod
    def validate_max_size_vs_min(cls, v, info):
        min_size = info.data.get('min_size')
        if min_size is not None and v < min_size:
            raise ValueError(f"max_size ({v}) must be >= min_size ({min_size})")
        return v


class BridgeConfig(BaseModel):
    """
    Connection settings for a PostgreSQL instance with Apache AGE.
    """
    model_config = ConfigDict(validate_assignment=True)

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    dbname: str = "postgres"
    user: str = "postgres"
    password: Optional[str] = Field(default=None, repr=False)
    sslmode: Optional[str] = None
    application_name: str = "agebridge"
    search_path: str = DEFAULT_SEARCH_PATH

    pool: PoolSettings = Field(default_factory=PoolSettings)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator('host', 'dbname', 'user', 'search_path', mode='before')
    def validate_not_empty_str(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Value cannot be empty or whitespace only")
        return v.strip()

    @property
    def conninfo(self) -> str:
        """libpq connection string"""
        parts = {
            "host": self.host,
            "port": str(self.port),
            "dbname": self.dbname,
            "user": self.user,
            "application_name": self.application_name,
        }
        if self.password:
            parts["password"] = self.password
        if self.sslmode:
            parts["sslmode"] = self.sslmode
        return " ".join(f"{key}={_quote_conninfo(value)}" for key, value in parts.items())

    def describe(self) -> Dict[str, Any]:
        """Safe-to-log summary without credentials."""
        return {
            "target": f"{self.user}@{self.host}:{self.port}/{self.dbname}",
            "pool_max": self.pool.max_size,
            "retry_attempts": self.retry.max_attempts,
            "search_path": self.search_path,
        }

    @classmethod
    def from_env(cls, prefix: str = "AGEBRIDGE_", load_dotenv: bool = True) -> "BridgeConfig":
        """
        Build configuration from environment variables.

        ``<prefix>HOST`` falls back to ``POSTGRES_HOST`` (same for PORT, DB,
        USER, PASSWORD). Pool and retry knobs use ``<prefix>POOL_*`` and
        ``<prefix>RETRY_*``.
        """
        if load_dotenv:
            load_env_if_present()

        values: Dict[str, Any] = {}
        mapping = {
            "host": (f"{prefix}HOST", "POSTGRES_HOST"),
            "port": (f"{prefix}PORT", "POSTGRES_PORT"),
            "dbname": (f"{prefix}DB", "POSTGRES_DB"),
            "user": (f"{prefix}USER", "POSTGRES_USER"),
            "password": (f"{prefix}PASSWORD", "POSTGRES_PASSWORD"),
            "sslmode": (f"{prefix}SSLMODE", "PGSSLMODE"),
            "search_path": (f"{prefix}SEARCH_PATH",),
        }
        for field, names in mapping.items():
            raw = _env(names)
            if raw is not None:
                values[field] = raw

        pool_values = {}
        for field in PoolSettings.model_fields:
            raw = _env((f"{prefix}POOL_{field.upper()}",))
            if raw is not None:
                pool_values[field] = raw
        retry_values = {}
        for field in RetryPolicy.model_fields:
            raw = _env((f"{prefix}RETRY_{field.upper()}",))
            if raw is not None:
                retry_values[field] = raw

        values["pool"] = PoolSettings(**pool_values)
        values["retry"] = RetryPolicy(**retry_values)
        return cls(**values)


def _quote_conninfo(value: str) -> str:
    if value and all(ch not in value for ch in " '\\"):
        return value
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


__all__ = [
    "DEFAULT_SEARCH_PATH",
    "BridgeConfig",
    "PoolSettings",
    "RetryPolicy",
    "load_env_if_present",
]
