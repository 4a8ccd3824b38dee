"""
Replication Configuration Module

Builds the single, immutable configuration object shared by every component
of the replication engine. Values come from SYNC_* environment variables and
can be overridden per DAG run through Airflow params.
"""

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple
import logging
import os

logger = logging.getLogger(__name__)


DEFAULT_EXCLUDE_TABLES = (
    "migrations",
    "failed_jobs",
    "password_resets",
    "personal_access_tokens",
    "sync_audit_log",
    "sync_error_log",
)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(value: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def parse_memory_limit(value: Any) -> int:
    """
    Parse a memory limit such as '256M', '1G' or 512 into megabytes.

    Args:
        value: Limit as an int (megabytes) or a string with an optional K/M/G suffix

    Returns:
        Limit in megabytes
    """
    if isinstance(value, int):
        return value

    text = str(value).strip().upper()
    if not text:
        raise ValueError("Memory limit cannot be empty")

    multipliers = {"K": 1 / 1024, "M": 1, "G": 1024}
    suffix = text[-1]
    if suffix in multipliers:
        return int(float(text[:-1]) * multipliers[suffix])
    return int(text)


@dataclass(frozen=True)
class ReplicationConfig:
    """Immutable settings for one replication run."""

    source_conn_id: str = "mysql_source"
    target_conn_id: str = "postgres_target"
    # Falls back to the database stored on the Airflow connection when empty
    source_database: Optional[str] = None
    target_schema: str = "public"

    audit_table: str = "sync_audit_log"
    error_log_table: str = "sync_error_log"
    progress_table: str = "sync_progress"

    batch_size: int = 100
    backfill_batch_size: int = 1000
    sync_interval: int = 5
    max_attempts: int = 3

    cleanup_enabled: bool = True
    keep_days: int = 7

    include_tables: str = "*"
    exclude_tables: Tuple[str, ...] = DEFAULT_EXCLUDE_TABLES

    use_queue: bool = False
    memory_limit_mb: int = 256
    monitoring_enabled: bool = True

    @property
    def excluded_tables(self) -> FrozenSet[str]:
        """Configured exclusions plus the engine's own bookkeeping tables."""
        return frozenset(self.exclude_tables) | {
            self.audit_table,
            self.error_log_table,
            self.progress_table,
        }

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ReplicationConfig":
        """
        Build a configuration from SYNC_* environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            ReplicationConfig instance
        """
        env = os.environ if environ is None else environ
        kwargs: Dict[str, Any] = {}

        readers = {
            "SYNC_SOURCE_CONNECTION": ("source_conn_id", str),
            "SYNC_TARGET_CONNECTION": ("target_conn_id", str),
            "SYNC_SOURCE_DATABASE": ("source_database", str),
            "SYNC_TARGET_SCHEMA": ("target_schema", str),
            "SYNC_AUDIT_TABLE": ("audit_table", str),
            "SYNC_ERROR_LOG_TABLE": ("error_log_table", str),
            "SYNC_PROGRESS_TABLE": ("progress_table", str),
            "SYNC_BATCH_SIZE": ("batch_size", int),
            "SYNC_BACKFILL_BATCH_SIZE": ("backfill_batch_size", int),
            "SYNC_INTERVAL": ("sync_interval", int),
            "SYNC_RETRY_MAX": ("max_attempts", int),
            "SYNC_CLEANUP_ENABLED": ("cleanup_enabled", _env_bool),
            "SYNC_CLEANUP_KEEP_DAYS": ("keep_days", int),
            "SYNC_INCLUDE_TABLES": ("include_tables", str),
            "SYNC_EXCLUDE_TABLES": ("exclude_tables", _env_list),
            "SYNC_USE_QUEUE": ("use_queue", _env_bool),
            "SYNC_MEMORY_LIMIT": ("memory_limit_mb", parse_memory_limit),
            "SYNC_MONITORING_ENABLED": ("monitoring_enabled", _env_bool),
        }

        for env_name, (attr, parser) in readers.items():
            raw = env.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                kwargs[attr] = parser(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {env_name}: {raw!r} ({e})")

        config = cls(**kwargs)
        config.validate()
        return config

    def with_overrides(self, **overrides: Any) -> "ReplicationConfig":
        """
        Return a copy with the given fields replaced.

        Unknown keys and None values are ignored so DAG params can be passed
        through wholesale.
        """
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if k in known and v is not None}
        if "exclude_tables" in changes and not isinstance(changes["exclude_tables"], tuple):
            changes["exclude_tables"] = tuple(changes["exclude_tables"])
        config = replace(self, **changes)
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ValueError when a numeric setting is out of range."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.backfill_batch_size < 1:
            raise ValueError(
                f"backfill_batch_size must be positive, got {self.backfill_batch_size}"
            )
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.sync_interval < 0:
            raise ValueError(f"sync_interval cannot be negative, got {self.sync_interval}")
        if self.keep_days < 0:
            raise ValueError(f"keep_days cannot be negative, got {self.keep_days}")
