"""
Configuration loading for tiervault.

Settings come from three places, applied in order:

1. A YAML file (``--config``, default ``tiervault.yaml``)
2. An optional ``.env`` file loaded with python-dotenv
3. ``TIERVAULT_*`` environment variables overriding scalar settings

The merged document is validated by pydantic models. Policy rules are turned
into PolicyRule objects at load time, so a contradictory policy is rejected
with ConfigurationError before anything runs.

Example:
    >>> settings = load_settings("tiervault.yaml")
    >>> rules = settings.policy_rules()
    >>> settings.database.url
    'postgresql+asyncpg://postgres@localhost:5432/app'
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any

import yaml
from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)

from tiervault.exceptions import ConfigurationError
from tiervault.models import PolicyRule, TierStage
from tiervault.types import StorageTier

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "tiervault.yaml"
ENV_PREFIX = "TIERVAULT_"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdwy])\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "y": timedelta(days=365),
}


def parse_duration(value: Any) -> Any:
    """
    Parse a human duration into a timedelta.

    Accepts timedeltas, integer seconds, digit strings, and ``<n><unit>``
    strings with units s, m, h, d, w and y (365 days). Anything else is
    handed to pydantic unchanged, which accepts ISO 8601 durations.

    Example:
        >>> parse_duration("7d")
        datetime.timedelta(days=7)
        >>> parse_duration(90)
        datetime.timedelta(seconds=90)
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError("duration must not be a boolean")
    if isinstance(value, int | float):
        return timedelta(seconds=value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return timedelta(seconds=int(stripped))
        match = _DURATION_RE.match(stripped)
        if match:
            amount, unit = match.groups()
            return int(amount) * _DURATION_UNITS[unit.lower()]
    return value


Duration = Annotated[timedelta, BeforeValidator(parse_duration)]


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Policy
# =============================================================================


class StageSettings(_Section):
    tier: StorageTier
    after: Duration


class RuleSettings(_Section):
    """One lifecycle rule as written in the config file."""

    name: str
    table_pattern: str
    compress_after: Duration | None = None
    tiers: list[StageSettings] = Field(default_factory=list)
    retain_for: Duration | None = None

    def to_rule(self) -> PolicyRule:
        return PolicyRule(
            name=self.name,
            table_pattern=self.table_pattern,
            compress_after=self.compress_after,
            tiers=tuple(TierStage(stage.tier, stage.after) for stage in self.tiers),
            retain_for=self.retain_for,
        )


# =============================================================================
# Sections
# =============================================================================


class DatabaseSettings(_Section):
    """
    Connection to the time-series database.

    Attributes:
        url: SQLAlchemy async URL (postgresql+asyncpg://...)
        pool_size: Connections kept open by the orchestrator's own pool
        max_overflow: Extra connections allowed above pool_size
        statement_timeout: Server-side timeout applied to every statement
        tablespaces: Tablespace backing each storage tier
        tier_capacity_bytes: Capacity of each tier, for usage percentages
    """

    url: str = "postgresql+asyncpg://postgres@localhost:5432/postgres"
    pool_size: int = Field(default=2, ge=1)
    max_overflow: int = Field(default=3, ge=0)
    statement_timeout: Duration = timedelta(minutes=5)
    tablespaces: dict[StorageTier, str] = Field(
        default_factory=lambda: {
            StorageTier.HOT: "pg_default",
            StorageTier.WARM: "warm_storage",
            StorageTier.COLD: "cold_storage",
        }
    )
    tier_capacity_bytes: dict[StorageTier, int] = Field(default_factory=dict)

    @property
    def database_name(self) -> str:
        return self.url.rsplit("/", 1)[-1].split("?", 1)[0] or "postgres"


class TieringSettings(_Section):
    """Inventory, evaluation and execution settings for the tiering job."""

    rules: list[RuleSettings] = Field(default_factory=list)
    max_workers: int = Field(default=2, ge=1)
    action_timeout: Duration = timedelta(minutes=30)
    max_retries: int = Field(default=2, ge=0)
    retry_initial_delay: float = Field(default=2.0, gt=0)
    collection_attempts: int = Field(default=3, ge=1)
    collection_timeout: Duration = timedelta(seconds=60)
    interval: Duration = timedelta(days=1)

    @model_validator(mode="after")
    def _unique_rule_names(self) -> TieringSettings:
        seen: set[str] = set()
        for rule in self.rules:
            if rule.name in seen:
                raise ValueError(f"duplicate rule name {rule.name!r}")
            seen.add(rule.name)
        return self


class RemoteSettings(_Section):
    """
    Network storage for replicated backups.

    A share with credentials is mounted over CIFS/SMB; without credentials
    the NFS export ``host:share`` is mounted instead. CIFS credentials come
    from `credentials_file` (a mount.cifs credentials file) or from
    `username`/`password`, which are passed to mount through a private
    temporary file.
    """

    enabled: bool = False
    host: str | None = None
    share: str = "backups"
    mount_point: str = "/mnt/nas-backup"
    username: str | None = None
    password: str | None = None
    credentials_file: str | None = None
    mount: bool = True
    low_space_bytes: int = Field(default=10 * 1024**3, ge=0)
    mount_timeout: Duration = timedelta(seconds=60)
    copy_timeout: Duration = timedelta(hours=1)

    @model_validator(mode="after")
    def _host_required(self) -> RemoteSettings:
        if self.enabled and self.mount and not self.host:
            raise ValueError("remote.host is required when remote storage is enabled")
        return self


class BackupSettings(_Section):
    """Backup production, verification, replication and retention."""

    local_dir: str = "/var/backups/tiervault"
    wal_dir: str | None = None
    pg_dump_path: str = "pg_dump"
    pg_restore_path: str = "pg_restore"
    dump_timeout: Duration = timedelta(hours=2)
    catalog_path: str = "tiervault-catalog.db"
    local_retention: Duration = timedelta(days=30)
    remote_retention: Duration = timedelta(days=90)
    min_free_bytes: int = Field(default=5 * 1024**3, ge=0)
    min_backup_size: int = Field(default=1_000_000, ge=0)
    restore_check: bool = True
    wal_retention: Duration | None = timedelta(days=7)
    encryption_key_file: str | None = None
    interval: Duration = timedelta(days=1)
    incremental_interval: Duration | None = None
    remote: RemoteSettings = Field(default_factory=RemoteSettings)


class ReportingSettings(_Section):
    """Alert thresholds, de-duplication and status output."""

    usage_warning_percent: float = Field(default=85.0, gt=0, le=100)
    usage_critical_percent: float = Field(default=95.0, gt=0, le=100)
    backup_max_age: Duration = timedelta(hours=25)
    alert_cooldown: Duration = timedelta(hours=1)
    history_size: int = Field(default=50, ge=1)
    status_file: str | None = None
    webhook_url: str | None = None
    webhook_timeout: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def _ordered_thresholds(self) -> ReportingSettings:
        if self.usage_warning_percent >= self.usage_critical_percent:
            raise ValueError(
                f"usage_warning_percent ({self.usage_warning_percent}) must be below "
                f"usage_critical_percent ({self.usage_critical_percent})"
            )
        return self


class SchedulerSettings(_Section):
    lock_dir: str = "/tmp/tiervault"
    enable_tracing: bool = False


class Settings(_Section):
    """Root configuration document."""

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    tiering: TieringSettings = Field(default_factory=TieringSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    reporting: ReportingSettings = Field(default_factory=ReportingSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    def policy_rules(self) -> list[PolicyRule]:
        """
        Build the ordered rule list.

        Raises:
            ConfigurationError: If any rule violates the threshold ordering
        """
        return [rule.to_rule() for rule in self.tiering.rules]


# =============================================================================
# Loading
# =============================================================================

# Environment variable -> path inside the settings document
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "TIERVAULT_DATABASE_URL": ("database", "url"),
    "TIERVAULT_STATEMENT_TIMEOUT": ("database", "statement_timeout"),
    "TIERVAULT_LOCAL_BACKUP_DIR": ("backup", "local_dir"),
    "TIERVAULT_WAL_DIR": ("backup", "wal_dir"),
    "TIERVAULT_PG_DUMP_PATH": ("backup", "pg_dump_path"),
    "TIERVAULT_PG_RESTORE_PATH": ("backup", "pg_restore_path"),
    "TIERVAULT_ENCRYPTION_KEY_FILE": ("backup", "encryption_key_file"),
    "TIERVAULT_CATALOG_PATH": ("backup", "catalog_path"),
    "TIERVAULT_NAS_ENABLED": ("backup", "remote", "enabled"),
    "TIERVAULT_NAS_HOST": ("backup", "remote", "host"),
    "TIERVAULT_NAS_SHARE": ("backup", "remote", "share"),
    "TIERVAULT_NAS_MOUNT_POINT": ("backup", "remote", "mount_point"),
    "TIERVAULT_NAS_USERNAME": ("backup", "remote", "username"),
    "TIERVAULT_NAS_PASSWORD": ("backup", "remote", "password"),
    "TIERVAULT_NAS_CREDENTIALS_FILE": ("backup", "remote", "credentials_file"),
    "TIERVAULT_WEBHOOK_URL": ("reporting", "webhook_url"),
    "TIERVAULT_STATUS_FILE": ("reporting", "status_file"),
    "TIERVAULT_LOCK_DIR": ("scheduler", "lock_dir"),
}


def apply_env_overrides(
    document: dict[str, Any],
    environ: Mapping[str, str],
) -> dict[str, Any]:
    """Copy TIERVAULT_* values into the raw settings document."""
    for name, path in ENV_OVERRIDES.items():
        value = environ.get(name)
        if value is None or value == "":
            continue
        section = document
        for key in path[:-1]:
            child = section.get(key)
            if not isinstance(child, dict):
                child = {}
                section[key] = child
            section = child
        section[path[-1]] = value
        logger.debug("Setting %s overridden from %s", ".".join(path), name)
    return document


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open(encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"cannot read {path}: {e}") from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return document


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "settings"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def load_settings(
    path: str | Path | None = None,
    env_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load and validate settings.

    Args:
        path: YAML file. None means defaults; a missing default file
            (tiervault.yaml) is tolerated, any other missing file is not.
        env_file: Optional .env file loaded into the process environment
        environ: Environment to read overrides from (default os.environ)

    Returns:
        Validated Settings whose policy rules have been checked

    Raises:
        ConfigurationError: If any source is unreadable or invalid
    """
    if env_file is not None:
        env_path = Path(env_file)
        if not env_path.is_file():
            raise ConfigurationError(f"env file {env_path} does not exist")
        load_dotenv(env_path, override=False)

    document: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if config_path.is_file():
            document = _read_yaml(config_path)
            logger.debug("Loaded configuration from %s", config_path)
        elif str(path) == DEFAULT_CONFIG_PATH:
            logger.info("No %s found, using default settings", DEFAULT_CONFIG_PATH)
        else:
            raise ConfigurationError(f"config file {config_path} does not exist")

    document = apply_env_overrides(document, os.environ if environ is None else environ)

    try:
        settings = Settings.model_validate(document)
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e)) from e

    # Fail fast on contradictory rules
    settings.policy_rules()
    return settings


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ENV_OVERRIDES",
    "Duration",
    "StageSettings",
    "RuleSettings",
    "DatabaseSettings",
    "TieringSettings",
    "RemoteSettings",
    "BackupSettings",
    "ReportingSettings",
    "SchedulerSettings",
    "Settings",
    "apply_env_overrides",
    "load_settings",
    "parse_duration",
]
