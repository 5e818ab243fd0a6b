"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas so fatal
configuration problems surface once, before the monitor loop starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from solders.pubkey import Pubkey

from core.exceptions import ConfigurationError
from core.ledger_client import PUMP_PROGRAM_ID

logger = logging.getLogger(__name__)


# ===== App Schema =====
class LedgerConfig(BaseModel):
    """Read-only ledger endpoints"""
    rpc_url: str = Field(min_length=1, description="Primary JSON-RPC endpoint")
    fallback_rpc_url: Optional[str] = Field(default=None, description="Tried once after primary retries fail")
    timeout_seconds: float = Field(default=10.0, gt=0)
    commitment: str = Field(default="confirmed")
    program_id: str = Field(default=PUMP_PROGRAM_ID, description="Curve program the account addresses derive from")

    @field_validator("rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        if "${" in v:
            raise ValueError(f"unresolved environment variable in {v!r}")
        if not v.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return v

    @field_validator("fallback_rpc_url")
    @classmethod
    def validate_fallback_url(cls, v: Optional[str]) -> Optional[str]:
        # an unset optional env var leaves the placeholder behind
        if not v or "${" in v:
            return None
        return v

    @field_validator("program_id")
    @classmethod
    def validate_program_id(cls, v: str) -> str:
        if not v or "${" in v:
            return PUMP_PROGRAM_ID
        Pubkey.from_string(v)
        return v


class StoreConfig(BaseModel):
    backend: Literal["memory", "json", "redis"] = "memory"
    path: Optional[str] = None
    redis_url: Optional[str] = None
    lock_timeout_seconds: float = Field(default=10.0, gt=0)
    lock_blocking_timeout_seconds: float = Field(default=5.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/monitor.log"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return level


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: Optional[int] = Field(default=None, gt=0, lt=65536)


class AlertsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = False
    webhook_url: Optional[str] = None
    min_severity: Literal["info", "warning", "critical"] = "info"
    dry_run: bool = False
    notify_on_entry: bool = True
    dedupe_seconds: float = Field(default=60.0, ge=0)
    escalation_seconds: float = Field(default=120.0, ge=0)


class LoopConfig(BaseModel):
    tick_seconds: float = Field(default=5.0, gt=0, description="Exit monitor tick interval")
    lock_dir: str = "data"
    instance_name: str = Field(default="risk-monitor", min_length=1)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    mode: Literal["DRY_RUN", "LIVE"]
    auto_trading: bool = False
    ledger: LedgerConfig
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v


# ===== Policy Schema =====
class RiskConfig(BaseModel):
    """Admission control parameters"""
    max_total_slots: int = Field(ge=1, description="Max concurrently open positions")
    reserved_slots: int = Field(default=0, ge=0, description="Slots reserved for the reserved category")
    position_size: float = Field(gt=0, description="Quote amount committed per entry")
    max_daily_loss: float = Field(gt=0, description="Daily realized loss cap (quote units)")
    min_liquidity: float = Field(default=0.0, ge=0, description="Quote-reserve floor for entries")
    max_entry_price: float = Field(default=1.0, gt=0, description="Entry price sanity ceiling")
    asset_cooldown_seconds: float = Field(default=900.0, ge=0, description="Re-entry cooldown per asset")
    min_initial_volume: float = Field(default=0.0, ge=0)
    record_ttl_seconds: Optional[float] = Field(default=None, gt=0, description="Safety TTL on position records")


class ExitsConfig(BaseModel):
    stop_loss_pct: float = Field(default=13.0, gt=0, le=100)
    take_profit_pct: float = Field(default=30.0, gt=0)
    trailing_stop_pct: float = Field(default=15.0, gt=0, le=100)
    stagnation_seconds: float = Field(default=300.0, gt=0)
    stagnation_pnl_threshold: float = 5.0
    exit_on_finalized: bool = False


class CircuitBreakerConfig(BaseModel):
    max_losses_in_row: int = Field(default=3, ge=1)
    max_daily_loss: float = Field(default=2.0, gt=0)
    pause_seconds: float = Field(default=1800.0, ge=0)


class OracleConfig(BaseModel):
    local_ttl_seconds: float = Field(default=3.0, gt=0)
    shared_ttl_seconds: float = Field(default=10.0, gt=0)
    finalized_ttl_seconds: float = Field(default=3 * 24 * 3600, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=0.5, ge=0)
    min_sane_price: float = Field(default=1e-9, ge=0)
    max_sane_price: float = Field(default=1.0, gt=0)
    min_liquidity: float = Field(default=0.1, ge=0)


class RateLimiterConfig(BaseModel):
    calls_per_second: int = Field(default=10, ge=1)
    burst: int = Field(default=0, ge=0)


class ExecutionConfig(BaseModel):
    trade_fee: float = Field(default=0.015, ge=0, lt=1)
    network_fee: float = Field(default=0.000005, ge=0)
    priority_fee: float = Field(default=0.00005, ge=0)


class MaintenanceConfig(BaseModel):
    ledger_retention_days: int = Field(default=3, ge=1)


class PolicySchema(BaseModel):
    """Complete policy.yaml schema"""
    risk: RiskConfig
    exits: ExitsConfig = Field(default_factory=ExitsConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    rate_limiter: RateLimiterConfig = Field(default_factory=RateLimiterConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)


# ===== Loading =====
def expand_env(value: Any) -> Any:
    """Recursively expand ${VAR} references in string values."""
    if isinstance(value, str):
        return os.path.expandvars(value) if "${" in value else value
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    return value


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load a YAML file with environment expansion.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"{file_path} must contain a mapping at top level")
    return expand_env(data)


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    try:
        schema(**load_yaml_file(config_dir / filename))
        logger.info("%s validation passed", filename)
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{filename}: {field}: {error['msg']}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """Cross-field checks that need both files parsed."""
    errors = []
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))

    if policy.risk.reserved_slots > policy.risk.max_total_slots:
        errors.append(
            f"policy.yaml: risk.reserved_slots ({policy.risk.reserved_slots}) "
            f"cannot exceed risk.max_total_slots ({policy.risk.max_total_slots})"
        )
    if policy.oracle.shared_ttl_seconds < policy.oracle.local_ttl_seconds:
        errors.append(
            "policy.yaml: oracle.shared_ttl_seconds should not be shorter than oracle.local_ttl_seconds"
        )
    if policy.oracle.min_sane_price >= policy.oracle.max_sane_price:
        errors.append("policy.yaml: oracle.min_sane_price must be below oracle.max_sane_price")
    if app.store.backend == "redis" and (not app.store.redis_url or "${" in app.store.redis_url):
        errors.append("app.yaml: store.redis_url is required when store.backend is redis")
    if app.monitoring.metrics_enabled and not app.monitoring.metrics_port:
        errors.append("app.yaml: monitoring.metrics_port is required when metrics are enabled")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if all_errors:
        logger.error("%d validation error(s) found", len(all_errors))
    else:
        logger.info("All config files validated successfully")
    return all_errors


def load_configs(config_dir: str = "config") -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Validate and return (app, policy) as plain dicts with defaults filled in.

    Raises:
        ConfigurationError: on any validation error
    """
    errors = validate_all_configs(config_dir)
    if errors:
        raise ConfigurationError("Invalid configuration:\n  " + "\n  ".join(errors))

    config_path = Path(config_dir)
    app = AppSchema(**load_yaml_file(config_path / "app.yaml")).model_dump()
    policy = PolicySchema(**load_yaml_file(config_path / "policy.yaml")).model_dump()
    return app, policy


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    errors = validate_all_configs(sys.argv[1] if len(sys.argv) > 1 else "config")
    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)
    print("\nAll configuration files are valid!\n")
    sys.exit(0)
