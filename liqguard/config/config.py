"""
Configuration management for the liquidation engine.

Policy defaults come from defaults.yml (single source of truth for
thresholds); environment variables loaded from .env files override them.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .constants import LAMPORTS_PER_SOL, sol_to_lamports


DEFAULTS_PATH = Path(__file__).resolve().parent / "defaults.yml"


def load_policy_defaults(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load policy defaults from YAML.

    Args:
        path: Optional override path (defaults to the packaged defaults.yml)

    Returns:
        Nested dict of section -> key -> value. Missing file yields {}.
    """
    path = Path(path) if path else DEFAULTS_PATH
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Policy defaults in {path} must be a mapping, got {type(raw).__name__}")
    return raw


@dataclass
class LiquidatorConfig:
    """Scheduler, lock and signing-identity settings for one worker."""
    scan_interval_seconds: float = 30.0
    lock_ttl_seconds: float = 15.0
    throttle_seconds: float = 1.0

    # Empty means "generate hostname-pid-random at startup"
    instance_id: str = ""

    # LIQUIDATOR_WALLET, falling back to ADMIN_WALLET
    liquidator_wallet: str = ""

    def __post_init__(self):
        if self.scan_interval_seconds <= 0:
            raise ValueError(f"scan_interval_seconds must be positive, got {self.scan_interval_seconds}")
        if self.lock_ttl_seconds <= 0:
            raise ValueError(f"lock_ttl_seconds must be positive, got {self.lock_ttl_seconds}")
        if self.throttle_seconds < 0:
            raise ValueError(f"throttle_seconds must be >= 0, got {self.throttle_seconds}")


@dataclass
class CircuitBreakerConfig:
    """
    Loss/count limits for the liquidation circuit breaker.

    A limit is exceeded only when the window value is strictly greater
    than the limit.
    """
    loss_1h_limit_lamports: int = 5 * LAMPORTS_PER_SOL
    loss_24h_limit_lamports: int = 10 * LAMPORTS_PER_SOL
    count_1h_limit: int = 10

    # Optional JSON file shared by co-located workers
    state_file: str = ""

    def __post_init__(self):
        if self.loss_1h_limit_lamports < 0 or self.loss_24h_limit_lamports < 0:
            raise ValueError("Circuit breaker loss limits must be >= 0")
        if self.count_1h_limit < 0:
            raise ValueError(f"count_1h_limit must be >= 0, got {self.count_1h_limit}")


@dataclass
class ExposureConfig:
    """Per-asset concentration bands (bps of pool liquidity)."""
    watch_bps: int = 250
    warning_bps: int = 500
    critical_bps: int = 1000
    alert_cooldown_seconds: float = 900.0
    cache_seconds: float = 5.0

    def __post_init__(self):
        if not (0 <= self.watch_bps <= self.warning_bps <= self.critical_bps):
            raise ValueError(
                "Exposure bands must be ascending: "
                f"watch={self.watch_bps} <= warning={self.warning_bps} <= critical={self.critical_bps}"
            )


@dataclass
class HealthConfig:
    """Liquidator health thresholds."""
    failure_threshold: int = 3
    # Instance is stale after staleness_multiplier x scan interval without success
    staleness_multiplier: float = 10.0
    alert_cooldown_seconds: float = 300.0
    heartbeat_interval_seconds: float = 30.0
    # Instance is presumed dead after this many missed heartbeats
    heartbeat_stale_multiplier: float = 3.0
    no_run_alert_seconds: float = 300.0
    # Registrations without a heartbeat for this long are dropped
    instance_ttl_seconds: float = 3600.0

    def __post_init__(self):
        if self.heartbeat_interval_seconds <= 0:
            raise ValueError(f"heartbeat_interval_seconds must be positive, got {self.heartbeat_interval_seconds}")
        if self.instance_ttl_seconds <= self.heartbeat_interval_seconds:
            raise ValueError("instance_ttl_seconds must exceed heartbeat_interval_seconds")

    @property
    def heartbeat_stale_after(self) -> float:
        return self.heartbeat_interval_seconds * self.heartbeat_stale_multiplier


@dataclass
class TrackerConfig:
    """Liquidation result tracking."""
    auto_blacklist_bps: int = 1000
    history_limit: int = 1000


@dataclass
class StorageConfig:
    """Where the ledger, record log, locks and journals live."""
    # Empty db_path means in-memory stores
    db_path: str = ""
    # When set, locks, health snapshots and the liquidation log go through Redis
    redis_url: str = ""
    journal_dir: str = "data/journal"


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    log_dir: str = "logs"


@dataclass
class AdapterConfig:
    """
    External collaborators.

    factory is a "module:function" path returning an ExternalAdapters
    instance (settlement client, price feed, liquidity reader, blacklister).
    """
    factory: str = ""


class Config:
    """
    Central configuration manager.

    Loads configuration from environment variables and provides
    typed access to all settings.
    """

    _instance: Optional['Config'] = None

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self, env_file: str = ".env", defaults_path: Optional[Path] = None):
        if self._initialized:
            return

        for env_name in [".env", env_file]:
            env_path = Path(env_name)
            if env_path.exists():
                load_dotenv(env_path, override=True)

        policy = load_policy_defaults(defaults_path)

        self.liquidator = self._load_liquidator_config(policy.get("liquidator", {}))
        self.circuit_breaker = self._load_circuit_breaker_config(policy.get("circuit_breaker", {}))
        self.exposure = self._load_exposure_config(policy.get("exposure", {}))
        self.health = self._load_health_config(policy.get("health", {}))
        self.tracker = self._load_tracker_config(policy.get("tracker", {}))
        self.storage = self._load_storage_config()
        self.log = self._load_log_config()
        self.adapters = AdapterConfig(factory=os.getenv("LIQUIDATOR_ADAPTERS", ""))

        self._initialized = True

    def _load_liquidator_config(self, policy: dict) -> LiquidatorConfig:
        """Load scheduler settings from environment."""
        return LiquidatorConfig(
            scan_interval_seconds=float(os.getenv("LIQUIDATOR_SCAN_INTERVAL_SECONDS", policy.get("scan_interval_seconds", 30))),
            lock_ttl_seconds=float(os.getenv("LIQUIDATOR_LOCK_TTL_SECONDS", policy.get("lock_ttl_seconds", 15))),
            throttle_seconds=float(os.getenv("LIQUIDATOR_THROTTLE_SECONDS", policy.get("throttle_seconds", 1.0))),
            instance_id=os.getenv("LIQUIDATOR_INSTANCE_ID", os.getenv("INSTANCE_ID", "")),
            liquidator_wallet=os.getenv("LIQUIDATOR_WALLET", "") or os.getenv("ADMIN_WALLET", ""),
        )

    def _load_circuit_breaker_config(self, policy: dict) -> CircuitBreakerConfig:
        """
        Load breaker limits.

        Env overrides are expressed in SOL (CB_LOSS_1H_LIMIT_SOL,
        CB_LOSS_24H_LIMIT_SOL); YAML defaults are lamports.
        """
        loss_1h = policy.get("loss_1h_limit_lamports", 5 * LAMPORTS_PER_SOL)
        loss_24h = policy.get("loss_24h_limit_lamports", 10 * LAMPORTS_PER_SOL)
        if os.getenv("CB_LOSS_1H_LIMIT_SOL"):
            loss_1h = sol_to_lamports(float(os.environ["CB_LOSS_1H_LIMIT_SOL"]))
        if os.getenv("CB_LOSS_24H_LIMIT_SOL"):
            loss_24h = sol_to_lamports(float(os.environ["CB_LOSS_24H_LIMIT_SOL"]))
        return CircuitBreakerConfig(
            loss_1h_limit_lamports=int(loss_1h),
            loss_24h_limit_lamports=int(loss_24h),
            count_1h_limit=int(os.getenv("CB_COUNT_1H_LIMIT", policy.get("count_1h_limit", 10))),
            state_file=os.getenv("CB_STATE_FILE", ""),
        )

    def _load_exposure_config(self, policy: dict) -> ExposureConfig:
        """Load exposure bands from environment."""
        return ExposureConfig(
            watch_bps=int(os.getenv("EXPOSURE_WATCH_BPS", policy.get("watch_bps", 250))),
            warning_bps=int(os.getenv("EXPOSURE_WARNING_BPS", policy.get("warning_bps", 500))),
            critical_bps=int(os.getenv("EXPOSURE_CRITICAL_BPS", policy.get("critical_bps", 1000))),
            alert_cooldown_seconds=float(os.getenv("EXPOSURE_ALERT_COOLDOWN_SECONDS", policy.get("alert_cooldown_seconds", 900))),
            cache_seconds=float(os.getenv("EXPOSURE_CACHE_SECONDS", policy.get("cache_seconds", 5))),
        )

    def _load_health_config(self, policy: dict) -> HealthConfig:
        """Load health thresholds from environment."""
        return HealthConfig(
            failure_threshold=int(os.getenv("HEALTH_FAILURE_THRESHOLD", policy.get("failure_threshold", 3))),
            staleness_multiplier=float(os.getenv("HEALTH_STALENESS_MULTIPLIER", policy.get("staleness_multiplier", 10))),
            alert_cooldown_seconds=float(os.getenv("HEALTH_ALERT_COOLDOWN_SECONDS", policy.get("alert_cooldown_seconds", 300))),
            heartbeat_interval_seconds=float(os.getenv("HEALTH_HEARTBEAT_INTERVAL_SECONDS", policy.get("heartbeat_interval_seconds", 30))),
            heartbeat_stale_multiplier=float(os.getenv("HEALTH_HEARTBEAT_STALE_MULTIPLIER", policy.get("heartbeat_stale_multiplier", 3))),
            no_run_alert_seconds=float(os.getenv("HEALTH_NO_RUN_ALERT_SECONDS", policy.get("no_run_alert_seconds", 300))),
            instance_ttl_seconds=float(os.getenv("HEALTH_INSTANCE_TTL_SECONDS", policy.get("instance_ttl_seconds", 3600))),
        )

    def _load_tracker_config(self, policy: dict) -> TrackerConfig:
        """Load liquidation tracking settings."""
        return TrackerConfig(
            auto_blacklist_bps=int(os.getenv("AUTO_BLACKLIST_BPS", policy.get("auto_blacklist_bps", 1000))),
            history_limit=int(os.getenv("LIQUIDATION_HISTORY_LIMIT", policy.get("history_limit", 1000))),
        )

    def _load_storage_config(self) -> StorageConfig:
        """Load storage locations from environment."""
        return StorageConfig(
            db_path=os.getenv("DATA_DB_PATH", ""),
            redis_url=os.getenv("REDIS_URL", ""),
            journal_dir=os.getenv("JOURNAL_DIR", "data/journal"),
        )

    def _load_log_config(self) -> LogConfig:
        """Load logging configuration from environment."""
        return LogConfig(
            level=os.getenv("LOG_LEVEL", "INFO"),
            log_dir=os.getenv("LOG_DIR", "logs"),
        )

    def reload(self, env_file: str = ".env"):
        """Reload configuration from environment."""
        self._initialized = False
        Config._instance = None
        return Config(env_file)

    def validate(self, require_adapters: bool = True) -> tuple[bool, List[str]]:
        """
        Validate configuration for running a liquidator.

        Args:
            require_adapters: False when adapters are injected directly

        Returns:
            Tuple of (is_valid, list of error/warning messages)
        """
        errors = []
        warnings = []

        # Read-side tools keep working without a wallet; every cycle alerts instead
        if not self.liquidator.liquidator_wallet:
            warnings.append(
                "MISSING SIGNING IDENTITY: set LIQUIDATOR_WALLET (or ADMIN_WALLET). "
                "Liquidations cannot proceed on this instance without it."
            )

        if require_adapters and not self.adapters.factory:
            errors.append(
                "MISSING ADAPTERS: set LIQUIDATOR_ADAPTERS=module:function to provide "
                "the settlement client, price feed and pool-liquidity reader."
            )

        if self.liquidator.lock_ttl_seconds >= self.liquidator.scan_interval_seconds:
            warnings.append(
                f"Lock TTL ({self.liquidator.lock_ttl_seconds}s) >= scan interval "
                f"({self.liquidator.scan_interval_seconds}s): an abandoned lock can hide a loan for a full cycle"
            )

        if not self.storage.redis_url:
            warnings.append(
                "REDIS_URL not set: locks and the liquidation log are process-local. Run a single worker "
                "or configure Redis before adding redundant liquidators."
            )

        if not self.storage.db_path:
            warnings.append("DATA_DB_PATH not set: ledger and liquidation log are in-memory")

        return len(errors) == 0, errors + [f"WARNING: {w}" for w in warnings]

    def summary(self) -> str:
        """Human-readable configuration summary (no secrets)."""
        lq = self.liquidator
        cb = self.circuit_breaker
        ex = self.exposure
        lines = [
            f"Instance: {lq.instance_id or '(generated)'}",
            f"Scan interval: {lq.scan_interval_seconds}s | Lock TTL: {lq.lock_ttl_seconds}s | Throttle: {lq.throttle_seconds}s",
            f"Signing identity: {'configured' if lq.liquidator_wallet else 'MISSING'}",
            f"Breaker: 1h loss > {cb.loss_1h_limit_lamports / LAMPORTS_PER_SOL:g} SOL | "
            f"24h loss > {cb.loss_24h_limit_lamports / LAMPORTS_PER_SOL:g} SOL | "
            f"1h count > {cb.count_1h_limit}",
            f"Exposure bands (bps): watch {ex.watch_bps} / warning {ex.warning_bps} / critical {ex.critical_bps}",
            f"Storage: db={self.storage.db_path or 'memory'} redis={'yes' if self.storage.redis_url else 'no'}",
        ]
        return "\n".join(lines)


def get_config(env_file: str = ".env") -> Config:
    """Get the global configuration instance."""
    return Config(env_file)
