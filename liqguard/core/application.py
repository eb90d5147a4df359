"""
Application lifecycle manager.

Builds every engine component in dependency order from configuration and
owns start/stop of the liquidation scheduler.

This is the single entry point for:
- Component wiring (stores, breaker, tracker, monitors, coordinator)
- Loading external adapters from LIQUIDATOR_ADAPTERS=module:function
- Graceful shutdown with cleanup
- Signal handling (SIGINT/SIGTERM)

Usage:
    from liqguard.core.application import Application, get_application

    # Option 1: Context manager
    with Application() as app:
        # Scheduler running
        ...
    # Automatic cleanup on exit

    # Option 2: Manual control
    app = get_application()
    app.initialize()
    result = app.coordinator.run_cycle()
"""

import atexit
import importlib
import signal
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..config.config import Config, get_config
from ..utils.datetime_utils import Clock, SystemClock
from ..utils.logger import get_logger
from .errors import ConfigurationError
from .interfaces import ExternalAdapters


@dataclass
class ApplicationStatus:
    """Application status snapshot."""
    initialized: bool = False
    running: bool = False
    instance_id: Optional[str] = None
    breaker_tripped: bool = False
    storage: str = "memory"
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "initialized": self.initialized,
            "running": self.running,
            "instance_id": self.instance_id,
            "breaker_tripped": self.breaker_tripped,
            "storage": self.storage,
            "warnings": list(self.warnings),
            "error": self.error,
        }


def load_adapters(path: str) -> ExternalAdapters:
    """
    Build external adapters from a "module:function" path.

    Raises:
        ConfigurationError: If the path is malformed, cannot be imported,
            or the factory does not return ExternalAdapters
    """
    if not path or ":" not in path:
        raise ConfigurationError(f"Adapter factory must be 'module:function', got {path!r}")
    module_name, func_name = path.split(":", 1)
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import adapter module {module_name}: {e}") from e
    factory = getattr(module, func_name, None)
    if not callable(factory):
        raise ConfigurationError(f"Adapter factory {path} is not callable")
    adapters = factory()
    if not isinstance(adapters, ExternalAdapters):
        raise ConfigurationError(
            f"Adapter factory {path} returned {type(adapters).__name__}, expected ExternalAdapters"
        )
    return adapters


class Application:
    """
    Central application lifecycle manager.

    Manages:
    - Component initialization in correct order
    - Scheduler start/stop
    - Graceful shutdown
    - Signal handling

    Components are imported lazily in initialize() to avoid circular imports.
    """

    def __init__(
        self,
        config: Config = None,
        adapters: Optional[ExternalAdapters] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize application manager.

        Args:
            config: Configuration instance (uses global if None)
            adapters: External collaborators (loaded from config if None)
            clock: Time source (wall clock if None)
        """
        self.config = config or get_config()
        self.logger = get_logger()
        self.clock = clock or SystemClock()
        self._injected_adapters = adapters

        self._initialized = False
        self._running = False
        self._shutting_down = False
        self._warnings: List[str] = []
        self._last_error: Optional[str] = None
        self._shutdown_callbacks: List[Callable] = []
        self._original_sigint_handler = None

        # Component references (set by initialize)
        self.instance_id: Optional[str] = None
        self.adapters: Optional[ExternalAdapters] = None
        self.monitor = None
        self.journal = None
        self.ledger = None
        self.liquidation_log = None
        self.lock_store = None
        self.health_registry = None
        self.breaker = None
        self.tracker = None
        self.exposure = None
        self.metrics = None
        self.health = None
        self.coordinator = None
        self.runner = None

    # ==================== Context Manager ====================

    def __enter__(self) -> 'Application':
        """Context manager entry - initialize and start."""
        if not self.initialize():
            raise ConfigurationError(self._last_error or "Application initialization failed")
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - stop and cleanup."""
        self.stop()
        return False

    # ==================== Lifecycle Methods ====================

    def initialize(self) -> bool:
        """
        Initialize all components in dependency order.

        Order:
        1. Security monitor (journal + notifications)
        2. External adapters
        3. Ledger and liquidation log
        4. Lock store and health registry
        5. Circuit breaker, tracker, exposure monitor
        6. Health metrics and aggregator
        7. Coordinator and runner

        Returns:
            True if initialization succeeded, False otherwise
        """
        if self._initialized:
            self.logger.debug("Application already initialized")
            return True

        self.logger.info("Initializing liquidation engine...")

        try:
            is_valid, messages = self.config.validate(
                require_adapters=self._injected_adapters is None
            )
            if not is_valid:
                for msg in messages:
                    if not msg.startswith("WARNING:"):
                        self.logger.error(msg)
                self._last_error = "Configuration validation failed"
                return False
            self._warnings = [m[len("WARNING: "):] for m in messages if m.startswith("WARNING:")]
            for msg in self._warnings:
                self.logger.warning(msg)

            self._build_components()

            self._initialized = True
            self.logger.info(f"Liquidation engine initialized: instance={self.instance_id}")
            return True

        except Exception as e:
            self._last_error = str(e)
            self.logger.error(f"Application initialization failed: {e}")
            return False

    def _build_components(self) -> None:
        from ..core.circuit_breaker import (
            CircuitBreaker,
            FileBreakerStateStore,
            InMemoryBreakerStateStore,
        )
        from ..core.liquidation_tracker import LiquidationTracker
        from ..core.lock_store import InMemoryLockStore, RedisLockStore
        from ..data.liquidation_log import (
            DuckDBLiquidationLog,
            InMemoryLiquidationLog,
            RedisLiquidationLog,
        )
        from ..data.loan_ledger import DuckDBLoanLedger, InMemoryLoanLedger
        from ..engine.coordinator import LiquidationCoordinator
        from ..engine.journal import SecurityJournal
        from ..engine.notifications import get_notification_adapter
        from ..engine.runner import LiquidatorRunner
        from ..engine.security_monitor import SecurityMonitor
        from ..risk.exposure_monitor import ExposureMonitor
        from ..risk.liquidator_health import (
            InMemoryHealthRegistry,
            LiquidatorHealthAggregator,
            LiquidatorMetrics,
            RedisHealthRegistry,
            default_instance_id,
        )

        cfg = self.config
        clock = self.clock

        self.instance_id = cfg.liquidator.instance_id or default_instance_id()

        # 1. Alerts
        self.journal = SecurityJournal(self.instance_id, cfg.storage.journal_dir)
        self.monitor = SecurityMonitor(
            clock=clock,
            journal=self.journal,
            notifier=get_notification_adapter(),
        )

        # 2. Adapters
        self.adapters = self._injected_adapters or load_adapters(cfg.adapters.factory)

        # 3. Ledger + record log
        db_path = cfg.storage.db_path
        redis_client = None
        if cfg.storage.redis_url:
            import redis

            redis_client = redis.Redis.from_url(
                cfg.storage.redis_url, decode_responses=True, socket_connect_timeout=3
            )

        if self.adapters.ledger is not None:
            self.ledger = self.adapters.ledger
        elif db_path:
            self.ledger = DuckDBLoanLedger(db_path)
        else:
            self.ledger = InMemoryLoanLedger()

        # Shared by every worker; the breaker computes loss windows from it
        if self.adapters.liquidation_log is not None:
            self.liquidation_log = self.adapters.liquidation_log
        elif redis_client is not None:
            self.liquidation_log = RedisLiquidationLog(redis_client)
        elif db_path:
            self.liquidation_log = DuckDBLiquidationLog(db_path)
        else:
            self.liquidation_log = InMemoryLiquidationLog(max_records=cfg.tracker.history_limit)

        # 4. Locks + health registry
        if redis_client is not None:
            self.lock_store = RedisLockStore(redis_client, clock=clock)
            self.health_registry = RedisHealthRegistry(redis_client, ttl_seconds=cfg.health.instance_ttl_seconds)
        else:
            self.lock_store = InMemoryLockStore(clock=clock)
            self.health_registry = InMemoryHealthRegistry()

        # 5. Risk controls
        if cfg.circuit_breaker.state_file:
            state_store = FileBreakerStateStore(cfg.circuit_breaker.state_file)
        else:
            state_store = InMemoryBreakerStateStore()
        self.breaker = CircuitBreaker(
            self.liquidation_log,
            config=cfg.circuit_breaker,
            clock=clock,
            monitor=self.monitor,
            state_store=state_store,
        )
        self.tracker = LiquidationTracker(
            self.liquidation_log,
            breaker=self.breaker,
            config=cfg.tracker,
            clock=clock,
            monitor=self.monitor,
            blacklister=self.adapters.blacklister,
            journal=self.journal,
        )
        self.exposure = ExposureMonitor(
            self.ledger,
            self.adapters.liquidity,
            config=cfg.exposure,
            clock=clock,
            monitor=self.monitor,
        )

        # 6. Health
        self.metrics = LiquidatorMetrics(
            self.instance_id,
            self.health_registry,
            clock=clock,
            config=cfg.health,
            monitor=self.monitor,
        )
        self.health = LiquidatorHealthAggregator(
            self.health_registry,
            scan_interval_seconds=cfg.liquidator.scan_interval_seconds,
            config=cfg.health,
            clock=clock,
            monitor=self.monitor,
        )

        # 7. Coordinator + scheduler
        self.coordinator = LiquidationCoordinator(
            ledger=self.ledger,
            lock_store=self.lock_store,
            settlement=self.adapters.settlement,
            price_feed=self.adapters.price_feed,
            breaker=self.breaker,
            tracker=self.tracker,
            instance_id=self.instance_id,
            config=cfg.liquidator,
            signer=self.adapters.signer,
            clock=clock,
            monitor=self.monitor,
            metrics=self.metrics,
        )
        self.runner = LiquidatorRunner(
            self.coordinator,
            cfg.liquidator.scan_interval_seconds,
            metrics=self.metrics,
            heartbeat_seconds=cfg.health.heartbeat_interval_seconds,
        )

        # Register presence before the first cycle completes
        self.metrics.heartbeat()

    def start(self) -> bool:
        """
        Start the liquidation scheduler.

        Returns:
            True if started successfully, False otherwise
        """
        if not self._initialized:
            self.logger.error("Application not initialized - call initialize() first")
            return False

        if self._running:
            self.logger.debug("Application already running")
            return True

        self._register_signal_handlers()
        atexit.register(self._atexit_handler)
        self.runner.start()
        self._running = True
        return True

    def stop(self) -> None:
        """
        Stop the scheduler and release resources.

        Safe to call multiple times.
        """
        if self._shutting_down:
            return

        self._shutting_down = True
        self.logger.info("Stopping liquidation engine...")

        for callback in self._shutdown_callbacks:
            try:
                callback()
            except Exception as e:
                self.logger.warning(f"Shutdown callback error: {e}")

        if self.runner is not None:
            self.runner.stop()

        for store in (self.liquidation_log, self.ledger):
            close = getattr(store, "close", None)
            if close is not None:
                try:
                    close()
                except Exception as e:
                    self.logger.warning(f"Error closing {type(store).__name__}: {e}")

        self._running = False
        self.logger.info("Liquidation engine stopped")

    # ==================== Signal Handling ====================

    def _register_signal_handlers(self):
        """Register signal handlers for graceful shutdown."""
        try:
            self._original_sigint_handler = signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)
            self.logger.debug("Signal handlers registered")
        except ValueError as e:
            # Only the main thread may install handlers
            self.logger.debug(f"Could not register signal handlers: {e}")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name} - initiating shutdown")
        self.stop()

    def _atexit_handler(self):
        """Handle process exit."""
        if self._running and not self._shutting_down:
            self.stop()

    def on_shutdown(self, callback: Callable) -> None:
        """Register a callback to be called on shutdown."""
        self._shutdown_callbacks.append(callback)

    # ==================== Status ====================

    def get_status(self) -> ApplicationStatus:
        """Get current application status."""
        return ApplicationStatus(
            initialized=self._initialized,
            running=self._running,
            instance_id=self.instance_id,
            breaker_tripped=self.breaker.is_tripped if self.breaker else False,
            storage=self.config.storage.db_path or "memory",
            warnings=list(self._warnings),
            error=self._last_error,
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error


# ==============================================================================
# Singleton Instance
# ==============================================================================

_application: Optional[Application] = None
_app_lock = threading.Lock()


def get_application(config: Config = None, **kwargs) -> Application:
    """
    Get or create the global Application instance.

    Args:
        config: Optional config (only used on first call)
        **kwargs: adapters/clock, only used on first call

    Returns:
        Application singleton
    """
    global _application
    with _app_lock:
        if _application is None:
            _application = Application(config, **kwargs)
        return _application


def reset_application():
    """Reset the global Application instance (for testing)."""
    global _application
    with _app_lock:
        if _application is not None and _application.is_running:
            _application.stop()
        _application = None
