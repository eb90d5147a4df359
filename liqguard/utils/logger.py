"""
Logging system for the liquidation engine.

Console output is colored by level. File output is plain, one dated file
per stream (main, liquidations, errors), and every file line carries the
cycle id of the liquidation cycle that emitted it ("-" outside a cycle).
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .log_context import get_log_context


_RESET = "\033[0m"

LEVEL_COLORS = {
    logging.DEBUG: "\033[96m",
    logging.INFO: "\033[92m",
    logging.WARNING: "\033[93m",
    logging.ERROR: "\033[91m",
    logging.CRITICAL: "\033[1m\033[91m",
}

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | cycle=%(cycle_id)s | %(message)s"


class CycleContextFilter(logging.Filter):
    """Stamps cycle_id onto every record from the current log context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle_id = get_log_context().cycle_id or "-"
        return True


class ColoredFormatter(logging.Formatter):
    """Colors level and message for terminals."""

    def format(self, record):
        # Color a copy so the file handler sees the plain record
        colored = logging.makeLogRecord(record.__dict__)
        color = LEVEL_COLORS.get(record.levelno, "")
        colored.levelname = f"{color}{record.levelname}{_RESET}"
        colored.msg = f"{color}{record.getMessage()}{_RESET}"
        colored.args = None
        return super().format(colored)


def _kv(parts: list, fields: dict) -> str:
    parts.extend(f"{key}={value}" for key, value in fields.items())
    return " | ".join(parts)


class LiquidatorLogger:
    """
    Process-wide logger for the liquidation engine.

    Three streams share one directory:
    - liqguard: everything, console and liquidator_YYYYMMDD.log
    - liqguard.liquidations: per-loan decisions only
    - liqguard.errors: ERROR and above
    """

    _instance: Optional['LiquidatorLogger'] = None
    _initialized: bool = False

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, log_dir: str = "logs", log_level: str = "INFO"):
        if LiquidatorLogger._initialized:
            return

        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._context_filter = CycleContextFilter()

        self.main_logger = self._build("liqguard", log_level, "liquidator", console=True)
        self.liquidation_logger = self._build("liqguard.liquidations", log_level, "liquidations")
        self.error_logger = self._build("liqguard.errors", "ERROR", "errors")

        LiquidatorLogger._initialized = True

    def _build(self, name: str, level: str, file_prefix: str, console: bool = False) -> logging.Logger:
        logger = logging.getLogger(name)
        logger.setLevel(getattr(logging, level.upper()))
        logger.handlers.clear()
        # Each logger owns its handlers
        logger.propagate = False

        if console:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
            logger.addHandler(console_handler)

        log_file = self.log_dir / f"{file_prefix}_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.addFilter(self._context_filter)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(file_handler)

        return logger

    def info(self, msg: str, *args, **kwargs):
        self.main_logger.info(msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self.main_logger.debug(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self.main_logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        """Log to the main stream and the error file."""
        self.main_logger.error(msg, *args, **kwargs)
        self.error_logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self.main_logger.critical(msg, *args, **kwargs)
        self.error_logger.critical(msg, *args, **kwargs)

    def liquidation(self, action: str, loan_id: str, **fields):
        """
        Log one per-loan decision as "[ACTION] | loan=... | key=value".

        Args:
            action: SETTLE_ATTEMPT, LIQUIDATED, SETTLE_FAILED, SKIPPED_CLOSED, RECORDED
            loan_id: Loan being processed
            **fields: Amounts, asset id, instance id, signature
        """
        msg = _kv([f"[{action}]", f"loan={loan_id}"], fields)
        self.liquidation_logger.info(msg)
        if action.endswith("FAILED"):
            self.main_logger.warning(msg)
        else:
            self.main_logger.info(msg)

    def risk(self, action: str, reason: str, **fields):
        """
        Log a risk control decision.

        BLOCKED, TRIPPED, WARNING and BLACKLIST go out at WARNING; ALLOWED and
        RESET at INFO.
        """
        msg = _kv([f"[RISK:{action}]", reason], fields)
        if action in ("BLOCKED", "TRIPPED", "WARNING", "BLACKLIST"):
            self.main_logger.warning(msg)
        else:
            self.main_logger.info(msg)


_logger: Optional[LiquidatorLogger] = None


def get_logger(log_dir: str = "logs", log_level: str = "INFO") -> LiquidatorLogger:
    """Get or create the global logger instance."""
    global _logger
    if _logger is None:
        _logger = LiquidatorLogger(log_dir, log_level)
        _quiet_client_loggers()
    return _logger


def setup_logger(log_dir: str = "logs", log_level: str = "INFO") -> LiquidatorLogger:
    """Rebuild the logger from config (CLI startup)."""
    global _logger
    LiquidatorLogger._initialized = False
    LiquidatorLogger._instance = None
    _logger = LiquidatorLogger(log_dir, log_level)
    _quiet_client_loggers()
    return _logger


def _quiet_client_loggers():
    # redis and urllib3 log every reconnect
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
