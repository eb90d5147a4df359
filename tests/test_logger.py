"""
Tests for the engine logger.

Validates that:
1. Liquidation and risk helpers write key=value lines
2. File lines carry the current cycle id
3. Errors also land in the errors file
"""

import logging

import pytest

from liqguard.utils.log_context import new_cycle_context
from liqguard.utils.logger import setup_logger


@pytest.fixture
def log(tmp_path):
    logger = setup_logger(log_dir=str(tmp_path), log_level="DEBUG")
    yield logger, tmp_path
    setup_logger()


def read_stream(log_dir, prefix):
    for name in ("liqguard", "liqguard.liquidations", "liqguard.errors"):
        for handler in logging.getLogger(name).handlers:
            handler.flush()
    (path,) = log_dir.glob(f"{prefix}_*.log")
    return path.read_text(encoding="utf-8")


class TestLiquidatorLogger:
    def test_liquidation_line(self, log):
        logger, log_dir = log
        logger.liquidation("LIQUIDATED", "loan-1", asset="MINT_A", recovered=5)

        text = read_stream(log_dir, "liquidations")
        assert "[LIQUIDATED] | loan=loan-1 | asset=MINT_A | recovered=5" in text

    def test_cycle_id_stamped(self, log):
        """Lines inside a cycle carry its id; lines outside carry '-'."""
        logger, log_dir = log
        logger.info("outside")
        with new_cycle_context(instance_id="w1", cycle_id="cycle-abc"):
            logger.info("inside")

        lines = read_stream(log_dir, "liquidator").splitlines()
        assert any("cycle=-" in line and "outside" in line for line in lines)
        assert any("cycle=cycle-abc" in line and "inside" in line for line in lines)

    def test_errors_file(self, log):
        logger, log_dir = log
        logger.warning("just a warning")
        logger.error("settlement unreachable")

        text = read_stream(log_dir, "errors")
        assert "settlement unreachable" in text
        assert "just a warning" not in text

    def test_failed_actions_warn(self, log):
        logger, log_dir = log
        logger.liquidation("SETTLE_FAILED", "loan-2", error="timeout")
        logger.risk("TRIPPED", "1h loss limit")

        text = read_stream(log_dir, "liquidator")
        assert "WARNING | liqguard | cycle=- | [SETTLE_FAILED] | loan=loan-2 | error=timeout" in text
        assert "[RISK:TRIPPED] | 1h loss limit" in text
