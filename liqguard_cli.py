#!/usr/bin/env python3
"""
LiqGuard - Liquidation Engine CLI

This is a PURE SHELL - it only:
- Parses arguments
- Calls tool functions
- Prints results

NO business logic lives here. All operations go through liqguard/tools/*.

Usage:
  python liqguard_cli.py run                      # Scheduler until Ctrl+C
  python liqguard_cli.py once                     # One liquidation cycle
  python liqguard_cli.py status                   # Breaker, exposure, health
  python liqguard_cli.py reset-breaker --actor ops-alice
  python liqguard_cli.py liquidations --limit 50 [--losses]
  python liqguard_cli.py stats --asset <ASSET_ID>
"""

import argparse
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from liqguard.config.config import get_config
from liqguard.config.constants import lamports_to_sol
from liqguard.core.application import get_application
from liqguard.tools import (
    ToolResult,
    get_all_exposures_tool,
    get_circuit_breaker_status_tool,
    get_liquidations_with_losses_tool,
    get_liquidator_health_tool,
    get_recent_liquidations_tool,
    get_token_liquidation_stats_tool,
    reset_circuit_breaker_tool,
    run_liquidation_cycle_tool,
)
from liqguard.utils.logger import setup_logger


console = Console()

LEVEL_STYLES = {
    "none": "green",
    "watch": "cyan",
    "warning": "yellow",
    "critical": "bold red",
}


def print_error(result: ToolResult) -> None:
    console.print(f"[bold red]✗ {result.error}[/]")


def print_ok(result: ToolResult) -> None:
    console.print(f"[bold green]✓[/] {result.message}")


# ==============================================================================
# Commands
# ==============================================================================

def cmd_run(args: argparse.Namespace) -> int:
    """Run the scheduler in the foreground until interrupted."""
    app = get_application()
    if not app.initialize():
        console.print(f"[bold red]Initialization failed:[/] {app.last_error}")
        return 1

    status = app.get_status()
    console.print(Panel(
        get_config().summary(),
        title=f"[bold]Liquidator {status.instance_id}[/]",
        border_style="cyan",
    ))
    for warning in status.warnings:
        console.print(f"[yellow]⚠ {warning}[/]")

    app.on_shutdown(lambda: console.print("[dim]Shutting down...[/]"))
    app.start()
    try:
        app.runner.wait()
    except KeyboardInterrupt:
        pass
    finally:
        app.stop()
    return 0


def cmd_once(args: argparse.Namespace) -> int:
    """Run one cycle and print its counters."""
    result = run_liquidation_cycle_tool()
    if not result.success:
        print_error(result)
        return 1

    data = result.data
    table = Table(title=f"Cycle {data['cycle_id']}", show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="dim")
    table.add_column("Value")
    for key in ("total_checked", "liquidated", "errors", "skipped_locked", "already_closed"):
        table.add_row(key, str(data[key]))
    table.add_row("blocked", "[bold red]YES[/]" if data["blocked"] else "no")
    if data["config_failure"]:
        table.add_row("config_failure", "[bold red]NO SIGNING IDENTITY[/]")
    table.add_row("duration", f"{data['duration_ms']}ms")
    if data["loan_ids"]:
        table.add_row("liquidated loans", ", ".join(data["loan_ids"]))
    console.print(table)
    print_ok(result)
    return 0 if data["errors"] == 0 else 2


def _breaker_panel(result: ToolResult) -> Panel:
    data = result.data
    metrics = data["metrics"]
    limits = data["limits"]
    lines = [
        f"1h loss:  {metrics['loss_1h_sol']:.4f} / {limits['loss_1h_limit_sol']:g} SOL",
        f"24h loss: {metrics['loss_24h_sol']:.4f} / {limits['loss_24h_limit_sol']:g} SOL",
        f"1h count: {metrics['liquidation_count_1h']} / {limits['count_1h_limit']}",
    ]
    if data["tripped"]:
        lines.insert(0, f"[bold red]TRIPPED[/] at {data['tripped_at']}: {data['reason']}")
        style = "red"
    else:
        lines.insert(0, "[bold green]ARMED[/]")
        if data.get("reset_by"):
            lines.append(f"[dim]Last reset by {data['reset_by']} at {data['reset_at']}[/]")
        style = "green"
    return Panel("\n".join(lines), title="Circuit Breaker", border_style=style)


def _exposure_table(result: ToolResult) -> Table:
    table = Table(title="Exposure by Asset")
    table.add_column("Asset")
    table.add_column("Loans", justify="right")
    table.add_column("Borrowed (SOL)", justify="right")
    table.add_column("Liquidity (SOL)", justify="right")
    table.add_column("Exposure", justify="right")
    table.add_column("Level")
    for exp in result.data["exposures"]:
        level = exp["warning_level"]
        liquidity = exp["pool_liquidity"]
        table.add_row(
            exp["asset_id"],
            str(exp["active_loans"]),
            f"{exp['total_sol_lent_sol']:.4f}",
            f"{lamports_to_sol(liquidity):.4f}" if liquidity is not None else "?",
            f"{exp['exposure_bps']} bps" if exp["exposure_bps"] is not None else "unknown",
            f"[{LEVEL_STYLES.get(level.lower(), 'white')}]{level}[/]",
        )
    return table


def _health_table(result: ToolResult) -> Table:
    data = result.data
    title = "Liquidator Health: " + ("[green]HEALTHY[/]" if data["healthy"] else "[red]UNHEALTHY[/]")
    table = Table(title=title)
    table.add_column("Instance")
    table.add_column("Last success")
    table.add_column("Failures", justify="right")
    table.add_column("Avg ms", justify="right")
    table.add_column("24h", justify="right")
    table.add_column("State")
    for inst in data["instances"]:
        table.add_row(
            inst["instance_id"],
            inst["last_successful_run"] or "never",
            str(inst["consecutive_failures"]),
            f"{inst['avg_processing_time_ms']:.0f}",
            str(inst["liquidations_24h"]),
            "[green]ok[/]" if inst["is_healthy"] else "[red]unhealthy[/]",
        )
    return table


def cmd_status(args: argparse.Namespace) -> int:
    """Show breaker, exposure and fleet health."""
    exit_code = 0

    breaker = get_circuit_breaker_status_tool()
    if breaker.success:
        console.print(_breaker_panel(breaker))
        if breaker.data["tripped"]:
            exit_code = 2
    else:
        print_error(breaker)
        return 1

    exposures = get_all_exposures_tool()
    if exposures.success:
        console.print(_exposure_table(exposures))
    else:
        print_error(exposures)
        exit_code = 1

    health = get_liquidator_health_tool()
    if health.success:
        console.print(_health_table(health))
        if not health.data["healthy"]:
            exit_code = exit_code or 2
    else:
        print_error(health)
        exit_code = 1

    return exit_code


def cmd_reset_breaker(args: argparse.Namespace) -> int:
    """Re-arm the circuit breaker (audited)."""
    result = reset_circuit_breaker_tool(args.actor)
    if not result.success:
        print_error(result)
        return 1
    if result.data["status"]["tripped"]:
        console.print(f"[bold yellow]⚠ {result.message}[/]")
        return 2
    print_ok(result)
    return 0


def cmd_liquidations(args: argparse.Namespace) -> int:
    """List recent liquidations, or only those with losses."""
    if args.losses:
        result = get_liquidations_with_losses_tool()
    else:
        result = get_recent_liquidations_tool(args.limit)
    if not result.success:
        print_error(result)
        return 1

    table = Table(title="Liquidations")
    table.add_column("Time")
    table.add_column("Loan")
    table.add_column("Asset")
    table.add_column("Reason")
    table.add_column("Expected (SOL)", justify="right")
    table.add_column("Recovered (SOL)", justify="right")
    table.add_column("Loss", justify="right")
    for rec in result.data["liquidations"]:
        loss_style = "red" if rec["loss_bps"] > 0 else "green"
        flag = " [bold red]BL[/]" if rec["auto_blacklisted"] else ""
        table.add_row(
            rec["timestamp"],
            rec["loan_id"],
            rec["asset_id"],
            rec["reason"],
            f"{lamports_to_sol(rec['expected_recovery']):.4f}",
            f"{lamports_to_sol(rec['actual_recovery']):.4f}",
            f"[{loss_style}]{rec['loss_bps']} bps[/]{flag}",
        )
    console.print(table)
    print_ok(result)
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Per-asset liquidation statistics."""
    result = get_token_liquidation_stats_tool(args.asset)
    if not result.success:
        print_error(result)
        return 1
    data = result.data
    table = Table(title=f"Liquidation stats: {args.asset}", show_header=False, box=None)
    table.add_row("Liquidations", str(data["total_liquidations"]))
    table.add_row("Total loss", f"{lamports_to_sol(data['total_loss_lamports']):.4f} SOL")
    table.add_row("Avg loss", f"{data['avg_loss_bps']} bps")
    table.add_row("Last", data["last_liquidation"] or "never")
    console.print(table)
    return 0


# ==============================================================================
# Entry Point
# ==============================================================================

def parse_cli_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="LiqGuard - liquidation engine for a collateralized lending protocol",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the liquidation scheduler until Ctrl+C")
    subparsers.add_parser("once", help="Run a single liquidation cycle")
    subparsers.add_parser("status", help="Show circuit breaker, exposure and health")

    reset_parser = subparsers.add_parser("reset-breaker", help="Re-arm the circuit breaker")
    reset_parser.add_argument("--actor", required=True, help="Operator id recorded in the audit trail")

    liq_parser = subparsers.add_parser("liquidations", help="List recent liquidations")
    liq_parser.add_argument("--limit", type=int, default=20, help="Maximum records (default 20)")
    liq_parser.add_argument("--losses", action="store_true", help="Only liquidations with losses")

    stats_parser = subparsers.add_parser("stats", help="Liquidation stats for one asset")
    stats_parser.add_argument("--asset", required=True, help="Collateral asset id")

    return parser.parse_args(argv)


COMMANDS = {
    "run": cmd_run,
    "once": cmd_once,
    "status": cmd_status,
    "reset-breaker": cmd_reset_breaker,
    "liquidations": cmd_liquidations,
    "stats": cmd_stats,
}


def main(argv=None) -> int:
    args = parse_cli_args(argv)
    config = get_config()
    setup_logger(log_dir=config.log.log_dir, log_level=config.log.level)
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
