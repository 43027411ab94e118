#!/usr/bin/env python3
"""
Update an agent service on the compute nodes of a datacenter.

Plans the update from the current inventory, shows it for confirmation, then
runs the agent update procedure: CNAPI install-agent tasks across the target
servers, ten at a time, with every per-server failure reported at the end.
"""

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Confirm

from sdcadm.clients import SdcClients
from sdcadm.errors import InternalError, SdcAdmError
from sdcadm.models import ExecutionContext
from sdcadm.planning import plan_agent_update
from sdcadm.procedures import coordinate_procedures, run_procedures
from sdcadm.utils.config import ConfigError, load_config
from sdcadm.utils.display import (
    display_error,
    display_plan,
    display_progress,
    display_success,
    display_warning,
)

LOGGER_NAME = "sdcadm"

console = Console()
logger = logging.getLogger(LOGGER_NAME)


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    logger.setLevel(level)


def add_log_file(wrk_dir: Path, timestamp: str, verbose: bool = False) -> Path:
    """Also write this run's log into its working directory."""
    log_path = wrk_dir / f"update_agents_{timestamp}.log"
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
    logger.addHandler(file_handler)
    logger.info("Logging initialized. Log file: %s", log_path)
    return log_path


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Update an agent service on the servers of this datacenter.",
    )
    parser.add_argument("service", help="Agent service to update (e.g. cn-agent, vm-agent).")
    parser.add_argument("image", help="UUID of the image to install.")
    parser.add_argument(
        "--server",
        action="append",
        help="Only update this server (UUID or hostname). Can be provided multiple times.",
    )
    parser.add_argument("--config", help="Path to the sdcadm YAML configuration file.")
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Answer yes to the confirmation prompt.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the planned update without changing anything.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_arguments(argv)
    configure_logging(verbose=args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        display_error(f"Configuration Error: {exc}")
        return 1

    clients = SdcClients.from_config(config)

    try:
        plan = plan_agent_update(clients, args.service, args.image, servers=args.server)
        if not plan:
            display_warning(f"{args.service} is already up to date. Nothing to do.")
            return 0

        procedures = coordinate_procedures(plan)
        display_plan(plan)
        console.print("[bold]This update will make the following changes:[/bold]")
        for procedure in procedures:
            console.print(f"  {procedure.summarize()}", markup=False)

        if args.dry_run:
            console.print("[yellow]DRY RUN[/yellow] No changes made.")
            return 0

        if not args.yes and not Confirm.ask("Would you like to continue?", default=False):
            console.print("Aborting agent update")
            return 0

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        wrk_dir = Path(config.wrk_dir) / timestamp
        wrk_dir.mkdir(parents=True, exist_ok=True)
        add_log_file(wrk_dir, timestamp, verbose=args.verbose)

        ctx = ExecutionContext(
            log=logger,
            progress=display_progress,
            clients=clients,
            wrk_dir=wrk_dir,
            plan=plan,
        )
        run_procedures(procedures, ctx)
    except SdcAdmError as err:
        logger.debug("Update failed: %r", err)
        display_error(err.message)
        return err.exit_status
    except Exception as exc:  # pragma: no cover - unexpected
        err = InternalError(f"Unexpected error: {exc}", cause=exc)
        logger.exception(err.message)
        display_error(err.message)
        return err.exit_status

    display_success(f"Updated agent {args.service} successfully")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        console.print("\n[yellow]Agent update interrupted by user.[/yellow]")
        raise SystemExit(1)
