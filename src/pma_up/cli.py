"""
Command-line entry point for pma-up.

Usage::

    pma-up <installation_root> <config_file_path>

Exit status is 0 when the upgrade completed (configuration restored), 1 when
any stage failed, and 2 on a usage error.
"""

from __future__ import annotations

import argparse

import yaml
from pydantic import ValidationError

from pma_up.config import load_config
from pma_up.errors import UpdateError
from pma_up.logging import get_logger, setup_logging
from pma_up.updates.state_machine import SwapFailedError, UpdateOrchestrator

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pma-up",
        description=(
            "Upgrade a phpMyAdmin installation in place to the latest release, "
            "keeping its configuration file."
        ),
    )
    parser.add_argument(
        "installation_root",
        help="Path of the installed phpMyAdmin directory",
    )
    parser.add_argument(
        "config_file",
        help="Path of the configuration file to preserve (e.g. config.inc.php)",
    )
    return parser


def main(
    argv: list[str] | None = None,
    *,
    orchestrator: UpdateOrchestrator | None = None,
) -> int:
    """
    Run one upgrade from the command line.

    Args:
        argv: Arguments without the program name (default: sys.argv[1:]).
        orchestrator: Orchestrator to use instead of one built from config.

    Returns:
        Process exit status.
    """
    args = _build_parser().parse_args(argv)

    try:
        config = load_config()
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        return EXIT_FAILURE

    setup_logging(config.logging)

    if orchestrator is None:
        orchestrator = UpdateOrchestrator.from_config(config.updater)

    try:
        result = orchestrator.run_update(args.installation_root, args.config_file)
    except SwapFailedError as e:
        logger.critical(
            f"Update failed, installation needs manual recovery: {e.message}",
            extra={"error_code": e.error_code, "details": e.details},
        )
        return EXIT_FAILURE
    except UpdateError as e:
        logger.error(
            f"Update failed: {e.message}",
            extra={"error_code": e.error_code, "details": e.details},
        )
        return EXIT_FAILURE

    logger.info(
        f"Upgraded {result.installation_root} to {result.version} "
        f"(backup kept at {result.backup_root})"
    )
    return EXIT_OK
