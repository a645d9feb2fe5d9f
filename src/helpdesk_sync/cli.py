#!/usr/bin/env python3
"""
Helpdesk Sync CLI

Usage:
    hdsync config show            # Show stored settings
    hdsync config set KEY VALUE   # Change one setting
    hdsync test                   # Test your connection
    hdsync sync                   # Advance the ticket load
    hdsync refresh --start        # Begin a modified-since refresh pass
    hdsync refresh                # Continue the refresh pass
    hdsync teams                  # Reload the teams table
    hdsync status                 # Show sync status
    hdsync reset --yes            # Delete loaded tickets and all progress
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

import structlog
from colorama import Fore, Style, init

from helpdesk_sync.client import HelpdeskClient
from helpdesk_sync.config import (
    ENV_OVERRIDES,
    KEY_AUTH_TOKEN,
    KEY_BATCH_SIZE,
    KEY_PAGE_SIZE,
    KEY_QUANTUM_SECONDS,
    KEY_THROTTLE_MS,
    SETTINGS_KEYS,
    SyncSettings,
)
from helpdesk_sync.engine import SyncEngine
from helpdesk_sync.errors import ConfigurationError
from helpdesk_sync.settings_store import JsonFileSettingsStore
from helpdesk_sync.sync import SyncSummary

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT

HOME_ENV = "HDSYNC_HOME"
DEFAULT_HOME = Path.home() / ".helpdesk-sync"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BUSY = 2

_INT_KEYS = (KEY_PAGE_SIZE, KEY_BATCH_SIZE, KEY_THROTTLE_MS)


def print_success(msg: str):
    print(f"{GREEN}✓ {msg}{RESET}")


def print_error(msg: str):
    print(f"{RED}✗ {msg}{RESET}")


def print_warning(msg: str):
    print(f"{YELLOW}⚠ {msg}{RESET}")


def print_info(msg: str):
    print(f"{BLUE}ℹ {msg}{RESET}")


def configure_logging(verbose: bool = False) -> None:
    """Route structlog output to stderr, INFO by default and DEBUG when verbose."""
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_home(args) -> Path:
    """Working directory for settings, records, lock and operation log."""
    if args.home:
        return Path(args.home).expanduser()
    env_home = os.environ.get(HOME_ENV)
    if env_home:
        return Path(env_home).expanduser()
    return DEFAULT_HOME


def mask(value: str) -> str:
    return f"{value[:4]}...{value[-4:]}" if len(value) > 12 else "****"


def coerce_value(key: str, raw: str):
    """Store numeric settings as numbers so the settings file stays readable."""
    if key in _INT_KEYS:
        try:
            return int(raw)
        except ValueError:
            return raw
    if key == KEY_QUANTUM_SECONDS:
        try:
            return float(raw)
        except ValueError:
            return raw
    return raw


def report(summary: SyncSummary) -> int:
    """Print a summary and map its status onto an exit code."""
    if summary.status == "failed":
        print_error(summary.describe())
        return EXIT_FAILED
    if summary.status == "busy":
        print_warning(summary.describe())
        return EXIT_BUSY
    if summary.status == "skipped":
        print_info(summary.describe())
        return EXIT_OK
    print_success(summary.describe())
    return EXIT_OK


# =============================================================================
# Commands
# =============================================================================

def cmd_config(args, store: JsonFileSettingsStore) -> int:
    """Show or change stored settings."""
    if args.action == "set":
        if args.key not in SETTINGS_KEYS:
            print_error(f"Unknown setting '{args.key}'")
            print_info(f"Known settings: {', '.join(SETTINGS_KEYS)}")
            return EXIT_FAILED
        store.set(args.key, coerce_value(args.key, args.value))
        print_success(f"{args.key} updated")
        return EXIT_OK

    values = store.get_all()
    print(f"{BOLD}Settings{RESET}\n")
    for key in SETTINGS_KEYS:
        value = values.get(key)
        if value is None:
            shown = f"{YELLOW}(not set){RESET}"
        elif key == KEY_AUTH_TOKEN:
            shown = mask(str(value))
        else:
            shown = str(value)
        print(f"  {key}: {shown}")

    overridden = [env for env in ENV_OVERRIDES.values() if os.environ.get(env)]
    if overridden:
        print()
        print_info(f"Overridden by environment: {', '.join(overridden)}")
    return EXIT_OK


def cmd_test(args, engine: SyncEngine) -> int:
    """Test the helpdesk connection."""
    try:
        settings = SyncSettings.from_settings(engine.settings_store.get_all(), env=os.environ)
    except ConfigurationError as e:
        print_error(f"Not configured: {e}")
        print_info("Set baseUrl, authToken and periodId with 'hdsync config set'")
        return EXIT_FAILED

    print_info(f"Connecting to {settings.base_url}...")

    client = HelpdeskClient(
        base_url=settings.base_url,
        api_token=settings.api_token,
        site_id=settings.site_id,
        throttle_ms=0,
    )
    with client:
        result = client.health_check()

    if result["status"] == "healthy":
        print_success("Connected successfully!")
        print_success(f"Authenticated as: {result.get('user', 'unknown')}")
        return EXIT_OK

    print_error(f"Connection failed: {result.get('message', 'Unknown error')}")
    return EXIT_FAILED


def cmd_sync(args, engine: SyncEngine) -> int:
    return report(engine.continue_sync(interactive=not args.background))


def cmd_refresh(args, engine: SyncEngine) -> int:
    interactive = not args.background
    if args.start:
        return report(engine.start_refresh(interactive=interactive))
    return report(engine.continue_refresh(interactive=interactive))


def cmd_teams(args, engine: SyncEngine) -> int:
    return report(engine.refresh_teams(interactive=True))


def cmd_reset(args, engine: SyncEngine) -> int:
    if not args.yes:
        print_warning("This deletes every loaded ticket and all sync progress.")
        print_info("Re-run with --yes to confirm.")
    return report(engine.full_reset(confirm=args.yes))


def cmd_status(args, engine: SyncEngine) -> int:
    """Show sync status."""
    status = engine.status()
    sync = status["sync"]
    refresh = status["refresh"]

    print(f"{BOLD}Sync Status{RESET}\n")
    print(f"  Mode: {sync.get('syncMode')}")
    print(f"  Last page: {sync.get('syncLastPageIndex')} of {sync.get('syncLastPageIndexKnownTotal')}")
    print(f"  Watermark: {sync.get('syncWatermark') or '-'}")
    print(f"  Records stored: {status['records']}")

    locked = status["locked_configuration"]
    if locked:
        print(f"\n{BOLD}Locked configuration:{RESET}")
        for key, value in locked.items():
            print(f"  {key}: {value}")
    else:
        print_warning("  No load started yet")

    print(f"\n{BOLD}Refresh:{RESET}")
    if refresh.get("refreshComplete"):
        print(f"  Last completed pass: {refresh.get('refreshLastRunTimestamp') or '-'}")
    else:
        print(f"  Pass in progress since {refresh.get('refreshPassStartedAt')}, "
              f"page {refresh.get('refreshPage')}")

    if status["lock_held"]:
        print()
        print_info("A session currently holds the sync lock")

    if args.json:
        print()
        print(json.dumps(status, indent=2, default=str))
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Helpdesk ticket sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hdsync config set baseUrl https://helpdesk.example.org/api/v1
  hdsync config set periodId 2024-2025
  hdsync test                Test your connection
  hdsync sync --background   Scheduled run; skips if another run is active
  hdsync status              Show sync status
        """,
    )
    parser.add_argument("--home", help=f"Data directory (default: {DEFAULT_HOME}, or ${HOME_ENV})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    config_parser = subparsers.add_parser("config", help="Show or change settings")
    config_sub = config_parser.add_subparsers(dest="action", required=True)
    config_sub.add_parser("show", help="Show stored settings")
    set_parser = config_sub.add_parser("set", help="Change one setting")
    set_parser.add_argument("key")
    set_parser.add_argument("value")

    subparsers.add_parser("test", help="Test your connection")

    sync_parser = subparsers.add_parser("sync", help="Advance the ticket load")
    sync_parser.add_argument("--background", action="store_true",
                             help="Skip immediately if another session holds the lock")

    refresh_parser = subparsers.add_parser("refresh", help="Refresh recently modified tickets")
    refresh_parser.add_argument("--start", action="store_true", help="Begin a new refresh pass")
    refresh_parser.add_argument("--background", action="store_true",
                                help="Skip immediately if another session holds the lock")

    reset_parser = subparsers.add_parser("reset", help="Delete loaded tickets and progress")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the reset")

    subparsers.add_parser("teams", help="Reload the teams table")

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("--json", action="store_true", help="Also print raw status JSON")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    configure_logging(args.verbose)
    home = get_home(args)

    if args.command == "config":
        return cmd_config(args, JsonFileSettingsStore(home / "settings.json"))

    engine = SyncEngine.from_home(home, env=os.environ)

    commands = {
        "test": cmd_test,
        "sync": cmd_sync,
        "refresh": cmd_refresh,
        "reset": cmd_reset,
        "teams": cmd_teams,
        "status": cmd_status,
    }

    try:
        return commands[args.command](args, engine)
    finally:
        engine.record_store.close()


if __name__ == "__main__":
    sys.exit(main())
