"""
Integration Refresh - Main Entry Point

Usage:
    python main.py --mode refresh --user-id 1                 # Refresh all linked accounts once
    python main.py --mode refresh --user-id 1 --account-id 7  # Refresh one account
    python main.py --mode sweep                               # Run one token sweep
    python main.py --mode run --env prod                      # Scheduler loops until Ctrl+C
"""

from __future__ import annotations
import asyncio
import argparse
import json
import signal
import sys

from config.config_manager import ConfigManager
from investtrack.application import ServiceContainer, build_services
from investtrack.utils.logging_setup import (
    get_logger,
    set_log_timezone,
    setup_category_logging,
    shutdown_logging,
)

logger = get_logger("investtrack.main")


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Investment tracker integration refresh",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --mode refresh --user-id 1
  python main.py --mode refresh --user-id 1 --account-id 7
  python main.py --mode sweep --verbose
  python main.py --mode run --env prod
        """
    )

    parser.add_argument(
        "--mode",
        type=str,
        default="refresh",
        choices=["refresh", "sweep", "run"],
        help="refresh once (default), sweep tokens once, or run the scheduler"
    )

    parser.add_argument(
        "--env",
        type=str,
        default="dev",
        choices=["dev", "prod"],
        help="Environment to run in (default: dev)"
    )

    parser.add_argument(
        "--config-dir",
        type=str,
        default="config",
        help="Directory holding base.yaml, {env}.yaml and secrets.yaml"
    )

    parser.add_argument(
        "--user-id",
        type=int,
        help="User whose linked accounts are refreshed (refresh mode)"
    )

    parser.add_argument(
        "--account-id",
        type=int,
        help="Refresh only this linked account (refresh mode, needs --user-id)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging (DEBUG level for all categories)"
    )

    args = parser.parse_args()
    if args.mode == "refresh" and args.user_id is None:
        parser.error("--mode refresh requires --user-id")
    return args


async def run_refresh(container: ServiceContainer, args: argparse.Namespace) -> int:
    orchestrator = container.orchestrator
    if args.account_id is not None:
        result = await orchestrator.refresh_account(args.account_id, args.user_id)
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.success else 1

    summary = await orchestrator.refresh_all_integrations(args.user_id)
    print(json.dumps({
        "total": summary.total,
        "successful": summary.successful,
        "failed": summary.failed,
        "results": [r.to_dict() for r in summary.results],
    }, indent=2))
    return 0 if summary.failed == 0 else 1


async def run_sweep(container: ServiceContainer, args: argparse.Namespace) -> int:
    await container.scheduler.sweep_tokens()
    statuses = await container.tokens.check_token_expiration_status()
    for status in statuses:
        if status.needs_warning:
            print(f"Account {status.account_id}: re-authenticate within "
                  f"{status.days_until_reauth} days (state={status.state.value})")
    return 0


async def run_scheduler(container: ServiceContainer, args: argparse.Namespace) -> int:
    await container.scheduler.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Not available on Windows event loops.
            pass

    logger.info("Scheduler running; press Ctrl+C to stop")
    await stop.wait()
    return 0


RUNNERS = {
    "refresh": run_refresh,
    "sweep": run_sweep,
    "run": run_scheduler,
}


async def main_async(args: argparse.Namespace) -> int:
    """Main async entry point."""
    config = ConfigManager(config_dir=args.config_dir, env=args.env).load()

    set_log_timezone(config.logging.timezone)
    setup_category_logging(
        env=args.env,
        log_dir=config.logging.dir,
        level=config.logging.level,
        console=config.logging.console or args.mode != "run",
        verbose=args.verbose,
    )
    logger.info(f"Starting integration refresh (env={args.env}, mode={args.mode})")

    container = build_services(config)
    await container.start()
    try:
        return await RUNNERS[args.mode](container, args)
    finally:
        await container.stop()


def main() -> None:
    """Main entry point."""
    args = parse_args()
    try:
        exit_code = asyncio.run(main_async(args))
    except KeyboardInterrupt:
        print("Shutdown requested")
        exit_code = 0
    except Exception as e:
        print(f"Fatal error: {e}")
        exit_code = 1
    finally:
        shutdown_logging()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
