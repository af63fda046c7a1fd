#!/usr/bin/env python3
"""
SiteDetox - Main Entry Point

Blocks distracting sites, either outright or through a daily time quota
that shrinks every day of the detox.

Every command starts an in-process coordinator on the local state file
and talks to it through the control surface, the same way the panel
does.

Usage:
    python main.py status                 # Show rules and remaining time
    python main.py add youtube.com        # Add a domain (detox or hard, per mode)
    python main.py add example.com --hard # Always block
    python main.py remove youtube.com
    python main.py clear
    python main.py enable | disable
    python main.py mode detox|normal
    python main.py check https://youtube.com/watch
    python main.py stats
    python main.py run                    # Keep the coordinator and its alarms running
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict

import config
from core.coordinator import Coordinator
from core.host import InMemoryTabHost, LoggingNotifier
from core.store import JsonFileStore
from instance_lock import check_single_instance, get_existing_pid
from sync.channel import MessageChannel
from sync.control_surface import ControlSurface
from tracking.analytics import describe_minutes, generate_summary_text

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format=config.LOG_FORMAT
)
logger = logging.getLogger(__name__)


class SiteDetoxApp:
    """
    Wires a coordinator and a control surface over one channel.
    """

    def __init__(self):
        self.channel = MessageChannel()
        self.coordinator = Coordinator(
            store=JsonFileStore(config.STATE_FILE),
            channel=self.channel,
            tabs=InMemoryTabHost(),
            notifier=LoggingNotifier(),
        )
        self.panel = ControlSurface(self.channel, self.coordinator.scheduler)

    async def __aenter__(self) -> 'SiteDetoxApp':
        await self.coordinator.start()
        await self.panel.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.panel.close()
        await self.coordinator.stop()


def _print_result(result: Dict[str, Any], ok_message: str) -> int:
    if result["success"]:
        print(f"✅ {ok_message}")
        return 0
    print(f"❌ {result['error']}")
    return 1


def print_status(panel: ControlSurface) -> None:
    replica = panel.replica
    state = "ON" if replica.enabled else config.BADGE_DISABLED_TEXT
    print(f"\nSiteDetox is {state} (mode: {replica.mode})")

    if not replica.rules:
        print("  No blocked sites yet.\n")
        return

    for rule in replica.rules:
        if not rule.detox:
            print(f"  🚫 {rule.domain:<30} always blocked  [{rule.category}]")
            continue
        info = panel.remaining_time_info(rule.domain)
        if info is None:
            print(f"  ⏳ {rule.domain:<30} no quota record [{rule.category}]")
            continue
        print(
            f"  ⏳ {rule.domain:<30} {info['formatted']:>6} left of "
            f"{info['daily_limit']:g} min ({info['status']})  [{rule.category}]"
        )
    print(f"\n  Lockouts today: {panel.lockouts_today}\n")


async def run_forever() -> None:
    """Keep the coordinator alive until cancelled."""
    print("SiteDetox coordinator running. Press Ctrl+C to stop.")
    stop = asyncio.Event()
    await stop.wait()


async def run_command(args: argparse.Namespace) -> int:
    async with SiteDetoxApp() as app:
        panel = app.panel

        if args.command == "status":
            print_status(panel)
            return 0

        if args.command == "add":
            detox = False if args.hard else (True if args.detox else None)
            result = await panel.add_domain(args.domain, detox=detox)
            return _print_result(result, f"Added {args.domain}")

        if args.command == "remove":
            result = await panel.remove_domain(args.domain)
            return _print_result(result, f"Removed {args.domain}")

        if args.command == "clear":
            result = await panel.clear_all()
            return _print_result(result, "Cleared all blocked sites")

        if args.command in ("enable", "disable"):
            result = await panel.set_enabled(args.command == "enable")
            return _print_result(result, f"Blocking {args.command}d")

        if args.command == "mode":
            result = await panel.set_mode(args.mode)
            return _print_result(result, f"New sites will use {args.mode} mode")

        if args.command == "check":
            result = await panel.check_url(args.url)
            if not result["success"]:
                print(f"❌ {result['error']}")
                return 1
            if result["should_block"]:
                print(f"🚫 Blocked ({result['reason']}, rule: {result['domain']})")
            else:
                print("✅ Allowed")
                info = await panel.detox_info(result["domain"]) if result["domain"] else None
                if info:
                    print(f"   {describe_minutes(info['remaining'])} left today "
                          f"(day {info['day']}, tomorrow {info['next_limit']:g} min)")
            return 0

        if args.command == "stats":
            print(generate_summary_text(panel.stats(), app.coordinator.now()))
            return 0

        if args.command == "run":
            await run_forever()
            return 0

    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SiteDetox - Gradual site blocker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py add youtube.com        Start a detox for youtube.com
  python main.py add example.com --hard Always block example.com
  python main.py status                 Show remaining time per site

Every command, status and check included, loads the state into its own
coordinator and may write it back (for example after a daily reset), so
all commands refuse to start while another one is running. Stop
`python main.py run` before using the other commands.
        """
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("status", help="Show blocked sites and remaining time")

    add = commands.add_parser("add", help="Block a domain")
    add.add_argument("domain")
    kind = add.add_mutually_exclusive_group()
    kind.add_argument("--hard", action="store_true", help="Always block (no daily quota)")
    kind.add_argument("--detox", action="store_true", help="Use a decaying daily quota")

    remove = commands.add_parser("remove", help="Unblock a domain")
    remove.add_argument("domain")

    commands.add_parser("clear", help="Remove every blocked domain")
    commands.add_parser("enable", help="Turn blocking on")
    commands.add_parser("disable", help="Turn blocking off")

    mode = commands.add_parser("mode", help="Mode for newly added domains")
    mode.add_argument("mode", choices=config.VALID_MODES)

    check = commands.add_parser("check", help="Would this URL be blocked right now?")
    check.add_argument("url")

    commands.add_parser("stats", help="Show detox statistics")
    commands.add_parser("run", help="Run the coordinator until interrupted")
    return parser


def main():
    """
    Main entry point: parses arguments and runs one command.
    """
    args = build_parser().parse_args()

    # One coordinator per data directory
    if not check_single_instance():
        existing_pid = get_existing_pid()
        pid_info = f" (PID: {existing_pid})" if existing_pid else ""
        print(f"\nSiteDetox is already running{pid_info}.")
        print("Every command needs exclusive access to the saved state; stop it first.\n")
        sys.exit(1)

    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        print("\n\nGoodbye!")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\nFatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
