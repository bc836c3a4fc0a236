# main.py

"""Entry point for the price_watch engine (daemon or one-shot commands)."""

import argparse
import asyncio
import logging
import sys

from src.config.logging_config import setup_logging
from src.config.settings import Settings

logger = logging.getLogger("price_watch.main")


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI."""
    valid_ids = ", ".join(s["id"] for s in Settings.AVAILABLE_SOURCES)

    parser = argparse.ArgumentParser(
        prog="price_watch",
        description="Multi-retailer price monitoring and alerting engine.",
        epilog=f"Available sources: {valid_ids}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Echo INFO logs to stderr.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run scheduled sweeps and the watch monitor.")

    p = sub.add_parser("refresh", help="Refresh one product now.")
    p.add_argument("product_id")

    sub.add_parser("refresh-all", help="Run a full sweep now.")
    sub.add_parser(
        "refresh-featured", help="Run the featured-products sweep now.",
    )
    sub.add_parser("status", help="Print sweep and monitor status as JSON.")

    p = sub.add_parser("history", help="Show a product's price history.")
    p.add_argument("product_id")
    p.add_argument(
        "-d",
        "--days",
        type=float,
        default=30,
        help="Look-back window in days (default: 30).",
    )

    p = sub.add_parser("check", help="Evaluate watches against current prices.")
    p.add_argument(
        "-w",
        "--watch",
        default=None,
        dest="watch_id",
        help="Evaluate a single watch instead of all active ones.",
    )

    p = sub.add_parser("watches", help="List watches.")
    p.add_argument("-u", "--owner", default=None, dest="owner_id")
    p.add_argument(
        "--state",
        choices=["active", "triggered", "paused"],
        default=None,
        help="Only watches in this state.",
    )

    p = sub.add_parser("pause", help="Pause a watch.")
    p.add_argument("watch_id")

    p = sub.add_parser("reactivate", help="Re-arm a paused or fired watch.")
    p.add_argument("watch_id")

    p = sub.add_parser("add-product", help="Add or update a catalog product.")
    p.add_argument("product_id")
    p.add_argument("name")
    p.add_argument("-b", "--baseline", default=None, help="Baseline price.")
    p.add_argument(
        "-s",
        "--source",
        action="append",
        dest="sources",
        metavar="SOURCE=URL",
        help="Retailer URL, repeatable (e.g. amazon=https://...).",
    )
    p.add_argument("--featured", action="store_true", default=False)

    p = sub.add_parser("add-watch", help="Create a price watch.")
    p.add_argument("owner_id")
    p.add_argument("product_id")
    p.add_argument(
        "-k",
        "--kind",
        choices=["absolute_drop", "percentage_drop", "restock"],
        default="absolute_drop",
    )
    p.add_argument("-t", "--target", default=None, help="Target price.")
    p.add_argument(
        "-p", "--percent", default=None, help="Drop threshold in percent.",
    )
    p.add_argument("--no-email", action="store_true", default=False)
    p.add_argument("--no-push", action="store_true", default=False)

    p = sub.add_parser(
        "edit-watch", help="Change a watch's condition or channels.",
    )
    p.add_argument("watch_id")
    p.add_argument("-t", "--target", default=None, help="New target price.")
    p.add_argument(
        "-p", "--percent", default=None, help="New drop threshold in percent.",
    )
    for channel in ("email", "push", "in-app"):
        p.add_argument(
            f"--{channel}",
            action=argparse.BooleanOptionalAction,
            default=None,
            help=f"Switch {channel} delivery on or off.",
        )

    p = sub.add_parser("stats", help="Watch counts and savings for an owner.")
    p.add_argument("owner_id")

    p = sub.add_parser("inbox", help="Show an owner's in-app notifications.")
    p.add_argument("owner_id")
    p.add_argument("--unread", action="store_true", default=False)

    p = sub.add_parser("mark-read", help="Mark an in-app notification read.")
    p.add_argument("notification_id")

    p = sub.add_parser(
        "delete-owner", help="Delete all watches of an owner.",
    )
    p.add_argument("owner_id")

    p = sub.add_parser(
        "scrape", help="Fetch one URL through one source adapter.",
    )
    p.add_argument("source")
    p.add_argument("url")

    sub.add_parser("health", help="Probe every retailer's homepage.")
    return parser


def _dispatch(args: argparse.Namespace) -> int:
    """Map a parsed command to its runner coroutine."""
    from src.cli import runner

    cmd = args.command
    if cmd == "run":
        coro = runner.run_daemon()
    elif cmd == "refresh":
        coro = runner.run_refresh(args.product_id)
    elif cmd == "refresh-all":
        coro = runner.run_refresh_all()
    elif cmd == "refresh-featured":
        coro = runner.run_refresh_featured()
    elif cmd == "status":
        coro = runner.run_status()
    elif cmd == "history":
        coro = runner.run_history(args.product_id, args.days)
    elif cmd == "check":
        coro = runner.run_check(args.watch_id)
    elif cmd == "watches":
        coro = runner.run_list_watches(args.owner_id, args.state)
    elif cmd == "pause":
        coro = runner.run_set_state(args.watch_id, pause=True)
    elif cmd == "reactivate":
        coro = runner.run_set_state(args.watch_id, pause=False)
    elif cmd == "add-product":
        coro = runner.run_add_product(
            args.product_id,
            args.name,
            args.baseline,
            args.sources,
            args.featured,
        )
    elif cmd == "add-watch":
        coro = runner.run_add_watch(
            args.owner_id,
            args.product_id,
            args.kind,
            args.target,
            args.percent,
            args.no_email,
            args.no_push,
        )
    elif cmd == "edit-watch":
        coro = runner.run_edit_watch(
            args.watch_id,
            args.target,
            args.percent,
            args.email,
            args.push,
            args.in_app,
        )
    elif cmd == "stats":
        coro = runner.run_owner_stats(args.owner_id)
    elif cmd == "inbox":
        coro = runner.run_inbox(args.owner_id, args.unread)
    elif cmd == "mark-read":
        coro = runner.run_mark_read(args.notification_id)
    elif cmd == "delete-owner":
        coro = runner.run_delete_owner(args.owner_id)
    elif cmd == "scrape":
        coro = runner.run_scrape(args.source, args.url)
    else:
        coro = runner.run_health_check()
    return asyncio.run(coro)


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    log_file = setup_logging(verbose=args.verbose)
    logger.info("price_watch %s starting, log file: %s", args.command, log_file)

    try:
        exit_code = _dispatch(args)
    except KeyboardInterrupt:
        exit_code = 130
    except Exception:
        logger.critical("Fatal error in %s", args.command, exc_info=True)
        raise
    finally:
        logger.info("price_watch shutting down")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
