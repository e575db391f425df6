"""CLI entry point for the Parlae PMS integration.

Operational commands for local testing and for running the scheduled jobs
from cron / ECS scheduled tasks.  For serving traffic, use the FastAPI
server (parlae_pms/server.py).

Usage:
    python -m parlae_pms.main test-connection
    python -m parlae_pms.main refresh-tokens [--force]
    python -m parlae_pms.main poll-writebacks
    python -m parlae_pms.main --debug test-connection   # shows HTTP calls
"""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("parlae_pms").setLevel(logging.DEBUG if debug else logging.INFO)


def _test_connection() -> int:
    from parlae_pms.services.sikka_service import get_pms_service

    response = get_pms_service().test_connection()
    if response.success:
        print(f"OK: {response.data['message']}")
        return 0
    print(f"FAILED ({response.error.code}): {response.error.message}")
    return 1


def _refresh_tokens(force: bool) -> int:
    from parlae_pms.config import SIKKA_APP_ID, SIKKA_APP_KEY, SIKKA_BASE_URL
    from parlae_pms.services.sikka_service import get_pms_service
    from parlae_pms.services.token_refresh import TokenRefreshJob

    service = get_pms_service()
    job = TokenRefreshJob(
        service.credential_store,
        app_id=SIKKA_APP_ID,
        app_key=SIKKA_APP_KEY,
        base_url=SIKKA_BASE_URL,
    )
    results = job.refresh_all(force=force)
    print(f"Token refresh: {results['success']} succeeded, {results['failed']} failed")
    return 1 if results["failed"] else 0


def _poll_writebacks() -> int:
    from parlae_pms.services.sikka_service import get_pms_service
    from parlae_pms.services.writebacks import WritebackSweeper

    service = get_pms_service()
    sweeper = WritebackSweeper(service.client, service.writeback_store)
    marked = sweeper.mark_stuck_as_failed()
    summary = sweeper.poll_pending()
    print(
        f"Writeback sweep: checked {summary['checked']}, updated {summary['updated']}, "
        f"skipped {summary['skipped']}, rate-limited {summary['rate_limited']}, "
        f"marked {marked} stuck as failed"
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Parlae PMS integration CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("test-connection", help="Verify Sikka credentials and connectivity")
    refresh = commands.add_parser("refresh-tokens", help="Renew stored Sikka request keys")
    refresh.add_argument(
        "--force", action="store_true",
        help="Also retry integrations currently in ERROR state",
    )
    commands.add_parser("poll-writebacks", help="Resolve pending writebacks in the background")
    args = parser.parse_args(argv)

    load_dotenv()
    _configure_logging(debug=args.debug)

    # Imported lazily so --help works without Sikka credentials configured
    if args.command == "test-connection":
        return _test_connection()
    if args.command == "refresh-tokens":
        return _refresh_tokens(args.force)
    return _poll_writebacks()


if __name__ == "__main__":
    sys.exit(main())
