"""CLI entry point for the periodic billing jobs.

Usage:
    python -m rentledger.cli.jobs generate [--month MM --year YYYY]
    python -m rentledger.cli.jobs sweep [--grace-days N] [--late-fee-pct P]

Both jobs are safe to re-run: the generator skips tenants that already have a
record for the period and the sweeper never charges a late fee twice.

Exit Codes:
    0 - Success
    1 - Failure: invalid arguments or database error
"""

import argparse
import logging
import sys
from datetime import date
from typing import Optional, Sequence

from dotenv import load_dotenv


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rentledger-jobs", description=__doc__.splitlines()[0])
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser("generate", help="Create expected rent records for a period")
    generate.add_argument("--month", type=int, help="Billing month 1-12 (default: current)")
    generate.add_argument("--year", type=int, help="Billing year (default: current)")

    sweep = subparsers.add_parser("sweep", help="Mark late pending/partial records overdue")

    for sub in (generate, sweep):
        sub.add_argument("--grace-days", type=int, default=None, help="Grace period in days")
        sub.add_argument("--late-fee-pct", type=float, default=None, help="Late fee percentage")
        sub.add_argument("--log-file", default="logs/jobs.log", help="Log file path")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Run one billing job.

    Returns:
        Exit code: 0 for success, 1 for failure
    """
    args = build_parser().parse_args(argv)
    load_dotenv()

    from rentledger.services.config import get_settings
    from rentledger.services.logging import setup_server_logging

    settings = get_settings()
    setup_server_logging(args.log_file, settings.log_level)
    logger = logging.getLogger("rentledger.cli.jobs")

    try:
        grace, pct = settings.billing_parameters(args.grace_days, args.late_fee_pct)

        from rentledger.models import BillingPeriod
        from rentledger.services import SessionLocal
        from rentledger.services.overdue_service import OverdueSweeper
        from rentledger.services.rent_generator_service import MonthlyRentGenerator

        db = SessionLocal()
        try:
            if args.command == "generate":
                today = date.today()
                period = BillingPeriod.parse(args.month or today.month, args.year or today.year)
                report = MonthlyRentGenerator(db).generate(period, grace, pct)
                logger.info(
                    "Generate %s finished: %s created, %s skipped",
                    period,
                    report.generated,
                    len(report.skipped),
                )
                for reason in report.skipped:
                    logger.info("Skipped: %s", reason)
            else:
                report = OverdueSweeper(db).sweep(grace, pct)
                logger.info("Sweep finished: %s records marked overdue", report.marked_overdue)
        finally:
            db.close()
        return 0

    except KeyboardInterrupt:
        logger.warning("Job interrupted by user")
        return 1
    except Exception as e:
        logger.error(f"Job {args.command} failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
