"""Daily entry point for cron or a platform scheduler.

Fires the recurring schedules due on the run date, then clones transactions
flagged as recurring into the current month.
"""

from __future__ import annotations

import argparse
from datetime import date
from typing import Optional, Sequence

import structlog

from finledger.currency_conversion import CompositeRateProvider, OpenExchangeRateProvider, StaticRateProvider
from finledger.db import build_engine, init_db
from finledger.ledger import BalanceLedger
from finledger.log import configure_logging
from finledger.market_quotes import YahooQuoteProvider
from finledger.models import utcnow
from finledger.recurring_engine import RecurringScheduleEngine
from finledger.settings import load_settings

logger = structlog.get_logger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Process due recurring schedules.")
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Run date as YYYY-MM-DD (defaults to today, UTC).",
    )
    parser.add_argument(
        "--skip-clone",
        action="store_true",
        help="Do not clone transactions flagged as recurring.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    configure_logging(settings)

    engine = build_engine(settings.database_url)
    init_db(engine)
    ledger = BalanceLedger(
        engine,
        quote_provider=YahooQuoteProvider(base_url=settings.quote_url),
        rate_provider=CompositeRateProvider(
            primary=OpenExchangeRateProvider(
                base_url=settings.exchange_rate_url,
                cache_ttl_seconds=settings.rate_cache_ttl_seconds,
            ),
            fallback=StaticRateProvider(),
        ),
    )
    schedules = RecurringScheduleEngine(engine, ledger)

    run_date = args.date or utcnow().date()
    report = schedules.process_due(run_date)
    cloned = [] if args.skip_clone else schedules.clone_recurring_transactions(run_date)
    logger.info(
        "scheduled_job_finished",
        run_date=run_date.isoformat(),
        fired=len(report.fired),
        failed=len(report.failed),
        cloned=len(cloned),
    )
    return 1 if report.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
