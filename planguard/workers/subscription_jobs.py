"""
Scheduled subscription jobs.

Run from cron (or any scheduler), e.g. hourly:

    python -m planguard.workers.subscription_jobs sweep
    python -m planguard.workers.subscription_jobs cleanup --max-age-hours 24

Both jobs hold a distributed lock, so overlapping runs across instances are no-ops.
"""
from __future__ import annotations

import argparse
import logging
from typing import Optional

from planguard.core.cache import get_cache
from planguard.core.config import settings
from planguard.core.logging import configure_logging
from planguard.features.billing.jobs import cleanup_abandoned_payments, handle_expired_subscriptions
from planguard.features.plans.config_cache import get_plan_config_cache

logger = logging.getLogger("planguard.jobs")


def run_sweep() -> dict:
    processed = handle_expired_subscriptions(get_plan_config_cache(), get_cache())
    return {"job": "sweep", "processed": processed}


def run_cleanup(max_age_hours: Optional[int] = None) -> dict:
    cleaned = cleanup_abandoned_payments(get_cache(), max_age_hours=max_age_hours)
    return {"job": "cleanup", "cleaned": cleaned}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a subscription maintenance job.")
    parser.add_argument("job", choices=["sweep", "cleanup"])
    parser.add_argument("--max-age-hours", type=int, default=None, help="cleanup only: pending payment age cutoff")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    if args.job == "sweep":
        result = run_sweep()
    else:
        result = run_cleanup(args.max_age_hours)
    logger.info("[jobs] finished", extra=result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
