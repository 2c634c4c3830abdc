# scripts/run_billing_tick.py
# Cron entry point: roll every active subscription forward one billing period.

import logging
import os
import sys

# --- Ensure project root is on PYTHONPATH ---
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(ROOT)

from booking import config
from booking.billing_service import generate_billing_periods
from models import client, payment, scheduling  # noqa: F401
from models.base import get_session


def run():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with get_session() as session:
        result = generate_billing_periods(session)
    print(
        "Processed", result.subscriptions_processed, "subscriptions,",
        "created", result.periods_created, "billing periods.",
    )


if __name__ == "__main__":
    run()
