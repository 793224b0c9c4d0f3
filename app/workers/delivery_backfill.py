"""
Delivery Tracking Backfill Worker

Messages stored before delivery tracking existed have delivered = NULL. The
message view already treats them as delivered at their own timestamp; this
worker writes that value back so the stored records agree with what clients see.

Features:
- Processes legacy records in batches of settings.backfill_batch_size
- One commit per batch
- Polls every settings.backfill_interval_seconds, or runs a single pass

Usage:
    python -m workers.delivery_backfill          # poll forever
    python -m workers.delivery_backfill --once   # drain and exit
"""
import argparse
import logging
import time
from sqlalchemy.orm import Session

from core.config import settings
from core.logging_config import configure_logging
from db.database import SessionLocal
from db.repository import Repository

logger = logging.getLogger(__name__)


def backfill_batch(db: Session, batch_size: int) -> int:
    """
    Mark one batch of legacy messages as delivered at their timestamp.

    Returns:
        Number of messages updated
    """
    repository = Repository(db)
    messages = repository.get_untracked_delivery_messages(batch_size)
    if not messages:
        return 0

    for message in messages:
        message.delivered = True
        if message.delivered_at is None:
            message.delivered_at = message.timestamp
    repository.save_messages(messages)
    return len(messages)


def run_once(batch_size: int = None) -> int:
    """
    Drain every legacy record.

    Returns:
        Total number of messages updated
    """
    batch_size = batch_size or settings.backfill_batch_size
    total = 0
    db = SessionLocal()
    try:
        while True:
            updated = backfill_batch(db, batch_size)
            total += updated
            if updated < batch_size:
                break
    finally:
        db.close()

    if total:
        logger.info(f"Backfilled delivery state for {total} messages")
    return total


def poll_forever():
    """Run a backfill pass every backfill_interval_seconds."""
    logger.info("Delivery backfill worker started")
    logger.info(f"Polling every {settings.backfill_interval_seconds} seconds")

    while True:
        try:
            run_once()
        except Exception as e:
            logger.error(f"Delivery backfill pass failed: {e}", exc_info=True)
        time.sleep(settings.backfill_interval_seconds)


def main():
    parser = argparse.ArgumentParser(description="Backfill delivery state for legacy messages")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    configure_logging(service_name="messaging-backfill", level=settings.log_level, enable_json=settings.log_json)

    if args.once:
        run_once()
    else:
        try:
            poll_forever()
        except KeyboardInterrupt:
            logger.info("Delivery backfill worker stopped")


if __name__ == "__main__":
    main()
