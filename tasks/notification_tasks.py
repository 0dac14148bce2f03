"""
tasks/notification_tasks.py
Celery tasks for scheduled notification delivery.

The sweep is idempotent and safe to run concurrently with itself:
rows are claimed one by one in the database (see
services/notification/dispatcher.py), so overlapping beats never
double-send and a skipped beat loses nothing.
"""

import asyncio
import logging

from config.database import build_engine, build_sessionmaker, get_db_context
from services.notification.dispatcher import sweep
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def sweep_once() -> dict:
    # Each task run owns its event loop, so pooled connections cannot be reused
    engine = build_engine(pooled=False)
    try:
        async with get_db_context(build_sessionmaker(engine)) as db:
            result = await sweep(db)
        return {"delivered": result.delivered, "dropped": result.dropped}
    finally:
        await engine.dispose()


@celery_app.task(bind=True, max_retries=0, ignore_result=True)
def sweep_scheduled_notifications(self) -> dict:
    """Beat task: runs every minute. Delivers every due scheduled notification."""
    result = asyncio.run(sweep_once())
    if result["delivered"] or result["dropped"]:
        logger.info(
            "Sweep %s: delivered=%d dropped=%d",
            self.request.id, result["delivered"], result["dropped"],
        )
    return result
