"""
Celery Tasks
Background maintenance of the order lifecycle.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from canteen.celery_worker import celery_app
from canteen.core.config import get_settings
from canteen.database import build_engine, build_session_factory
from canteen.services.orders import OrderLifecycleManager
from canteen.services.payment import get_payment_service

logger = logging.getLogger(__name__)


async def _expire(ttl_minutes: int) -> int:
    # Each run gets its own engine: the pool must not outlive the event loop.
    settings = get_settings()
    engine = build_engine(settings.database_url)
    try:
        manager = OrderLifecycleManager(
            session_factory=build_session_factory(engine),
            payment_service=get_payment_service(),
            settings=settings,
        )
        return await manager.expire_pending_orders(timedelta(minutes=ttl_minutes))
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def expire_stale_orders(self, ttl_minutes: Optional[int] = None) -> dict:
    """
    Cancel unpaid orders older than the configured TTL.

    Unpaid orders never committed stock, so nothing is restocked.

    Returns:
        dict: Number of orders cancelled and timing
    """
    ttl_minutes = ttl_minutes or get_settings().pending_order_ttl_minutes
    start_time = time.time()

    expired = asyncio.run(_expire(ttl_minutes))

    elapsed = round(time.time() - start_time, 3)
    logger.info(f"Task {self.request.id}: expired {expired} order(s) in {elapsed}s")

    return {
        "expired": expired,
        "ttl_minutes": ttl_minutes,
        "processing_time_seconds": elapsed,
        "timestamp": datetime.now().isoformat(),
    }


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        "status": "healthy",
        "worker": "celery",
        "timestamp": datetime.now().isoformat()
    }
