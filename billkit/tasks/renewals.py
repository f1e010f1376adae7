"""
Renewal Tasks - Celery beat schedule driving the batch entry points
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from celery import Celery

from ..core.config import settings
from ..core.database import create_engine
from ..engine import create_billing_from_settings

logger = logging.getLogger(__name__)

# Initialize Celery
celery_app = Celery(
    'billkit_tasks',
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_routes={
        'billkit.tasks.renewals.*': {'queue': 'billing'},
    },
    beat_schedule={
        'process-renewals': {
            'task': 'billkit.tasks.renewals.process_renewals',
            'schedule': float(settings.RENEWAL_SCHEDULE_SECONDS),
        },
        'process-trial-ends': {
            'task': 'billkit.tasks.renewals.process_trial_ends',
            'schedule': float(settings.TRIAL_END_SCHEDULE_SECONDS),
        },
    },
)


async def _run_batch(operation: str, customer_id: Optional[str], dry_run: bool, limit: Optional[int]) -> Dict[str, Any]:
    # Each task gets its own event loop, so the database engine cannot be shared across runs
    db_engine = create_engine()
    try:
        billing = create_billing_from_settings(db_engine=db_engine)
        result = await getattr(billing, operation)(
            customer_id=customer_id,
            dry_run=dry_run,
            limit=limit or settings.RENEWAL_BATCH_LIMIT,
        )
    finally:
        await db_engine.dispose()

    if result.failed:
        logger.warning(f"{operation}: {result.failed} of {result.processed} failed, retried on the next run")
    return result.model_dump(mode='json')


@celery_app.task(name='billkit.tasks.renewals.process_renewals')
def process_renewals(customer_id: Optional[str] = None, dry_run: bool = False, limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Renew every subscription whose billing period has ended
    """
    return asyncio.run(_run_batch('process_renewals', customer_id, dry_run, limit))


@celery_app.task(name='billkit.tasks.renewals.process_trial_ends')
def process_trial_ends(customer_id: Optional[str] = None, dry_run: bool = False, limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Convert or cancel trials that have run out
    """
    return asyncio.run(_run_batch('process_trial_ends', customer_id, dry_run, limit))
