"""
Celery app for the order engine (Redis broker and result backend).

Runs the cancellation expiry tasks scheduled by CeleryTimerBackend and,
through beat, the periodic sweep for overdue cancellations.
"""

from celery import Celery

from cafe_orders.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    'cafe_orders_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['cafe_orders.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_concurrency=4,  # Number of worker processes

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies

    # Fix for Celery 6.0 warning
    broker_connection_retry_on_startup=True,

    # Periodic sweep for timers lost with a worker or broker
    beat_schedule={
        'sweep-expired-cancellations': {
            'task': 'cafe_orders.tasks.sweep_expired_cancellations',
            'schedule': settings.cancellation_sweep_interval_seconds,
        },
    },
)


if __name__ == '__main__':
    celery_app.start()
