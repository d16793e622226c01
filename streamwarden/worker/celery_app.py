from celery import Celery
from ..core.config import settings

# Create Celery instance
celery_app = Celery(
    'streamwarden_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['streamwarden.worker.tasks']
)

# Configure Celery
celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    'sweep-stale-sessions': {
        'task': 'streamwarden.worker.tasks.sweep_stale_sessions',
        'schedule': settings.sweep_interval_ms / 1000,
    },
    'reconcile-sessions': {
        'task': 'streamwarden.worker.tasks.reconcile_sessions',
        'schedule': settings.reconciliation_interval_ms / 1000,
    },
}
