# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs the periodic maintenance jobs that keep the research database
# bounded:
#   - compact_memories           → daily, drops memories older than
#                                  MEMORY_MAX_AGE_DAYS and their vectors
#   - clear_expired_search_cache → hourly, drops search results past their TTL
#
# Start a worker with the scheduler embedded:
#   celery -A derp_research.workers.celery_app worker --beat --loglevel=info
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌──────────┐
# │ Beat     │────▶│ Redis │────▶│ Celery Worker│────▶│ Database │
# │ (schedule)│    │(broker)│    │ (asyncio.run) │    │ (SQLite) │
# └──────────┘     └───────┘     └──────────────┘     └──────────┘
# =============================================================================

from celery import Celery
from celery.schedules import crontab

from derp_research.config import settings

celery_app = Celery(
    "derp_research.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Maintenance tasks are idempotent, so re-running after a crash is safe.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    task_soft_time_limit=300,
    task_time_limit=600,

    # --- Results ---
    result_expires=3600,

    # --- Schedule ---
    timezone="UTC",
    beat_schedule={
        "compact-memories-daily": {
            "task": "compact_memories",
            "schedule": crontab(hour=3, minute=0),
        },
        "clear-search-cache-hourly": {
            "task": "clear_expired_search_cache",
            "schedule": crontab(minute=15),
        },
    },

    include=["derp_research.workers.tasks"],
)
