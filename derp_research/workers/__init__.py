# =============================================================================
# Workers Package — Celery Background Maintenance
# =============================================================================
#   - celery_app.py: Celery application, configuration and beat schedule
#   - tasks.py: memory compaction and search-cache expiry
# =============================================================================
