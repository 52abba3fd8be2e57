"""Celery Beat periodic task schedules.

Scheduled tasks:
- run_scrape_cycle: every SCRAPE_INTERVAL_SECONDS - scrape, reconcile, aggregate and alert
- import_timetable: daily shortly after local midnight - insert today's and the next days' planned runs
"""

from celery.schedules import crontab, schedule

from delay_stats.celery.app import celery_app
from delay_stats.core.config import settings

celery_app.conf.beat_schedule = {
    "run-scrape-cycle": {
        "task": "delay_stats.celery.tasks.run_scrape_cycle",
        "schedule": schedule(run_every=settings.SCRAPE_INTERVAL_SECONDS),
        "options": {
            # A cycle that is not picked up before the next one is due is dropped
            "expires": settings.SCRAPE_INTERVAL_SECONDS,
        },
    },
    "import-timetable": {
        "task": "delay_stats.celery.tasks.import_timetable",
        # Interpreted in the app timezone, which is the network's
        "schedule": crontab(
            hour=settings.TIMETABLE_IMPORT_HOUR,
            minute=settings.TIMETABLE_IMPORT_MINUTE,
            app=celery_app,
        ),
        "options": {
            "expires": 3600,  # Task expires if not picked up within 1 hour
        },
    },
}
