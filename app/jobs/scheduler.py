import os
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from app.models import utcnow
from app.services.ai_processor import get_ai_processor


scheduler = BackgroundScheduler()

SYNC_RUNNER_KEY = "external_sync_runner"


def run_ai_processing(app):
    get_ai_processor(app).process_pending_bookmarks()


def run_startup_processing(app):
    processor = get_ai_processor(app)
    processor.recover_interrupted()
    processor.process_pending_bookmarks()


def register_sync_runner(app, runner):
    """Register the callable that imports bookmarks from the external source.

    ``runner(app)`` is invoked on ``EXTERNAL_SYNC_CRON``; whatever it
    imports is analysed right after it returns.
    """
    app.extensions[SYNC_RUNNER_KEY] = runner
    if scheduler.running:
        _add_sync_job(app)


def run_external_sync(app):
    runner = app.extensions.get(SYNC_RUNNER_KEY)
    if runner is None:
        return
    try:
        runner(app)
    except Exception as exc:
        app.logger.warning("External bookmark sync failed: %s", exc)
    get_ai_processor(app).process_after_sync()


def _add_sync_job(app):
    scheduler.add_job(
        run_external_sync,
        CronTrigger.from_crontab(app.config["EXTERNAL_SYNC_CRON"]),
        kwargs={"app": app},
        id="external_sync",
        replace_existing=True,
    )


def schedule_jobs(app):
    scheduler.add_job(
        run_ai_processing,
        CronTrigger.from_crontab(app.config["AI_PROCESSING_CRON"]),
        kwargs={"app": app},
        id="ai_processing",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_startup_processing,
        "date",
        run_date=utcnow() + timedelta(seconds=app.config["AI_STARTUP_DELAY_SECONDS"]),
        kwargs={"app": app},
        id="ai_processing_startup",
        replace_existing=True,
    )
    if app.extensions.get(SYNC_RUNNER_KEY) is not None:
        _add_sync_job(app)


def start_scheduler(app):
    if not app.config.get("SCHEDULER_ENABLED", True):
        return
    if os.environ.get("WERKZEUG_RUN_MAIN") == "false":
        return

    if not scheduler.get_jobs():
        schedule_jobs(app)
        scheduler.start()
