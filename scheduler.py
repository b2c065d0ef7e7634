"""
Kleanr Background Scheduler

Runs periodic tasks:
- Expire guest-not-left assignments whose date has passed (hourly)
- Time out tenant-present reports the homeowner never answered (every 5 min)
- Cancel tenant-present reports where the cleaner never came back (every 5 min)

Only starts when ENABLE_SCHEDULER is on, so that a single instance runs it.
"""

import logging

logger = logging.getLogger(__name__)


def _expire_guest_not_left_jobs(app):
    with app.app_context():
        from services.guest_not_left_service import handle_expired_guest_not_left_jobs

        count = handle_expired_guest_not_left_jobs()
        if count:
            logger.info("Scheduler: expired %d guest-not-left assignments", count)


def _process_response_timeouts(app):
    """Mark tenant-present reports ``no_response`` once their deadline passes."""
    with app.app_context():
        from services import tenant_present_service

        handled = 0
        for report in tenant_present_service.get_reports_with_expired_deadline():
            try:
                if tenant_present_service.handle_response_timeout(report.id):
                    handled += 1
            except Exception:
                logger.exception("Failed to time out tenant-present report %s", report.id)

        if handled:
            logger.info("Scheduler: %d tenant-present reports had no homeowner response", handled)


def _process_return_timeouts(app):
    with app.app_context():
        from services import tenant_present_service

        handled = 0
        for report in tenant_present_service.get_expired_return_reports():
            try:
                if tenant_present_service.handle_return_timeout(report.id):
                    handled += 1
            except Exception:
                logger.exception("Failed to close tenant-present report %s", report.id)

        if handled:
            logger.info("Scheduler: %d cleaners did not return", handled)


def init_scheduler(app):
    """Initialize and start the background scheduler.

    Returns the running scheduler, or None when disabled.
    """
    if not app.config.get("ENABLE_SCHEDULER"):
        logger.info("Scheduler disabled (set ENABLE_SCHEDULER=true to enable)")
        return None

    from apscheduler.schedulers.background import BackgroundScheduler

    interval = app.config.get("SCHEDULER_TENANT_PRESENT_INTERVAL_MINUTES", 5)
    scheduler = BackgroundScheduler(daemon=True)

    try:
        scheduler.add_job(
            _expire_guest_not_left_jobs,
            "interval",
            hours=1,
            args=[app],
            id="expire_guest_not_left_jobs",
            name="Expire guest-not-left assignments",
        )
        scheduler.add_job(
            _process_response_timeouts,
            "interval",
            minutes=interval,
            args=[app],
            id="tenant_present_response_timeouts",
            name="Tenant-present response timeouts",
        )
        scheduler.add_job(
            _process_return_timeouts,
            "interval",
            minutes=interval,
            args=[app],
            id="tenant_present_return_timeouts",
            name="Tenant-present return timeouts",
        )
        scheduler.start()
    except Exception:
        logger.exception("Failed to start scheduler")
        return None

    logger.info("Background scheduler started with %d jobs", len(scheduler.get_jobs()))
    return scheduler
