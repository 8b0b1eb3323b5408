"""
Scheduled Jobs Module for TaskLynk
Handles periodic tasks like reconciling freelancer balances and purging
attachments of completed orders once their retention period has passed
"""

import os
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


def recalculate_freelancer_balances(app, ledger, payment_logger=None):
    """
    Overwrite every freelancer balance with the value derived from their
    completed, payment-confirmed jobs
    This job runs nightly at 2 AM

    Args:
        app: Flask application instance
        ledger: BalanceLedger instance
        payment_logger: Optional PaymentLogger for the structured payment log

    Returns:
        dict: Reconciliation summary, or None if the run failed
    """
    with app.app_context():
        try:
            logger.info("Starting freelancer balance reconciliation job...")
            result = ledger.reconcile_all()
            if payment_logger:
                payment_logger.log_reconciliation(result['updated'], result['drifted'])
            logger.info(
                f"Balance reconciliation completed: {result['updated']} freelancers, {result['drifted']} corrected"
            )
            return result
        except Exception as e:
            logger.error(f"Error in recalculate_freelancer_balances: {str(e)}", exc_info=True)
            return None


def purge_expired_attachments(app, db, JobAttachment, now=None):
    """
    Mark attachments whose scheduled deletion time has passed as deleted
    This job runs hourly

    Args:
        app: Flask application instance
        db: SQLAlchemy database instance
        JobAttachment: JobAttachment model
        now: Reference time, defaults to utcnow

    Returns:
        int: Number of attachments marked deleted
    """
    with app.app_context():
        try:
            now = now or datetime.utcnow()
            purged = JobAttachment.query.filter(
                JobAttachment.scheduled_deletion_at.isnot(None),
                JobAttachment.scheduled_deletion_at <= now,
                JobAttachment.deleted_at.is_(None)
            ).update({'deleted_at': now}, synchronize_session=False)
            db.session.commit()

            if purged:
                logger.info(f"Purged {purged} expired attachments")
            return purged
        except Exception as e:
            db.session.rollback()
            logger.error(f"Error in purge_expired_attachments: {str(e)}", exc_info=True)
            return 0


def init_scheduler(app, db, JobAttachment, ledger, payment_logger=None):
    """
    Initialize APScheduler with all scheduled jobs

    Args:
        app: Flask application instance
        db: SQLAlchemy database instance
        JobAttachment: JobAttachment model
        ledger: BalanceLedger instance
        payment_logger: Optional PaymentLogger

    Returns:
        scheduler: Configured APScheduler instance
    """
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.cron import CronTrigger
    import atexit

    scheduler = BackgroundScheduler(daemon=True)

    # Get timezone from environment or default to Africa/Nairobi
    timezone = os.getenv('TIMEZONE', 'Africa/Nairobi')

    scheduler.add_job(
        func=lambda: recalculate_freelancer_balances(app, ledger, payment_logger),
        trigger=CronTrigger(hour=2, minute=0, timezone=timezone),
        id='recalculate_freelancer_balances',
        name='Recalculate freelancer balances (2 AM)',
        replace_existing=True
    )

    scheduler.add_job(
        func=lambda: purge_expired_attachments(app, db, JobAttachment),
        trigger=CronTrigger(minute=0, timezone=timezone),
        id='purge_expired_attachments',
        name='Purge expired order attachments (hourly)',
        replace_existing=True
    )

    scheduler.start()
    logger.info(f"Scheduler started with timezone: {timezone}")
    logger.info("Scheduled jobs:")
    logger.info("  - Freelancer balance reconciliation at 2:00 AM")
    logger.info("  - Expired attachment purge every hour")

    atexit.register(lambda: scheduler.shutdown())

    return scheduler
