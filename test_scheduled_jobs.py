"""Tests for the scheduled maintenance jobs"""

from datetime import datetime, timedelta
from unittest import mock

from app import db, JobAttachment, User
from scheduled_jobs import init_scheduler, purge_expired_attachments, recalculate_freelancer_balances


def test_recalculate_freelancer_balances(app, services, make_user, make_job):
    freelancer = make_user('freelancer', balance=5.0)
    make_job(make_user('client'), freelancer, status='completed', amount=200, payment_confirmed=True)
    payment_logger = mock.Mock()

    result = recalculate_freelancer_balances(app, services.ledger, payment_logger)

    assert result['updated'] == 1
    assert result['drifted'] == 1
    payment_logger.log_reconciliation.assert_called_once_with(1, 1)
    db.session.expire_all()
    assert db.session.get(User, freelancer.id).balance == 140.00


def test_recalculate_survives_errors(app):
    ledger = mock.Mock()
    ledger.reconcile_all.side_effect = RuntimeError('database unavailable')
    assert recalculate_freelancer_balances(app, ledger) is None


def test_purge_expired_attachments(app, make_user, make_job):
    job = make_job(make_user('client'), status='completed')
    now = datetime.utcnow()
    expired = JobAttachment(job_id=job.id, file_name='a.pdf', file_url='https://files/a.pdf',
                            scheduled_deletion_at=now - timedelta(hours=1))
    upcoming = JobAttachment(job_id=job.id, file_name='b.pdf', file_url='https://files/b.pdf',
                             scheduled_deletion_at=now + timedelta(days=3))
    kept = JobAttachment(job_id=job.id, file_name='c.pdf', file_url='https://files/c.pdf')
    db.session.add_all([expired, upcoming, kept])
    db.session.commit()

    assert purge_expired_attachments(app, db, JobAttachment, now=now) == 1
    # Already purged attachments are not counted twice
    assert purge_expired_attachments(app, db, JobAttachment, now=now) == 0

    db.session.expire_all()
    assert db.session.get(JobAttachment, expired.id).deleted_at == now
    assert db.session.get(JobAttachment, upcoming.id).deleted_at is None
    assert db.session.get(JobAttachment, kept.id).deleted_at is None


def test_init_scheduler_registers_jobs(app, services):
    with mock.patch('apscheduler.schedulers.background.BackgroundScheduler.start'), \
            mock.patch('atexit.register'):
        scheduler = init_scheduler(app, db, JobAttachment, services.ledger)

    job_ids = {job.id for job in scheduler.get_jobs()}
    assert job_ids == {'recalculate_freelancer_balances', 'purge_expired_attachments'}
