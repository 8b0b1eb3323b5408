"""
Order lifecycle for TaskLynk jobs

pending -> approved -> in_progress -> editing -> delivered -> revision -> ... -> completed
Any non-terminal status can move to cancelled. completed and cancelled are
absorbing: once there, a job's status never changes again, although its
flags and attachments may still be updated.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

VALID_STATUSES = (
    'pending',
    'approved',
    'assigned',
    'in_progress',
    'editing',
    'delivered',
    'revision',
    'revision_pending',
    'completed',
    'cancelled',
)

TERMINAL_STATUSES = ('completed', 'cancelled')

# Statuses a job can only hold once a freelancer is assigned
ASSIGNED_STATUSES = (
    'assigned',
    'in_progress',
    'editing',
    'delivered',
    'revision',
    'revision_pending',
    'completed',
)

STATUS_MESSAGES = {
    'delivered': 'Work has been delivered and is ready for review',
    'completed': 'Order has been completed successfully',
    'revision': 'Revision has been requested',
    'cancelled': 'Order has been cancelled',
    'in_progress': 'Work is now in progress',
    'assigned': 'Order has been assigned to a freelancer',
}

# Attachments of completed orders are kept for one week
FILE_RETENTION_DAYS = 7

UNSET = object()


def status_message(old_status: str, new_status: str) -> str:
    """Human-readable description of a status change"""
    return STATUS_MESSAGES.get(new_status, f"Status changed from {old_status} to {new_status}")


class OrderWorkflow:
    """Applies job status transitions and the side effects they produce"""

    def __init__(self, db, Job, User, JobAttachment, notifier, email_service):
        """
        Args:
            db: SQLAlchemy database instance
            Job: Job model class
            User: User model class
            JobAttachment: JobAttachment model class
            notifier: Notifier used for status-change notifications
            email_service: EmailService used for the delivered email
        """
        self.db = db
        self.Job = Job
        self.User = User
        self.JobAttachment = JobAttachment
        self.notifier = notifier
        self.email_service = email_service

    def get_job(self, job_id):
        job = self.db.session.get(self.Job, job_id)
        if not job:
            raise NotFoundError('Job not found', 'JOB_NOT_FOUND')
        return job

    def transition(self, job, new_status: str) -> str:
        """
        Move a job to new_status without committing.

        Returns:
            str: The status the job had before
        """
        old_status = job.status
        if old_status in TERMINAL_STATUSES and new_status != old_status:
            raise ConflictError(
                f"Job {job.id} is {old_status} and cannot be moved to {new_status}",
                'TERMINAL_STATUS'
            )
        if (new_status != old_status and new_status in ASSIGNED_STATUSES
                and not job.assigned_freelancer_id):
            raise ConflictError(
                f"Job {job.id} has no assigned freelancer and cannot be moved to {new_status}",
                'FREELANCER_NOT_ASSIGNED'
            )
        job.status = new_status
        job.updated_at = datetime.utcnow()
        return old_status

    def set_status(self, job_id, status, revision_requested=None, revision_notes=UNSET,
                   client_approved=None, actor=None):
        """
        Change a job's status and run the status-change side effects.

        Args:
            job_id: ID of the job
            status: New status, one of VALID_STATUSES
            revision_requested: Optional bool flag
            revision_notes: Optional notes; pass None to clear them
            client_approved: Optional bool flag
            actor: Actor making the change

        Returns:
            The updated job
        """
        if not status:
            raise ValidationError('Status field is required', 'MISSING_STATUS')
        if status not in VALID_STATUSES:
            raise ValidationError(
                f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}",
                'INVALID_STATUS'
            )

        job = self.get_job(job_id)

        try:
            old_status = self.transition(job, status)

            if isinstance(revision_requested, bool):
                job.revision_requested = revision_requested
            if revision_notes is not UNSET:
                job.revision_notes = revision_notes or None
            if isinstance(client_approved, bool):
                job.client_approved = client_approved

            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            raise

        logger.info(f"Job {job.id} status {old_status} -> {status} by {getattr(actor, 'role', 'unknown')}")

        self.after_status_change(job, old_status)
        return job

    def approve(self, job_id, approved, actor=None):
        """
        Admin approval of a newly posted job.

        approved=True moves a pending job to approved; approved=False cancels
        the job. admin_approved is set to the given value either way.
        """
        if not isinstance(approved, bool):
            raise ValidationError('Approved field is required and must be a boolean', 'INVALID_APPROVED_FIELD')

        job = self.get_job(job_id)

        if approved:
            new_status = 'approved' if job.status == 'pending' else job.status
        else:
            new_status = 'cancelled'

        try:
            old_status = self.transition(job, new_status)
            job.admin_approved = approved
            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            raise

        logger.info(f"Job {job.id} admin_approved={approved}, status {old_status} -> {new_status}")

        self.after_status_change(job, old_status)
        return job

    def after_status_change(self, job, old_status: str, notify: bool = True):
        """Side effects of a committed status change. None of them raise."""
        new_status = job.status

        if new_status == 'completed' and old_status != 'completed':
            self.schedule_file_deletion(job.id)

        if notify and old_status != new_status:
            self.notify_status_change(job, old_status)

        if new_status == 'delivered' and old_status != 'delivered':
            self.send_delivered_email(job)

    def schedule_file_deletion(self, job_id) -> Optional[datetime]:
        """Mark every attachment of a job for deletion FILE_RETENTION_DAYS from now"""
        deletion_at = datetime.utcnow() + timedelta(days=FILE_RETENTION_DAYS)
        try:
            self.JobAttachment.query.filter_by(job_id=job_id).update(
                {'scheduled_deletion_at': deletion_at},
                synchronize_session=False
            )
            self.db.session.commit()
            logger.info(f"Scheduled file deletion for job {job_id} at {deletion_at.isoformat()}")
            return deletion_at
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Failed to schedule file deletion for job {job_id}: {str(e)}")
            return None

    def notify_status_change(self, job, old_status: str) -> int:
        """Notify the client, the assigned freelancer and every admin"""
        try:
            recipients = [job.client_id]
            if job.assigned_freelancer_id:
                recipients.append(job.assigned_freelancer_id)
            recipients.extend(self.notifier.admin_ids())
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Failed to resolve notification recipients for job {job.id}: {str(e)}")
            return 0

        return self.notifier.notify_many(
            recipients,
            'order_updated',
            f"Order {job.display_id} Status Updated",
            f'Order "{job.title}": {status_message(old_status, job.status)}',
            job_id=job.id
        )

    def send_delivered_email(self, job) -> bool:
        """Email the client that work was delivered"""
        try:
            if not job.assigned_freelancer_id:
                return False
            client = self.db.session.get(self.User, job.client_id)
            freelancer = self.db.session.get(self.User, job.assigned_freelancer_id)
            if not client or not freelancer:
                return False
            success, message, _ = self.email_service.send_work_delivered(client, job, freelancer)
            if not success:
                logger.warning(f"Delivered email for job {job.id} not sent: {message}")
            return success
        except Exception as e:
            logger.error(f"Failed to send delivered email for job {job.id}: {str(e)}")
            return False
