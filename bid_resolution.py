"""
Bid resolution on job assignment

Assigning a job accepts the chosen freelancer's bid, rejects every competing
bid and moves the job to in_progress, all in one transaction.
"""

import logging

from errors import ConflictError, NotFoundError, ValidationError
from order_workflow import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


class BidResolver:
    """Assigns a freelancer to a job and resolves the job's bids"""

    def __init__(self, db, Job, Bid, User, workflow, notifier, email_service):
        self.db = db
        self.Job = Job
        self.Bid = Bid
        self.User = User
        self.workflow = workflow
        self.notifier = notifier
        self.email_service = email_service

    def assign(self, job_id, freelancer_id, actor=None):
        """
        Assign freelancer_id to job_id.

        A freelancer who never bid on the job can still be assigned; in that
        case no bid is accepted and every existing bid is rejected.

        Returns:
            The updated job
        """
        if freelancer_id is None:
            raise ValidationError('Freelancer ID is required', 'MISSING_FREELANCER_ID')
        if isinstance(freelancer_id, bool) or not isinstance(freelancer_id, int):
            raise ValidationError('Valid freelancer ID is required', 'INVALID_FREELANCER_ID')

        job = self.workflow.get_job(job_id)

        freelancer = self.db.session.get(self.User, freelancer_id)
        if not freelancer:
            raise NotFoundError('Freelancer not found', 'FREELANCER_NOT_FOUND')

        if job.status in TERMINAL_STATUSES:
            raise ConflictError(f"Job {job.id} is {job.status} and cannot be assigned", 'TERMINAL_STATUS')

        Bid = self.Bid
        try:
            accepted = Bid.query.filter(
                Bid.job_id == job.id,
                Bid.freelancer_id == freelancer_id
            ).update({'status': 'accepted'}, synchronize_session=False)

            rejected = Bid.query.filter(
                Bid.job_id == job.id,
                Bid.freelancer_id != freelancer_id
            ).update({'status': 'rejected'}, synchronize_session=False)

            job.assigned_freelancer_id = freelancer_id
            old_status = self.workflow.transition(job, 'in_progress')

            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            raise

        if accepted == 0:
            logger.warning(f"Job {job.id} assigned to freelancer {freelancer_id} who has no bid on it")
        logger.info(
            f"Job {job.id} assigned to freelancer {freelancer_id} "
            f"(status {old_status} -> in_progress, {accepted} bid accepted, {rejected} rejected)"
        )

        self.notifier.notify(
            freelancer_id,
            'job_assigned',
            'New Job Assigned',
            f'You have been assigned to "{job.title}"',
            job_id=job.id
        )
        self._send_assignment_email(freelancer, job)
        return job

    def _send_assignment_email(self, freelancer, job):
        try:
            success, message, _ = self.email_service.send_job_assigned(freelancer, job)
            if not success:
                logger.warning(f"Assignment email for job {job.id} not sent: {message}")
        except Exception as e:
            logger.error(f"Failed to send assignment email for job {job.id}: {str(e)}")
