"""
Freelancer balance ledger

A freelancer's balance is a materialized value. The source of truth is the
set of jobs assigned to the freelancer that are completed and payment
confirmed; the balance is 70% of their summed amount. Settlement applies a
fast incremental update and then immediately overwrites the balance with the
recomputed value, and reconcile_all() corrects any drift in batch.
"""

import logging
from datetime import datetime
from typing import Dict, Tuple

from sqlalchemy import func

from errors import ConflictError, NotFoundError
from settlement import freelancer_share, round_money

logger = logging.getLogger(__name__)


class BalanceLedger:
    """Computes and stores freelancer balances"""

    def __init__(self, db, User, Job):
        """
        Args:
            db: SQLAlchemy database instance
            User: User model class
            Job: Job model class
        """
        self.db = db
        self.User = User
        self.Job = Job

    def _qualifying_totals(self, freelancer_id) -> Tuple[float, int]:
        """Sum and count of completed, payment-confirmed jobs for a freelancer"""
        Job = self.Job
        total_amount, job_count = self.db.session.query(
            func.coalesce(func.sum(Job.amount), 0),
            func.count(Job.id)
        ).filter(
            Job.assigned_freelancer_id == freelancer_id,
            Job.status == 'completed',
            Job.payment_confirmed.is_(True)
        ).one()
        return float(total_amount or 0), int(job_count or 0)

    def recompute_balance(self, freelancer_id) -> float:
        """Derive the balance from completed and paid jobs"""
        total_amount, _ = self._qualifying_totals(freelancer_id)
        return freelancer_share(total_amount)

    def apply_settlement(self, freelancer, share: float) -> float:
        """
        Credit a settled share to a freelancer.

        Increments balance, earned and total_earnings by the share and bumps
        completed_jobs, then overwrites balance with the recomputed value.
        The caller owns the transaction; nothing is committed here.

        Returns:
            float: The balance after the recompute overwrite
        """
        previous_balance = freelancer.balance or 0.0

        freelancer.balance = round_money(previous_balance + share)
        freelancer.earned = round_money((freelancer.earned or 0.0) + share)
        freelancer.total_earnings = round_money((freelancer.total_earnings or 0.0) + share)
        freelancer.completed_jobs = (freelancer.completed_jobs or 0) + 1
        freelancer.updated_at = datetime.utcnow()
        self.db.session.flush()

        # Recompute wins over the increment
        recomputed = self.recompute_balance(freelancer.id)
        if recomputed != freelancer.balance:
            logger.warning(
                f"Balance drift for freelancer {freelancer.id}: incremental {freelancer.balance}, "
                f"recomputed {recomputed}"
            )
        freelancer.balance = recomputed
        self.db.session.flush()

        logger.info(
            f"Freelancer {freelancer.id} credited {share:.2f}: balance {previous_balance:.2f} -> {recomputed:.2f}"
        )
        return recomputed

    def reconcile_all(self) -> Dict:
        """
        Overwrite every freelancer's balance with the recomputed value.

        Returns:
            dict: {'updated': int, 'drifted': int, 'details': [...]} with one entry per freelancer
        """
        details = []
        drifted = 0
        try:
            freelancers = self.User.query.filter_by(role='freelancer').all()
            now = datetime.utcnow()

            for freelancer in freelancers:
                total_amount, job_count = self._qualifying_totals(freelancer.id)
                new_balance = freelancer_share(total_amount)

                if freelancer.balance != new_balance:
                    drifted += 1
                    logger.info(
                        f"Reconciling freelancer {freelancer.id}: {freelancer.balance} -> {new_balance}"
                    )
                freelancer.balance = new_balance
                freelancer.updated_at = now

                details.append({
                    'freelancer_id': freelancer.id,
                    'new_balance': new_balance,
                    'job_count': job_count,
                    'total_amount': round_money(total_amount)
                })

            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            raise

        logger.info(f"Balance reconciliation updated {len(details)} freelancers ({drifted} drifted)")
        return {'updated': len(details), 'drifted': drifted, 'details': details}

    def completed_orders_summary(self, freelancer_id) -> Dict:
        """Balance and order statistics for a freelancer's completed, paid orders"""
        user = self.db.session.get(self.User, freelancer_id)
        if not user:
            raise NotFoundError('User not found', 'USER_NOT_FOUND')
        if user.role != 'freelancer':
            raise ConflictError('User is not a freelancer', 'NOT_FREELANCER')

        total_amount, job_count = self._qualifying_totals(freelancer_id)
        balance = freelancer_share(total_amount)
        average = round_money(balance / job_count) if job_count else 0.0

        return {
            'freelancer_id': freelancer_id,
            'completed_orders_balance': balance,
            'completed_orders_count': job_count,
            'average_order_value': average
        }
