"""
Payment Confirmation Service for TaskLynk

Applies a PaymentOutcome to a payment exactly once, whichever path delivers
it first: the M-Pesa callback, a status poll, Paystack verification or an
admin confirming manually.

A successful payment completes the job, credits the freelancer's 70% share,
issues a paid invoice and notifies both parties. A failed payment is recorded
and the client is told how to retry.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from errors import InternalError, MarketplaceError, NotFoundError, ConflictError, ValidationError
from settlement import split

logger = logging.getLogger(__name__)

CONFIRMATION_SOURCES = ('webhook', 'poll', 'manual')

# A later success may override an earlier failure, never the reverse
SUCCESS_FROM_STATUSES = ('pending', 'failed')
FAILURE_FROM_STATUSES = ('pending',)

WEBHOOK_FAILURE_MESSAGE = (
    'M-Pesa payment failed. Please try again or use manual code entry (Lipa Pochi La Biashara).'
)
MANUAL_FAILURE_MESSAGE = (
    'Payment verification failed. Please try again with the correct M-Pesa code or use M-Pesa Direct Pay.'
)


def generate_invoice_number(Invoice, now: Optional[datetime] = None) -> str:
    """
    Next invoice number for the day, INV-YYYYMMDD-NNNNN

    NNNNN is the count of invoices already created today plus one.
    """
    now = now or datetime.utcnow()
    day_start = datetime(now.year, now.month, now.day)
    issued_today = Invoice.query.filter(
        Invoice.created_at >= day_start,
        Invoice.created_at < day_start + timedelta(days=1)
    ).count()
    return f"INV-{now.strftime('%Y%m%d')}-{issued_today + 1:05d}"


class PaymentConfirmationService:
    """Exactly-once application of payment outcomes"""

    def __init__(self, db, Payment, Job, User, Invoice, workflow, ledger, notifier,
                 email_service, payment_logger):
        """
        Args:
            db: SQLAlchemy database instance
            Payment, Job, User, Invoice: Model classes
            workflow: OrderWorkflow used to complete the job
            ledger: BalanceLedger used to credit the freelancer
            notifier: Notifier for in-app notifications
            email_service: EmailService for payment emails
            payment_logger: PaymentLogger for the structured payment log
        """
        self.db = db
        self.Payment = Payment
        self.Job = Job
        self.User = User
        self.Invoice = Invoice
        self.workflow = workflow
        self.ledger = ledger
        self.notifier = notifier
        self.email_service = email_service
        self.payment_logger = payment_logger

    def get_payment(self, payment_id):
        payment = self.db.session.get(self.Payment, payment_id)
        if not payment:
            raise NotFoundError('Payment not found', 'PAYMENT_NOT_FOUND')
        return payment

    def find_by_checkout_request(self, checkout_request_id):
        """Payment created by the STK push with this CheckoutRequestID, if any"""
        if not checkout_request_id:
            return None
        return self.Payment.query.filter_by(mpesa_checkout_request_id=checkout_request_id).first()

    def _claim(self, payment_id, new_status, from_statuses) -> bool:
        """Conditional status update; True only for the caller that moved the row"""
        Payment = self.Payment
        rows = Payment.query.filter(
            Payment.id == payment_id,
            Payment.status.in_(from_statuses)
        ).update(
            {'status': new_status, 'updated_at': datetime.utcnow()},
            synchronize_session=False
        )
        return rows == 1

    def confirm(self, payment_id, outcome, source: str, actor=None) -> Dict[str, Any]:
        """
        Apply a payment outcome.

        Args:
            payment_id: ID of the payment
            outcome: PaymentOutcome from a gateway or an admin
            source: 'webhook', 'poll' or 'manual'
            actor: Actor confirming the payment (admin for manual)

        Returns:
            dict with 'applied' False when the outcome was a duplicate
        """
        if source not in CONFIRMATION_SOURCES:
            raise ValidationError(f"Unknown confirmation source: {source}", 'INVALID_SOURCE')

        payment = self.get_payment(payment_id)

        if outcome.succeeded:
            return self._apply_success(payment, outcome, source, actor)
        return self._apply_failure(payment, outcome, source, actor)

    def _duplicate(self, payment, source):
        self.db.session.rollback()
        current_status = payment.status
        logger.info(f"Payment {payment.id} already {current_status}; ignoring {source} outcome")
        self.payment_logger.log_duplicate(payment.id, source, current_status)
        return {'applied': False, 'payment_id': payment.id, 'status': current_status}

    def _apply_success(self, payment, outcome, source, actor):
        settlement = None
        new_balance = None
        invoice_number = None
        job = None
        old_status = None

        try:
            if not self._claim(payment.id, 'confirmed', SUCCESS_FROM_STATUSES):
                return self._duplicate(payment, source)

            self.db.session.refresh(payment)
            now = datetime.utcnow()
            payment.confirmed_at = now
            payment.confirmed_by_admin = True
            payment.mpesa_result_desc = None
            if outcome.receipt_number and payment.payment_method != 'paystack':
                payment.mpesa_receipt_number = outcome.receipt_number
            if outcome.transaction_date and payment.payment_method == 'mpesa':
                payment.mpesa_transaction_date = outcome.transaction_date
            if outcome.phone_number and not payment.phone_number:
                payment.phone_number = outcome.phone_number

            job = self.db.session.get(self.Job, payment.job_id)
            if job is None:
                logger.warning(f"Payment {payment.id} confirmed but job {payment.job_id} no longer exists")
            elif job.status == 'cancelled':
                logger.warning(
                    f"Payment {payment.id} confirmed for cancelled job {job.id}; skipping completion and settlement"
                )
            elif not job.assigned_freelancer_id:
                logger.warning(
                    f"Payment {payment.id} confirmed for job {job.id} without an assigned freelancer; "
                    f"skipping completion and settlement"
                )
            else:
                already_settled = bool(job.payment_confirmed)
                old_status = self.workflow.transition(job, 'completed')
                job.payment_confirmed = True

                if not already_settled:
                    settlement, new_balance, invoice_number = self._settle(payment, job, now)

            self.db.session.commit()
        except MarketplaceError:
            self.db.session.rollback()
            raise
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Failed to confirm payment {payment.id}: {str(e)}")
            raise self._store_error('Failed to confirm payment', source, e)

        self.payment_logger.log_confirmation(
            payment.id, True, source, actor=actor,
            details={'job_id': payment.job_id, 'receipt_number': outcome.receipt_number}
        )
        if settlement:
            self.payment_logger.log_settlement(
                payment.id, job.assigned_freelancer_id, settlement['freelancer_amount'],
                settlement['admin_commission'], invoice_number, new_balance
            )

        if job is not None and old_status is not None:
            self.workflow.after_status_change(job, old_status, notify=False)
            self._notify_success(payment, job, settlement, new_balance)

        return {
            'applied': True,
            'payment_id': payment.id,
            'status': 'confirmed',
            'job_status': job.status if job is not None else None,
            'invoice_number': invoice_number,
            'freelancer_amount': settlement['freelancer_amount'] if settlement else None,
            'admin_commission': settlement['admin_commission'] if settlement else None,
            'new_balance': new_balance
        }

    def _settle(self, payment, job, now):
        """Credit the freelancer and issue the paid invoice, inside the caller's transaction"""
        freelancer = self.db.session.get(self.User, job.assigned_freelancer_id)
        if freelancer is None:
            logger.warning(f"Assigned freelancer {job.assigned_freelancer_id} of job {job.id} not found")
            return None, None, None

        settlement = split(payment.amount)
        new_balance = self.ledger.apply_settlement(freelancer, settlement['freelancer_amount'])

        payment.freelancer_id = freelancer.id
        invoice_number = generate_invoice_number(self.Invoice, now)
        invoice = self.Invoice(
            job_id=job.id,
            client_id=job.client_id,
            freelancer_id=freelancer.id,
            invoice_number=invoice_number,
            amount=settlement['gross'],
            freelancer_amount=settlement['freelancer_amount'],
            admin_commission=settlement['admin_commission'],
            description=f"Payment for {job.display_id or job.id}: {job.title}",
            status='paid',
            is_paid=True,
            paid_at=now,
            created_at=now,
            updated_at=now
        )
        self.db.session.add(invoice)
        self.db.session.flush()
        return settlement, new_balance, invoice_number

    def _notify_success(self, payment, job, settlement, new_balance):
        if settlement and job.assigned_freelancer_id:
            amount = settlement['freelancer_amount']
            self.notifier.notify(
                job.assigned_freelancer_id,
                'payment_received',
                'Payment Confirmed!',
                f'KES {amount:,.2f} has been added to your balance for "{job.title}"',
                job_id=job.id
            )
            self._send_email(
                'payment received', payment.id,
                lambda freelancer: self.email_service.send_payment_received(freelancer, job, amount, new_balance),
                job.assigned_freelancer_id
            )

        self.notifier.notify(
            job.client_id,
            'order_completed',
            'Payment Confirmed',
            f'Your payment for "{job.title}" has been confirmed and the order is complete.',
            job_id=job.id
        )
        self._send_email(
            'payment confirmed', payment.id,
            lambda client: self.email_service.send_payment_confirmed(client, job, payment),
            job.client_id
        )

    def _apply_failure(self, payment, outcome, source, actor):
        reason = outcome.reason or 'Payment failed'
        try:
            if not self._claim(payment.id, 'failed', FAILURE_FROM_STATUSES):
                return self._duplicate(payment, source)

            self.db.session.refresh(payment)
            payment.mpesa_result_desc = reason
            payment.confirmed_by_admin = False
            self.db.session.commit()
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Failed to record failure of payment {payment.id}: {str(e)}")
            raise self._store_error('Failed to update payment', source, e)

        self.payment_logger.log_confirmation(
            payment.id, False, source, actor=actor, details={'reason': reason}
        )

        manual = source == 'manual'
        self.notifier.notify(
            payment.client_id,
            'payment_failed',
            'Payment Failed',
            MANUAL_FAILURE_MESSAGE if manual else WEBHOOK_FAILURE_MESSAGE,
            job_id=payment.job_id
        )
        self._send_email(
            'payment failed', payment.id,
            lambda client: self.email_service.send_payment_failed(client, payment, reason=reason, manual=manual),
            payment.client_id
        )

        return {'applied': True, 'payment_id': payment.id, 'status': 'failed', 'reason': reason}

    @staticmethod
    def _store_error(message, source, cause):
        """InternalError for a failed write; only admins confirming by hand see the cause"""
        if source == 'manual':
            message = f"{message}: {cause}"
        return InternalError(message, 'CONFIRMATION_FAILED')

    def _send_email(self, kind, payment_id, send, user_id):
        try:
            user = self.db.session.get(self.User, user_id)
            if not user:
                return
            success, message, _ = send(user)
            if not success:
                logger.warning(f"{kind.capitalize()} email for payment {payment_id} not sent: {message}")
        except Exception as e:
            logger.error(f"Failed to send {kind} email for payment {payment_id}: {str(e)}")

    def mark_invoice_paid(self, invoice_id):
        """Flip an issued invoice to paid"""
        invoice = self.db.session.get(self.Invoice, invoice_id)
        if not invoice:
            raise NotFoundError('Invoice not found', 'INVOICE_NOT_FOUND')
        if not invoice.freelancer_id:
            raise ValidationError('Invoice has no freelancer assigned', 'NO_FREELANCER')
        if invoice.is_paid:
            raise ConflictError('Invoice already marked as paid', 'ALREADY_PAID')

        try:
            now = datetime.utcnow()
            invoice.is_paid = True
            invoice.paid_at = now
            invoice.status = 'paid'
            invoice.updated_at = now
            self.db.session.commit()
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Failed to mark invoice {invoice_id} paid: {str(e)}")
            raise InternalError('Failed to update invoice', 'INVOICE_UPDATE_FAILED')

        logger.info(f"Invoice {invoice.invoice_number} marked as paid")
        return invoice
