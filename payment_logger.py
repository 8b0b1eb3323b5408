"""
Payment Event Logging Service
Structured JSON logging of payment, settlement and reconciliation events
"""
import json
import logging
import logging.handlers
import os
from typing import Optional, Dict, Any

from flask import has_request_context, request


class PaymentLogger:
    """
    Writes one JSON line per payment event to rotating log files
    """

    def __init__(self, app=None):
        self.app = app
        self.logger = None

        if app:
            self.init_app(app)

    def init_app(self, app):
        """Initialize payment logger with Flask app"""
        self.app = app
        self._setup_structured_logging()

    def _setup_structured_logging(self):
        """Configure structured logging with JSON format and file rotation"""
        log_dir = self.app.config.get('PAYMENT_LOG_DIR') or os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'logs'
        )
        os.makedirs(log_dir, exist_ok=True)

        self.logger = logging.getLogger('payments')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        # init_app may run more than once (tests, reloader)
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "event": %(message)s}'
        )

        # Rotating file handler for all payment events (50MB max, keep 10 backups)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'payments.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(json_formatter)
        self.logger.addHandler(file_handler)

        # Separate file for failures and anomalies
        critical_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'payments_critical.log'),
            maxBytes=50 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        critical_handler.setLevel(logging.WARNING)
        critical_handler.setFormatter(json_formatter)
        self.logger.addHandler(critical_handler)

        if self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(json_formatter)
            self.logger.addHandler(console_handler)

    def _get_request_context(self) -> Dict[str, Any]:
        """Extract context from current request"""
        context = {
            'ip_address': None,
            'request_method': None,
            'request_path': None,
        }
        if has_request_context():
            ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
            if ip_address and ',' in ip_address:
                ip_address = ip_address.split(',')[0].strip()
            context['ip_address'] = ip_address
            context['request_method'] = request.method
            context['request_path'] = request.path
        return context

    def log_event(
        self,
        event_type: str,
        action: str,
        severity: str = 'low',
        status: str = 'success',
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        details: Optional[Dict] = None,
        actor=None
    ):
        """
        Log a payment event to the structured log

        Args:
            event_type: Specific event type (webhook_received, payment_confirmed, settlement_applied, ...)
            action: Human-readable action description
            severity: Event severity (low, medium, high, critical)
            status: Event status (success, failure, skipped)
            resource_type: Type of resource affected (payment, invoice, user)
            resource_id: ID of affected resource
            details: Additional context as dictionary
            actor: Actor who triggered the event, if any
        """
        if not self.logger:
            return
        try:
            log_data = {
                'event_type': event_type,
                'action': action,
                'severity': severity,
                'status': status,
                'resource_type': resource_type,
                'resource_id': resource_id,
                'actor_id': getattr(actor, 'user_id', None),
                'actor_role': getattr(actor, 'role', None),
                'details': details,
            }
            log_data.update(self._get_request_context())

            log_level = {
                'low': logging.INFO,
                'medium': logging.WARNING,
                'high': logging.ERROR,
                'critical': logging.CRITICAL
            }.get(severity, logging.INFO)

            self.logger.log(log_level, json.dumps(log_data, default=str))
        except Exception as e:
            if self.app:
                self.app.logger.error(f"Payment logging failed: {e}")
                self.app.logger.error(f"Event: {event_type} - {action}")

    # Convenience methods for common payment events

    def log_webhook(self, provider: str, reference: Optional[str], details: Dict = None):
        """Log an incoming gateway callback"""
        self.log_event(
            event_type='webhook_received',
            action=f"{provider} callback received",
            resource_type='payment',
            resource_id=reference,
            details=details
        )

    def log_confirmation(self, payment_id: int, succeeded: bool, source: str, actor=None, details: Dict = None):
        """Log a payment reaching a terminal state"""
        self.log_event(
            event_type='payment_confirmed' if succeeded else 'payment_failed',
            action=f"Payment {'confirmed' if succeeded else 'failed'} via {source}",
            severity='low' if succeeded else 'medium',
            status='success' if succeeded else 'failure',
            resource_type='payment',
            resource_id=payment_id,
            details=details,
            actor=actor
        )

    def log_settlement(self, payment_id: int, freelancer_id: int, freelancer_amount: float,
                       admin_commission: float, invoice_number: str, new_balance: float):
        """Log a settled payment split"""
        self.log_event(
            event_type='settlement_applied',
            action='Payment settled to freelancer',
            resource_type='payment',
            resource_id=payment_id,
            details={
                'freelancer_id': freelancer_id,
                'freelancer_amount': freelancer_amount,
                'admin_commission': admin_commission,
                'invoice_number': invoice_number,
                'new_balance': new_balance
            }
        )

    def log_duplicate(self, payment_id: int, source: str, current_status: str):
        """Log a confirmation that was skipped because the payment was already terminal"""
        self.log_event(
            event_type='duplicate_confirmation',
            action=f"Ignored {source} confirmation for payment already {current_status}",
            severity='medium',
            status='skipped',
            resource_type='payment',
            resource_id=payment_id
        )

    def log_reconciliation(self, updated: int, drifted: int):
        """Log a batch balance reconciliation run"""
        self.log_event(
            event_type='balance_reconciliation',
            action='Freelancer balances recomputed',
            severity='medium' if drifted else 'low',
            details={'updated': updated, 'drifted': drifted}
        )


# Global instance (will be initialized in app.py)
payment_logger = PaymentLogger()


def init_payment_logger(app):
    """Initialize global payment logger instance"""
    payment_logger.init_app(app)
    app.extensions['payment_logger'] = payment_logger
    return payment_logger
