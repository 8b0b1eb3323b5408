"""
Paystack Integration Module for TaskLynk
Card payment verification

The client completes a card payment in the Paystack checkout, then the
frontend posts the transaction reference to /api/paystack/verify. This module
verifies the reference with Paystack and normalizes the answer into a
PaymentOutcome.

Configuration Required:
- PAYSTACK_SECRET_KEY: Paystack secret key
- PAYSTACK_TIMEOUT: Seconds to wait for Paystack (default 30)
"""

import logging
import os
from typing import Optional

import requests

from errors import UpstreamGatewayError, ValidationError
from payment_outcome import PaymentOutcome

logger = logging.getLogger(__name__)


class PaystackConfig:
    """Paystack configuration settings"""
    BASE_URL = "https://api.paystack.co"

    def __init__(self):
        self.secret_key = os.environ.get('PAYSTACK_SECRET_KEY', '')
        self.timeout = float(os.environ.get('PAYSTACK_TIMEOUT', 30))

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


class PaystackClient:
    """Paystack API client"""

    def __init__(self, config: Optional[PaystackConfig] = None):
        self.config = config or PaystackConfig()

    def is_available(self) -> bool:
        """Check if Paystack is properly configured"""
        return self.config.is_configured

    def verify(self, reference: str) -> PaymentOutcome:
        """
        Verify a transaction reference

        Args:
            reference: Paystack transaction reference

        Returns:
            PaymentOutcome; amount is converted from minor units
        """
        if not reference:
            raise ValidationError('Payment reference is required', 'MISSING_REFERENCE')
        if not self.is_available():
            raise UpstreamGatewayError('Paystack configuration missing', 'NOT_CONFIGURED')

        url = f"{self.config.BASE_URL}/transaction/verify/{reference}"
        try:
            response = requests.get(
                url,
                headers={
                    'Authorization': f'Bearer {self.config.secret_key}',
                    'Content-Type': 'application/json'
                },
                timeout=self.config.timeout
            )
        except requests.exceptions.Timeout:
            raise UpstreamGatewayError('Paystack verification timed out', 'TIMEOUT')
        except requests.exceptions.RequestException as e:
            logger.error(f"Paystack verification request failed for {reference}: {str(e)}")
            raise UpstreamGatewayError('Paystack verification request failed', 'REQUEST_FAILED')

        if not response.ok:
            logger.error(f"Paystack API error for {reference}: {response.status_code} {response.text[:200]}")
            raise UpstreamGatewayError('Paystack verification request failed', 'VERIFY_FAILED')

        try:
            body = response.json()
        except ValueError:
            raise UpstreamGatewayError('Unexpected response from Paystack', 'BAD_RESPONSE')

        data = body.get('data') or {}
        if not body.get('status') or data.get('status') != 'success':
            reason = data.get('gateway_response') or body.get('message') or 'Transaction not successful'
            return PaymentOutcome.failure(reason, raw=body)

        amount = data.get('amount')
        return PaymentOutcome.success(
            receipt_number=reference,
            transaction_date=data.get('paid_at'),
            amount=amount / 100 if amount is not None else None,
            raw=body
        )


def get_paystack_client() -> PaystackClient:
    """Get Paystack client instance"""
    return PaystackClient()
