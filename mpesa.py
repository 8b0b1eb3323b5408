"""
M-Pesa Daraja Integration Module for TaskLynk
Lipa Na M-Pesa Online (STK push) payments

This module initiates STK push requests, queries their status and parses the
callbacks Safaricom sends once the customer has approved or declined the
prompt on their phone. Every response is normalized into a PaymentOutcome.

Configuration Required:
- MPESA_CONSUMER_KEY: Daraja app consumer key
- MPESA_CONSUMER_SECRET: Daraja app consumer secret
- MPESA_SHORTCODE: Paybill / till number
- MPESA_PASSKEY: Lipa Na M-Pesa Online passkey
- MPESA_ENVIRONMENT: 'sandbox' (default) or 'production'
- MPESA_CALLBACK_URL: Public URL of /api/mpesa/callback
- MPESA_TIMEOUT: Seconds to wait for Safaricom (default 30)
"""

import base64
import logging
import os
import re
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple

import requests

from errors import UpstreamGatewayError, ValidationError
from payment_outcome import PaymentOutcome

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r'^(?:\+?254|0)?([17]\d{8})$')

# Daraja reports a query for an unfinished STK push as an error with this code
PENDING_ERROR_CODE = '500.001.1001'


class MpesaConfig:
    """M-Pesa Daraja configuration settings"""
    SANDBOX_URL = "https://sandbox.safaricom.co.ke"
    PRODUCTION_URL = "https://api.safaricom.co.ke"

    def __init__(self):
        self.consumer_key = os.environ.get('MPESA_CONSUMER_KEY', '')
        self.consumer_secret = os.environ.get('MPESA_CONSUMER_SECRET', '')
        self.shortcode = os.environ.get('MPESA_SHORTCODE', '174379')
        self.passkey = os.environ.get('MPESA_PASSKEY', '')
        self.environment = os.environ.get('MPESA_ENVIRONMENT', 'sandbox').lower()
        self.callback_url = os.environ.get('MPESA_CALLBACK_URL', '')
        self.timeout = float(os.environ.get('MPESA_TIMEOUT', 30))

    @property
    def base_url(self) -> str:
        return self.PRODUCTION_URL if self.environment == 'production' else self.SANDBOX_URL

    @property
    def is_configured(self) -> bool:
        return bool(self.consumer_key and self.consumer_secret and self.passkey)


def format_phone(phone: str) -> str:
    """
    Normalize a Kenyan mobile number to the 2547XXXXXXXX form Daraja expects

    Accepts 07XXXXXXXX, 01XXXXXXXX, +2547XXXXXXXX and 2547XXXXXXXX.
    """
    cleaned = re.sub(r'[\s-]+', '', str(phone or ''))
    match = PHONE_PATTERN.match(cleaned)
    if not match:
        raise ValidationError(
            'Invalid phone number format. Use 07XXXXXXXX or 01XXXXXXXX',
            'INVALID_PHONE'
        )
    return f"254{match.group(1)}"


def _metadata_value(items, name):
    for item in items or []:
        if item.get('Name') == name:
            return item.get('Value')
    return None


def parse_callback(body: Dict[str, Any]) -> Tuple[Optional[str], Optional[PaymentOutcome]]:
    """
    Parse an STK push callback body

    Returns:
        (checkout_request_id, PaymentOutcome), or (None, None) when the body
        is not an STK callback
    """
    stk_callback = ((body or {}).get('Body') or {}).get('stkCallback')
    if not stk_callback:
        return None, None

    checkout_request_id = stk_callback.get('CheckoutRequestID')
    result_code = str(stk_callback.get('ResultCode', ''))
    result_desc = stk_callback.get('ResultDesc')

    if result_code == '0':
        items = (stk_callback.get('CallbackMetadata') or {}).get('Item', [])
        receipt = _metadata_value(items, 'MpesaReceiptNumber')
        transaction_date = _metadata_value(items, 'TransactionDate')
        phone = _metadata_value(items, 'PhoneNumber')
        amount = _metadata_value(items, 'Amount')
        return checkout_request_id, PaymentOutcome.success(
            receipt_number=str(receipt) if receipt is not None else None,
            transaction_date=str(transaction_date) if transaction_date is not None else None,
            phone_number=str(phone) if phone is not None else None,
            amount=float(amount) if amount is not None else None,
            raw=stk_callback
        )

    return checkout_request_id, PaymentOutcome.failure(result_desc or f"ResultCode {result_code}", raw=stk_callback)


class MpesaClient:
    """
    M-Pesa Daraja API client

    Usage:
        client = MpesaClient()
        if client.is_available():
            ids = client.initiate_push('0712345678', 1500, 'TL-42', 'Payment for order')
            outcome = client.query_status(ids['CheckoutRequestID'])
    """

    def __init__(self, config: Optional[MpesaConfig] = None):
        self.config = config or MpesaConfig()

    def is_available(self) -> bool:
        """Check if M-Pesa is properly configured"""
        return self.config.is_configured

    def _require_configuration(self):
        if not self.is_available():
            raise UpstreamGatewayError(
                'M-Pesa is not configured. Please set MPESA_CONSUMER_KEY, MPESA_CONSUMER_SECRET and MPESA_PASSKEY.',
                'NOT_CONFIGURED'
            )

    def _timestamp(self) -> str:
        return datetime.utcnow().strftime('%Y%m%d%H%M%S')

    def _password(self, timestamp: str) -> str:
        raw = f"{self.config.shortcode}{self.config.passkey}{timestamp}"
        return base64.b64encode(raw.encode('utf-8')).decode('utf-8')

    def get_access_token(self) -> str:
        """Fetch an OAuth access token using the client-credentials grant"""
        self._require_configuration()
        url = f"{self.config.base_url}/oauth/v1/generate?grant_type=client_credentials"
        try:
            response = requests.get(
                url,
                auth=(self.config.consumer_key, self.config.consumer_secret),
                headers={'Accept': 'application/json'},
                timeout=self.config.timeout
            )
            response.raise_for_status()
            token = response.json().get('access_token')
        except requests.exceptions.Timeout:
            raise UpstreamGatewayError('M-Pesa authentication timed out', 'TIMEOUT')
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to get M-Pesa access token: {str(e)}")
            raise UpstreamGatewayError('Failed to authenticate with M-Pesa', 'AUTH_FAILED')

        if not token:
            raise UpstreamGatewayError('Failed to authenticate with M-Pesa', 'AUTH_FAILED')
        return token

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST to a Daraja endpoint and return the decoded body"""
        token = self.get_access_token()
        url = f"{self.config.base_url}/{endpoint}"
        try:
            response = requests.post(
                url,
                json=payload,
                headers={
                    'Authorization': f'Bearer {token}',
                    'Content-Type': 'application/json',
                    'Accept': 'application/json'
                },
                timeout=self.config.timeout
            )
        except requests.exceptions.Timeout:
            raise UpstreamGatewayError('Request to M-Pesa timed out', 'TIMEOUT')
        except requests.exceptions.RequestException as e:
            logger.error(f"M-Pesa request to {endpoint} failed: {str(e)}")
            raise UpstreamGatewayError('Could not reach M-Pesa', 'REQUEST_FAILED')

        try:
            return response.json()
        except ValueError:
            logger.error(f"M-Pesa returned a non-JSON response ({response.status_code}) for {endpoint}")
            raise UpstreamGatewayError('Unexpected response from M-Pesa', 'BAD_RESPONSE')

    def initiate_push(self, phone: str, amount: float, account_reference: str,
                      description: str = 'TaskLynk Payment') -> Dict[str, Any]:
        """
        Send an STK push prompt to the customer's phone

        Args:
            phone: Customer phone number (any accepted Kenyan format)
            amount: Amount in KES; M-Pesa only accepts whole shillings
            account_reference: Reference shown to the customer
            description: Transaction description

        Returns:
            Dict with CheckoutRequestID, MerchantRequestID and CustomerMessage
        """
        self._require_configuration()
        formatted_phone = format_phone(phone)
        timestamp = self._timestamp()

        payload = {
            'BusinessShortCode': self.config.shortcode,
            'Password': self._password(timestamp),
            'Timestamp': timestamp,
            'TransactionType': 'CustomerPayBillOnline',
            'Amount': int(Decimal(str(amount)).quantize(Decimal('1'), rounding=ROUND_HALF_UP)),
            'PartyA': formatted_phone,
            'PartyB': self.config.shortcode,
            'PhoneNumber': formatted_phone,
            'CallBackURL': self.config.callback_url,
            'AccountReference': account_reference,
            'TransactionDesc': description[:100]
        }

        logger.info(f"Sending STK push for {account_reference} ({self.config.environment})")
        data = self._post('mpesa/stkpush/v1/processrequest', payload)

        if str(data.get('ResponseCode')) != '0':
            detail = data.get('errorMessage') or data.get('ResponseDescription') or 'Unknown error'
            logger.error(f"STK push rejected for {account_reference}: {detail}")
            raise UpstreamGatewayError('Failed to initiate M-Pesa payment', 'STK_PUSH_REJECTED', details=detail)

        return {
            'CheckoutRequestID': data.get('CheckoutRequestID'),
            'MerchantRequestID': data.get('MerchantRequestID'),
            'CustomerMessage': data.get('CustomerMessage'),
            'phone_number': formatted_phone
        }

    def query_status(self, checkout_request_id: str) -> Optional[PaymentOutcome]:
        """
        Ask Daraja for the result of an STK push

        Returns:
            PaymentOutcome once the push has resolved, None while it is still pending
        """
        self._require_configuration()
        timestamp = self._timestamp()
        payload = {
            'BusinessShortCode': self.config.shortcode,
            'Password': self._password(timestamp),
            'Timestamp': timestamp,
            'CheckoutRequestID': checkout_request_id
        }

        data = self._post('mpesa/stkpushquery/v1/query', payload)

        if data.get('errorCode') == PENDING_ERROR_CODE or 'ResultCode' not in data:
            logger.info(f"STK push {checkout_request_id} still pending: {data.get('errorMessage', '')}")
            return None

        result_code = str(data.get('ResultCode'))
        if result_code == '0':
            items = (data.get('CallbackMetadata') or {}).get('Item', [])
            receipt = _metadata_value(items, 'MpesaReceiptNumber')
            return PaymentOutcome.success(
                receipt_number=str(receipt) if receipt is not None else None,
                raw=data
            )

        return PaymentOutcome.failure(data.get('ResultDesc') or f"ResultCode {result_code}", raw=data)


def get_mpesa_client() -> MpesaClient:
    """Get M-Pesa client instance"""
    return MpesaClient()
