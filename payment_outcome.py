"""
Normalized result of a payment attempt.

Both gateway adapters (M-Pesa STK push and Paystack card verification) and
the admin manual-confirmation route produce a PaymentOutcome, which is the
only thing the confirmation orchestrator looks at.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class PaymentOutcome:
    succeeded: bool
    reason: Optional[str] = None
    receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    phone_number: Optional[str] = None
    amount: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, receipt_number=None, transaction_date=None, phone_number=None, amount=None, raw=None):
        return cls(
            succeeded=True,
            receipt_number=receipt_number,
            transaction_date=transaction_date,
            phone_number=phone_number,
            amount=amount,
            raw=raw or {}
        )

    @classmethod
    def failure(cls, reason, raw=None):
        return cls(succeeded=False, reason=reason, raw=raw or {})

    def to_dict(self):
        return {
            'succeeded': self.succeeded,
            'reason': self.reason,
            'receipt_number': self.receipt_number,
            'transaction_date': self.transaction_date,
            'phone_number': self.phone_number,
            'amount': self.amount,
        }
