"""
Settlement calculations for TaskLynk

Payment split: 70% to the freelancer, 30% to the platform.

Both shares are rounded half-up to 2 decimals independently of each other,
so freelancer_share(x) + platform_share(x) can differ from x by one cent.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

FREELANCER_SHARE_RATE = Decimal('0.7')
PLATFORM_SHARE_RATE = Decimal('0.3')

_CENT = Decimal('0.01')


def round_money(value) -> float:
    """Round a money value half-up to 2 decimal places"""
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def _share(gross, rate: Decimal) -> float:
    gross = Decimal(str(gross))
    if gross < 0:
        raise ValueError(f"Gross amount must not be negative, got {gross}")
    return float((gross * rate).quantize(_CENT, rounding=ROUND_HALF_UP))


def freelancer_share(gross) -> float:
    """
    Calculate freelancer earnings (70% of the client payment)

    Args:
        gross: Total amount paid by the client

    Returns:
        float: Freelancer share rounded half-up to 2 decimals
    """
    return _share(gross, FREELANCER_SHARE_RATE)


def platform_share(gross) -> float:
    """
    Calculate the platform commission (30% of the client payment)

    Args:
        gross: Total amount paid by the client

    Returns:
        float: Platform share rounded half-up to 2 decimals
    """
    return _share(gross, PLATFORM_SHARE_RATE)


def split(gross) -> Dict[str, float]:
    """Return both shares of a gross payment"""
    return {
        'gross': round_money(gross),
        'freelancer_amount': freelancer_share(gross),
        'admin_commission': platform_share(gross),
    }
