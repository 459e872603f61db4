"""
StableVPS Accounts
==================

Affiliate program views and manual wallet adjustments.

Every user gets a referral code on first request. Referees get the
first-order discount and referrers the commission (see orders.py).
"""

import logging
import secrets
import string
import time
from typing import Any, Dict

from .orders import (
    REFERRAL_COMMISSION_PERCENT,
    REFERRAL_DISCOUNT_PERCENT,
    InvalidOrderError,
    OrderError,
    UserNotFoundError,
)
from .store import DocumentStore, UserRecord

logger = logging.getLogger(__name__)


CODE_ATTEMPTS = 10


class ReferralCodeNotFoundError(OrderError):
    status_code = 404

    def __init__(self, code: str):
        super().__init__("Invalid referral code", {"valid": False})


def generate_referral_code(first_name: str, last_name: str) -> str:
    """Three letters of each name plus four random characters, e.g. JANTRA7K2Q."""
    name_part = (first_name[:3] + last_name[:3]).upper()
    alphabet = string.ascii_uppercase + string.digits
    return name_part + "".join(secrets.choice(alphabet) for _ in range(4))


class AccountManager:
    def __init__(self, store: DocumentStore, app_url: str, currency: str = "eur"):
        self.store = store
        self.app_url = app_url
        self.currency = currency.upper()

    def ensure_referral_code(self, user: UserRecord) -> str:
        if user.referral_code:
            return user.referral_code

        code = generate_referral_code(user.first_name, user.last_name)
        for _ in range(CODE_ATTEMPTS):
            if self.store.find_user_by_referral_code(code) is None:
                break
            code = generate_referral_code(user.first_name, user.last_name)

        self.store.update_user(user.id, referral_code=code)
        return code

    def referral_info(self, user_id: str) -> Dict[str, Any]:
        """Referral code, link, stats and history of a user."""
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        code = self.ensure_referral_code(user)
        referrals = self.store.list_referrals(user_id)[:50]

        history = []
        for referral in referrals:
            referee = self.store.get_user(referral.referee_id)
            history.append({
                "id": referral.id,
                "referee": {
                    "firstName": referee.first_name,
                    "lastName": referee.last_name,
                    "email": referee.email,
                } if referee else None,
                "status": referral.status,
                "commissionAmount": referral.commission_amount,
                "orderAmount": referral.order_amount,
                "paidAt": referral.paid_at.isoformat() if referral.paid_at else None,
                "createdAt": referral.created_at.isoformat(),
            })

        return {
            "referralCode": code,
            "referralLink": f"{self.app_url}/signup?ref={code}",
            "stats": {
                "totalReferrals": len(referrals),
                "successfulReferrals": user.affiliate_stats.get("successful_referrals", 0),
                "totalEarnings": user.affiliate_stats.get("total_earnings", 0.0),
                "pendingReferrals": sum(1 for r in referrals if r.status == "pending"),
            },
            "referrals": history,
            "discountRate": REFERRAL_DISCOUNT_PERCENT,
            "commissionRate": REFERRAL_COMMISSION_PERCENT,
        }

    def validate_referral_code(self, code: str) -> Dict[str, Any]:
        """
        Raises:
            InvalidOrderError: No code given
            ReferralCodeNotFoundError: Unknown code
        """
        if not code or not code.strip():
            raise InvalidOrderError("Referral code required")

        referrer = self.store.find_user_by_referral_code(code)
        if referrer is None:
            raise ReferralCodeNotFoundError(code)

        return {
            "valid": True,
            "referrerId": referrer.id,
            "referrerName": referrer.first_name,
            "discountRate": REFERRAL_DISCOUNT_PERCENT,
        }

    def credit_wallet(self, email: str, amount: float, reason: str = "") -> Dict[str, Any]:
        """
        Manually credit a wallet (support gestures, corrections).

        Raises:
            InvalidOrderError: Missing email or non-positive amount
            UserNotFoundError: No user with that email
        """
        if not email or not amount or amount <= 0:
            raise InvalidOrderError("Email and a positive amount are required")

        user = self.store.find_user_by_email(email)
        if user is None:
            raise UserNotFoundError(email)

        new_balance = self.store.credit_balance(user.id, amount)
        self.store.create_transaction(
            user.id,
            "credit",
            amount,
            currency=self.currency,
            description=reason or f"Manual credit: {amount} {self.currency}",
            reference=f"manual_{int(time.time() * 1000)}",
        )
        logger.info(f"Manual credit of {amount} to user {user.id}", extra={"user_id": user.id})

        return {
            "email": user.email,
            "previousBalance": user.balance,
            "amountCredited": amount,
            "newBalance": new_balance,
        }
