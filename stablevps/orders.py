"""
StableVPS Order Handler
=======================

Turns a purchase request into a provisioned VPS.

    validate -> wallet: debit -> create instance -> persist -> enqueue poll
             -> card:   hosted checkout session (provisioning happens in
                        the Stripe webhook once payment is confirmed)

Provider failures after a wallet debit refund the debit. A synthetic
mock instance is only used outside production and only when
ALLOW_MOCK_FALLBACK is enabled.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .config import StableVPSConfig
from .plans import BillingCycle, get_plan, get_plan_price, period_end
from .poll_store import PollStore
from .providers.base import (
    CreateResult,
    InstanceStatus,
    ProviderError,
    VPSProviderInterface,
)
from .store import DocumentStore, ServiceRecord, UserRecord

logger = logging.getLogger(__name__)


REFERRAL_DISCOUNT_PERCENT = 10
REFERRAL_COMMISSION_PERCENT = 10

PAYMENT_METHODS = ("wallet", "card")


# =========================================
# ERRORS
# =========================================

class OrderError(Exception):
    """Base exception for order failures. `status_code` is the HTTP status to answer with."""
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidOrderError(OrderError):
    status_code = 400


class InsufficientBalanceError(OrderError):
    status_code = 400

    def __init__(self, required: float, available: float):
        self.required = required
        self.available = available
        super().__init__("Insufficient balance", {"required": required, "available": available})


class UserNotFoundError(OrderError):
    status_code = 404

    def __init__(self, user_id: str):
        super().__init__("User not found", {"user_id": user_id})


class ProvisioningFailedError(OrderError):
    status_code = 500

    def __init__(self):
        super().__init__("Failed to provision VPS. Please try again or contact support.")


# =========================================
# REQUEST / RESULT
# =========================================

@dataclass(frozen=True)
class OrderRequest:
    plan_id: str
    billing_cycle: str
    location: str
    payment_method: str


@dataclass
class OrderResult:
    payment_method: str
    price: float
    discount_percent: int = 0
    vps_id: Optional[str] = None
    service_id: Optional[str] = None
    new_balance: Optional[float] = None
    checkout_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.checkout_url:
            return {"success": True, "checkoutUrl": self.checkout_url}
        return {
            "success": True,
            "message": "Order placed successfully",
            "newBalance": self.new_balance,
            "vpsId": self.vps_id,
            "serviceId": self.service_id,
        }


def validate_order(request: OrderRequest) -> None:
    """
    Raises:
        InvalidOrderError: With the first problem found
    """
    if not request.plan_id or get_plan(request.plan_id) is None:
        raise InvalidOrderError("Invalid plan selected")
    if request.billing_cycle not in [c.value for c in BillingCycle]:
        raise InvalidOrderError("Invalid billing cycle")
    if not request.location:
        raise InvalidOrderError("Location is required")
    if request.payment_method not in PAYMENT_METHODS:
        raise InvalidOrderError("Invalid payment method")


def apply_discount(price: float, percent: int) -> float:
    if percent <= 0:
        return price
    return round(price * (1 - percent / 100), 2)


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"


def hostname_label(user: UserRecord) -> str:
    return f"vps-{user.first_name}-{user.last_name}-{int(time.time() * 1000)}"


class OrderHandler:
    """Places orders against the configured provider."""

    def __init__(
        self,
        store: DocumentStore,
        provider: VPSProviderInterface,
        config: StableVPSConfig,
        billing=None,
        poll_store: Optional[PollStore] = None,
    ):
        self.store = store
        self.provider = provider
        self.config = config
        self.billing = billing
        self.poll_store = poll_store

    # =========================================
    # PROVISIONING (shared with the webhook)
    # =========================================

    def mock_fallback(self) -> Optional[CreateResult]:
        """Synthetic instance used in non-production when explicitly allowed."""
        if self.config.is_production or not self.config.allow_mock_fallback:
            return None
        now_ms = int(time.time() * 1000)
        logger.warning("Provider failed, continuing with mock VPS (ALLOW_MOCK_FALLBACK)")
        return CreateResult(
            instance_id=f"mock-vps-{now_ms}",
            status=InstanceStatus.MOCK,
            password=f"DevPass{_base36(now_ms)}!",
        )

    def create_instance(self, user: UserRecord, plan_id: str, location: str) -> CreateResult:
        """Order the VPS. Raises ProviderError unchanged."""
        result = self.provider.create_instance(plan_id, hostname_label(user), location)
        logger.info(
            f"VPS provisioning started: {result.instance_id}",
            extra={"user_id": user.id, "instance_id": result.instance_id, "provider": self.provider.PROVIDER_ID},
        )
        return result

    def track(self, user_id: str, service: ServiceRecord) -> None:
        """Enqueue a durable poll cursor for a real (non-mock) instance."""
        if self.poll_store is None or not service.server_id or service.vps_status != "provisioning":
            return
        if service.server_id.startswith("mock-vps-"):
            return
        self.poll_store.enqueue(
            instance_id=service.server_id,
            provider=service.provider,
            user_id=user_id,
            service_id=service.id,
            interval_seconds=self.config.polling.interval_seconds,
            max_attempts=self.config.polling.max_attempts,
        )

    # =========================================
    # ORDERS
    # =========================================

    def place_order(self, user_id: str, request: OrderRequest) -> OrderResult:
        validate_order(request)

        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        original_price = get_plan_price(request.plan_id, BillingCycle(request.billing_cycle))

        # First order of a referred user gets the referral discount
        discount = 0
        referral = None
        if user.referred_by and not user.services:
            discount = REFERRAL_DISCOUNT_PERCENT
            referral = self.store.get_pending_referral(user.id)

        price = apply_discount(original_price, discount)

        if request.payment_method == "wallet":
            return self._pay_with_wallet(user, request, price, discount, referral)
        return self._pay_with_card(user, request, price, original_price, discount, referral)

    def _refund(self, user_id: str, amount: float) -> None:
        balance = self.store.credit_balance(user_id, amount)
        logger.info(f"Refunded {amount} to user {user_id} (balance {balance})", extra={"user_id": user_id})

    def _pay_with_wallet(self, user: UserRecord, request: OrderRequest, price: float,
                         discount: int, referral) -> OrderResult:
        new_balance = self.store.debit_balance(user.id, price)
        if new_balance is None:
            logger.info(f"Insufficient balance for user {user.id}: {user.balance} < {price}", extra={"user_id": user.id})
            raise InsufficientBalanceError(required=price, available=user.balance)

        try:
            result = self.create_instance(user, request.plan_id, request.location)
        except ProviderError as e:
            logger.error(f"Failed to provision VPS for user {user.id}: {e}", extra={"user_id": user.id})
            result = self.mock_fallback()
            if result is None:
                self._refund(user.id, price)
                raise ProvisioningFailedError()
        except Exception:
            # No instance exists yet, so the debit must not stand
            self._refund(user.id, price)
            raise

        start = datetime.utcnow()
        service = self.store.add_service(user.id, ServiceRecord(
            plan_id=request.plan_id,
            billing_cycle=request.billing_cycle,
            location=request.location,
            status="active",
            vps_status="provisioning",
            server_id=result.instance_id,
            provider=self.provider.PROVIDER_ID,
            rdp_password=result.password or "",
            current_period_start=start,
            current_period_end=period_end(start, BillingCycle(request.billing_cycle)),
        ))

        plan = get_plan(request.plan_id)
        cycle_label = "Monthly" if request.billing_cycle == "monthly" else "Yearly"
        self.store.create_invoice(
            user.id,
            "subscription",
            price,
            currency=self.config.currency.upper(),
            status="paid",
            payment_method="wallet",
            description=f"VPS {plan.name} - {cycle_label}",
            metadata={
                "plan_id": request.plan_id,
                "billing_cycle": request.billing_cycle,
                "location": request.location,
                "referral_id": referral.id if referral else "",
                "discount_percent": str(discount),
            },
        )

        if referral is not None and price > 0:
            self.pay_commission(referral.id, referral.referrer_id, user.id, price, order_id=result.instance_id)

        self.track(user.id, service)

        return OrderResult(
            payment_method="wallet",
            price=price,
            discount_percent=discount,
            vps_id=result.instance_id,
            service_id=service.id,
            new_balance=new_balance,
        )

    def _pay_with_card(self, user: UserRecord, request: OrderRequest, price: float,
                       original_price: float, discount: int, referral) -> OrderResult:
        customer_id = self.billing.ensure_customer(user)

        metadata = {
            "userId": user.id,
            "planId": request.plan_id,
            "billingCycle": request.billing_cycle,
            "location": request.location,
            "referralId": referral.id if referral else "",
            "referrerId": (user.referred_by or "") if discount else "",
            "discountPercent": str(discount),
            "originalPrice": str(original_price),
        }
        url = self.billing.create_subscription_checkout(
            customer_id=customer_id,
            plan=get_plan(request.plan_id),
            billing_cycle=BillingCycle(request.billing_cycle),
            price=price,
            metadata=metadata,
        )

        self.store.update_user(user.id, pending_subscription={
            "plan_id": request.plan_id,
            "billing_cycle": request.billing_cycle,
            "location": request.location,
            "status": "pending",
        })

        return OrderResult(payment_method="card", price=price, discount_percent=discount, checkout_url=url)

    # =========================================
    # REFERRALS
    # =========================================

    def pay_commission(self, referral_id: str, referrer_id: str, referee_id: str,
                       order_amount: float, order_id: str) -> Optional[float]:
        """Credit the referrer. Failures are logged; the order itself stands."""
        commission = round(order_amount * REFERRAL_COMMISSION_PERCENT / 100, 2)

        referral = self.store.complete_referral(referral_id, commission, order_amount, order_id)
        if referral is None:
            logger.warning(f"Referral {referral_id} not pending, no commission paid")
            return None

        self.store.create_transaction(
            referrer_id,
            "credit",
            commission,
            currency=self.config.currency.upper(),
            description=f"Referral commission - {REFERRAL_COMMISSION_PERCENT}% on order",
            reference=f"referral-{referral_id}",
            metadata={
                "referral_id": referral_id,
                "referee_id": referee_id,
                "order_amount": order_amount,
                "commission_rate": REFERRAL_COMMISSION_PERCENT,
            },
        )
        logger.info(f"Referral commission {commission} credited to {referrer_id}", extra={"user_id": referrer_id})
        return commission
