"""
StableVPS Stripe Billing
========================

Hosted Stripe Checkout for card subscriptions and wallet top-ups, and
the webhook processor that reacts to Stripe events.

Card orders are only provisioned here, after `checkout.session.completed`
confirms payment. Stripe retries webhooks, so provisioning is skipped
when a service for the subscription already exists.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import stripe

from .config import StripeConfig
from .orders import InvalidOrderError, OrderHandler
from .plans import BillingCycle, Plan, period_end, to_cents
from .providers.base import ProviderError
from .store import DocumentStore, ServiceRecord, UserRecord

logger = logging.getLogger(__name__)


TOPUP_MIN_AMOUNT = 5
TOPUP_MAX_AMOUNT = 1000

# Stripe subscription status -> service status
SUBSCRIPTION_STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "past_due",
    "canceled": "canceled",
}


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.utcfromtimestamp(value) if value else None


class StripeBilling:
    """Thin wrapper around the Stripe API calls the application makes."""

    def __init__(self, config: StripeConfig, store: DocumentStore, currency: str = "eur"):
        self.config = config
        self.store = store
        self.currency = currency.lower()

        if config.secret_key:
            stripe.api_key = config.secret_key

    def ensure_customer(self, user: UserRecord) -> str:
        """Return the user's Stripe customer ID, creating the customer once."""
        if user.stripe_customer_id:
            return user.stripe_customer_id

        customer = stripe.Customer.create(
            email=user.email,
            name=user.full_name,
            metadata={"userId": user.id},
        )
        self.store.update_user(user.id, stripe_customer_id=customer.id)
        logger.info(f"Created Stripe customer {customer.id} for user {user.id}", extra={"user_id": user.id})
        return customer.id

    def create_subscription_checkout(
        self,
        customer_id: str,
        plan: Plan,
        billing_cycle: BillingCycle,
        price: float,
        metadata: Dict[str, str],
    ) -> str:
        """
        Create a subscription Checkout Session and return its URL.

        The (possibly discounted) price is charged through inline
        price_data, so no Stripe Price objects need to exist.
        """
        interval = "month" if billing_cycle == BillingCycle.MONTHLY else "year"

        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": self.currency,
                    "product_data": {
                        "name": f"STABLEVPS {plan.name}",
                        "description": (
                            f"VPS Trading - {plan.platforms} platforms - "
                            f"{plan.specs.get('cpu')}, {plan.specs.get('ram')}, {plan.specs.get('storage')}"
                        ),
                    },
                    "unit_amount": to_cents(price),
                    "recurring": {"interval": interval},
                },
                "quantity": 1,
            }],
            success_url=f"{self.config.app_url}/dashboard/services?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.config.app_url}/dashboard/order?canceled=true",
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
        logger.info(f"Created checkout session {session.id} for customer {customer_id}")
        return session.url

    def create_topup_checkout(self, user: UserRecord, amount: float) -> str:
        """
        Create a one-off payment Checkout Session that credits the wallet.

        Raises:
            InvalidOrderError: Amount outside the allowed range
        """
        if not amount or amount < TOPUP_MIN_AMOUNT or amount > TOPUP_MAX_AMOUNT:
            raise InvalidOrderError(f"Amount must be between {TOPUP_MIN_AMOUNT} and {TOPUP_MAX_AMOUNT}")

        customer_id = self.ensure_customer(user)
        transaction = self.store.create_transaction(
            user.id,
            "credit",
            amount,
            currency=self.currency.upper(),
            description=f"Wallet top-up: {amount} {self.currency.upper()}",
            status="pending",
        )

        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode="payment",
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": self.currency,
                    "product_data": {"name": "Wallet top-up"},
                    "unit_amount": to_cents(amount),
                },
                "quantity": 1,
            }],
            success_url=f"{self.config.app_url}/dashboard/billing?topup=success",
            cancel_url=f"{self.config.app_url}/dashboard/billing?topup=canceled",
            metadata={
                "type": "wallet_topup",
                "userId": user.id,
                "amount": str(amount),
                "transactionId": transaction.id,
            },
        )
        return session.url

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook payload and return the event.

        Raises:
            ValueError: If the secret is missing or the signature is invalid
        """
        if not self.config.webhook_secret:
            raise ValueError("Webhook secret not configured")
        if not signature:
            raise ValueError("Missing signature")

        try:
            return stripe.Webhook.construct_event(payload, signature, self.config.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise ValueError(f"Invalid webhook signature: {e}")

    def cancel_subscription(self, subscription_id: str) -> bool:
        """Cancel immediately. False if Stripe refused (it may already be canceled)."""
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to cancel Stripe subscription {subscription_id}: {e}")
            return False
        logger.info(f"Stripe subscription {subscription_id} canceled")
        return True

    def retrieve_subscription_period(self, subscription_id: str) -> Optional[Tuple[datetime, datetime]]:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Error fetching subscription {subscription_id}: {e}")
            return None

        start = _from_timestamp(subscription.get("current_period_start"))
        end = _from_timestamp(subscription.get("current_period_end"))
        if not start or not end:
            return None
        return start, end


class WebhookProcessor:
    """Applies Stripe events to the document store."""

    def __init__(self, store: DocumentStore, billing: StripeBilling, orders: OrderHandler):
        self.store = store
        self.billing = billing
        self.orders = orders

    def handle(self, event: Dict[str, Any]) -> str:
        """Dispatch one event. Returns the name of the action taken."""
        event_type = event["type"]
        obj = event["data"]["object"]
        logger.info(f"Stripe webhook received: {event_type}")

        if event_type == "checkout.session.completed":
            return self._checkout_completed(obj)
        if event_type == "customer.subscription.updated":
            return self._subscription_updated(obj)
        if event_type == "customer.subscription.deleted":
            return self._subscription_deleted(obj)
        if event_type == "invoice.payment_failed":
            return self._payment_failed(obj)

        logger.info(f"Unhandled event type: {event_type}")
        return "ignored"

    # ---- checkout.session.completed ----

    def _checkout_completed(self, session: Dict[str, Any]) -> str:
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        if not user_id and session.get("customer"):
            customer = self.store.find_user_by_customer(session["customer"])
            user_id = customer.id if customer else None
        if not user_id or self.store.get_user(user_id) is None:
            logger.warning(f"Checkout session {session.get('id')} has no known user")
            return "ignored"

        if metadata.get("type") == "wallet_topup":
            return self._credit_wallet(user_id, session, metadata)
        if metadata.get("planId"):
            return self._activate_subscription(user_id, session, metadata)
        return "ignored"

    def _credit_wallet(self, user_id: str, session: Dict[str, Any], metadata: Dict[str, str]) -> str:
        amount = float(metadata.get("amount") or 0)
        if amount <= 0:
            return "ignored"

        previous_balance = self.store.get_user(user_id).balance
        new_balance = self.store.credit_balance(user_id, amount)

        if metadata.get("transactionId"):
            self.store.update_transaction(
                metadata["transactionId"],
                status="completed",
                reference=session.get("payment_intent") or "",
            )

        invoice = self.store.create_invoice(
            user_id,
            "wallet_topup",
            amount,
            currency=self.billing.currency.upper(),
            status="paid",
            payment_method="card",
            description=f"Wallet top-up: {amount} {self.billing.currency.upper()}",
            metadata={
                "previous_balance": previous_balance,
                "new_balance": new_balance,
                "stripe_session_id": session.get("id"),
                "stripe_payment_intent_id": session.get("payment_intent"),
            },
        )
        logger.info(f"Wallet credited: {amount} for user {user_id} - invoice {invoice.invoice_number}", extra={"user_id": user_id})
        return "wallet_credited"

    def _activate_subscription(self, user_id: str, session: Dict[str, Any], metadata: Dict[str, str]) -> str:
        subscription_id = session.get("subscription")
        if subscription_id and self.store.find_service_by_subscription(subscription_id):
            logger.info(f"Subscription {subscription_id} already provisioned, skipping")
            return "duplicate"

        plan_id = metadata["planId"]
        location = metadata.get("location") or "london"
        billing_cycle = metadata.get("billingCycle") or "monthly"
        user = self.store.get_user(user_id)

        period = self.billing.retrieve_subscription_period(subscription_id) if subscription_id else None
        if period is None:
            start = datetime.utcnow()
            period = (start, period_end(start, BillingCycle(billing_cycle)))

        vps_status = "provisioning"
        server_id, password = "", ""
        try:
            result = self.orders.create_instance(user, plan_id, location)
            server_id, password = result.instance_id, result.password or ""
        except ProviderError as e:
            logger.error(f"Failed to provision VPS during webhook: {e}", extra={"user_id": user_id})
            fallback = self.orders.mock_fallback()
            if fallback is None:
                # Payment is captured; leave a failed service for support to act on
                vps_status = "failed"
            else:
                server_id, password = fallback.instance_id, fallback.password
        except Exception as e:
            # Answering 500 would make Stripe redeliver and order again
            logger.error(f"Unexpected error provisioning VPS during webhook: {e!r}", extra={"user_id": user_id}, exc_info=True)
            vps_status = "failed"

        service = self.store.add_service(user_id, ServiceRecord(
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            location=location,
            status="active",
            vps_status=vps_status,
            server_id=server_id,
            provider=self.orders.provider.PROVIDER_ID,
            rdp_password=password,
            current_period_start=period[0],
            current_period_end=period[1],
            stripe_subscription_id=subscription_id,
        ))
        self.store.update_user(user_id, pending_subscription={})

        amount = (session.get("amount_total") or 0) / 100
        if amount > 0:
            self.store.create_invoice(
                user_id,
                "subscription",
                amount,
                currency=(session.get("currency") or self.billing.currency).upper(),
                status="paid",
                payment_method="card",
                description=f"VPS subscription {location} ({billing_cycle})",
                metadata={
                    "stripe_subscription_id": subscription_id,
                    "stripe_session_id": session.get("id"),
                },
            )

        if metadata.get("referralId") and metadata.get("referrerId") and amount > 0:
            self.orders.pay_commission(
                metadata["referralId"],
                metadata["referrerId"],
                user_id,
                amount,
                order_id=subscription_id or service.id,
            )

        self.orders.track(user_id, service)
        logger.info(f"Subscription activated for user {user_id}, service {service.id}", extra={"user_id": user_id})
        return "subscription_activated"

    # ---- subscription lifecycle ----

    def _subscription_updated(self, subscription: Dict[str, Any]) -> str:
        found = self.store.find_service_by_subscription(subscription["id"])
        if not found:
            logger.warning(f"No service for subscription {subscription['id']}")
            return "ignored"

        user_id, service = found
        updates = {"status": SUBSCRIPTION_STATUS_MAP.get(subscription.get("status"), "pending")}
        start = _from_timestamp(subscription.get("current_period_start"))
        end = _from_timestamp(subscription.get("current_period_end"))
        if start and end:
            updates["current_period_start"] = start
            updates["current_period_end"] = end

        self.store.update_service(user_id, service.id, **updates)
        logger.info(f"Service subscription updated for user {user_id}", extra={"user_id": user_id})
        return "subscription_updated"

    def _subscription_deleted(self, subscription: Dict[str, Any]) -> str:
        found = self.store.find_service_by_subscription(subscription["id"])
        if not found:
            return "ignored"

        user_id, service = found
        self.store.update_service(user_id, service.id, status="canceled", vps_status="suspended")
        logger.info(f"Service subscription canceled for user {user_id}", extra={"user_id": user_id})
        return "subscription_canceled"

    def _payment_failed(self, invoice: Dict[str, Any]) -> str:
        subscription_id = invoice.get("subscription")
        found = self.store.find_service_by_subscription(subscription_id) if subscription_id else None
        if not found:
            return "ignored"

        user_id, service = found
        self.store.update_service(user_id, service.id, status="past_due")
        logger.warning(f"Payment failed for user {user_id}", extra={"user_id": user_id})
        return "payment_failed"
