"""
StableVPS Test Fixtures
=======================

Shared fixtures for all test modules.
"""

import hashlib
import hmac
import json
import os
import time
import pytest
from unittest.mock import MagicMock, patch
from typing import Dict, Any, Tuple


# ============================================
# CONFIG
# ============================================

@pytest.fixture
def test_config():
    """Test configuration with dummy values."""
    from stablevps.config import StableVPSConfig, StripeConfig, ProviderCredentials, PollingConfig

    return StableVPSConfig(
        stripe=StripeConfig(
            secret_key="sk_test_fake",
            webhook_secret="whsec_test_fake",
            app_url="https://stablevps.test",
        ),
        credentials=ProviderCredentials(
            zomro_user="reseller@stablevps.test",
            zomro_password="zomro_test_password",
        ),
        polling=PollingConfig(interval_seconds=15, max_attempts=3, runner_enabled=False),
        vps_provider="zomro",
        environment="development",
        admin_token="admin_test_token",
        poll_store_path=None,
    )


# ============================================
# STORE
# ============================================

@pytest.fixture
def store():
    """Empty in-memory document store."""
    from stablevps.store import InMemoryStore
    return InMemoryStore()


@pytest.fixture
def user(store):
    """A customer with 100 EUR in the wallet."""
    return store.create_user("jane@example.com", first_name="Jane", last_name="Trader", balance=100.0)


@pytest.fixture
def poll_store():
    """Memory-only poll cursor store."""
    from stablevps.poll_store import PollStore
    return PollStore()


# ============================================
# PROVIDERS
# ============================================

@pytest.fixture
def mock_provider():
    """In-process provider whose instances are ready immediately."""
    from stablevps.providers.mock import MockProvider
    provider = MockProvider(target="zomro", ready_after_seconds=0)
    yield provider
    provider.close()


@pytest.fixture
def failing_provider():
    """Provider double whose orders are always rejected."""
    from stablevps.providers.base import ProviderRequestError

    provider = MagicMock()
    provider.PROVIDER_ID = "zomro"
    provider.create_instance = MagicMock(
        side_effect=ProviderRequestError("zomro", "API error: 500 - boom", status_code=500)
    )
    provider.get_instance = MagicMock(return_value=None)
    provider.control_instance = MagicMock(return_value=False)
    return provider


@pytest.fixture
def mock_billing():
    """Stripe billing double."""
    billing = MagicMock()
    billing.currency = "eur"
    billing.ensure_customer = MagicMock(return_value="cus_test_123")
    billing.create_subscription_checkout = MagicMock(return_value="https://checkout.stripe.test/cs_test_123")
    billing.cancel_subscription = MagicMock(return_value=True)
    billing.retrieve_subscription_period = MagicMock(return_value=None)
    return billing


# ============================================
# STRIPE
# ============================================

def _sign_payload(payload: Dict[str, Any], secret: str = "whsec_test_fake") -> Tuple[bytes, str]:
    body = json.dumps(payload).encode()
    timestamp = int(time.time())
    signed = f"{timestamp}.{body.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return body, f"t={timestamp},v1={signature}"


@pytest.fixture
def sign_payload():
    """Serialize an event and build a valid Stripe-Signature header for it."""
    return _sign_payload


@pytest.fixture
def subscription_checkout_event(user):
    """Mock Stripe checkout.session.completed event for a card subscription."""
    return {
        "id": "evt_test_123",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_123",
                "customer": "cus_test_123",
                "subscription": "sub_test_123",
                "amount_total": 1949,
                "currency": "eur",
                "metadata": {
                    "userId": user.id,
                    "planId": "prime",
                    "billingCycle": "monthly",
                    "location": "london",
                    "referralId": "",
                    "referrerId": "",
                    "discountPercent": "0",
                    "originalPrice": "19.49",
                },
            }
        },
    }


@pytest.fixture
def topup_checkout_event(user):
    """Mock Stripe checkout.session.completed event for a wallet top-up."""
    return {
        "id": "evt_test_456",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_456",
                "customer": "cus_test_123",
                "payment_intent": "pi_test_456",
                "metadata": {
                    "type": "wallet_topup",
                    "userId": user.id,
                    "amount": "50",
                },
            }
        },
    }


# ============================================
# FASTAPI TEST CLIENT
# ============================================

@pytest.fixture
def test_client(test_config, mock_provider, store, poll_store):
    """FastAPI test client for main.py wired to in-memory services."""
    from fastapi.testclient import TestClient

    with patch.dict(os.environ, {
        "STRIPE_SECRET_KEY": "sk_test_fake",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_fake",
    }):
        import main

        main.limiter.enabled = False
        main.init_services(
            cfg=test_config,
            vps_provider=mock_provider,
            document_store=store,
            cursor_store=poll_store,
        )
        client = TestClient(main.app)
        yield client
        main.limiter.enabled = True
