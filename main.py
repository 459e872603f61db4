"""
StableVPS API
=============

Main entry point for the StableVPS provisioning backend.

Endpoints:
- GET  /api/health - Health check
- GET  /api/providers - Registered and configured VPS providers
- GET  /api/plans - Plan catalog
- POST /api/orders - Place an order (wallet or card)
- GET  /api/user - Current user with reconciled services
- GET  /api/services - Services of the current user
- GET  /api/services/{service_id} - One service
- POST /api/services/{service_id}/actions - reboot/stop/start/delete/change_password
- POST /api/wallet/topup - Wallet top-up checkout
- GET  /api/invoices - Invoices of the current user
- GET  /api/referrals - Referral code, stats and history
- POST /api/referrals/validate - Check a referral code
- GET|POST /api/tickets - List or open support tickets
- POST /api/tickets/create-cancellation - Request cancellation of a service
- GET|POST|PATCH /api/tickets/{ticket_id} - Read, reply to or close a ticket
- POST /api/admin/cancel-service - Admin cancellation
- POST /api/admin/poll/run - Run due provisioning polls now
- POST /api/admin/credit-wallet - Manual wallet credit
- GET  /api/admin/tickets - All support tickets
- GET|POST|PATCH /api/admin/tickets/{ticket_id} - Read, answer or set status
- POST /api/stripe/webhook - Stripe webhook (public, signature verified)

Authentication is handled upstream; the authenticated user ID arrives
in the X-User-Id header.
"""

import asyncio
import logging
import secrets
from datetime import datetime
from typing import Dict, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from stablevps.accounts import AccountManager
from stablevps.billing import StripeBilling, WebhookProcessor
from stablevps.config import StableVPSConfig
from stablevps.logging_config import configure_logging
from stablevps.orders import OrderError, OrderHandler, OrderRequest
from stablevps.plans import list_plans
from stablevps.poll_store import PollRunner, PollStore
from stablevps.providers import (
    ControlAction,
    ProviderRegistry,
    VPSProviderInterface,
    get_provider,
)
from stablevps.services import ServiceManager
from stablevps.store import DocumentStore, InMemoryStore
from stablevps.support import SupportDesk

# Load .env file if present (dev mode)
load_dotenv()

logger = logging.getLogger(__name__)

# Load centralized config from environment
config = StableVPSConfig.from_env()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

# Initialize FastAPI
app = FastAPI(
    title="StableVPS",
    description="Forex VPS ordering and provisioning API",
    version="1.0.0",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS from config
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global state
store: Optional[DocumentStore] = None
provider: Optional[VPSProviderInterface] = None
poll_store: Optional[PollStore] = None
billing: Optional[StripeBilling] = None
orders: Optional[OrderHandler] = None
services: Optional[ServiceManager] = None
webhooks: Optional[WebhookProcessor] = None
accounts: Optional[AccountManager] = None
support: Optional[SupportDesk] = None
poll_runner: Optional[PollRunner] = None
_extra_providers: Dict[str, VPSProviderInterface] = {}


def resolve_provider(provider_id: str) -> VPSProviderInterface:
    """Adapter for a stored provider ID. Cursors may predate a provider switch."""
    if provider is not None and provider_id == provider.PROVIDER_ID:
        return provider
    if provider_id not in _extra_providers:
        _extra_providers[provider_id] = ProviderRegistry.create(provider_id, config)
    return _extra_providers[provider_id]


def init_services(
    cfg: Optional[StableVPSConfig] = None,
    vps_provider: Optional[VPSProviderInterface] = None,
    document_store: Optional[DocumentStore] = None,
    cursor_store: Optional[PollStore] = None,
):
    """Wire the application services. Arguments override the defaults (tests)."""
    global config, store, provider, poll_store, billing, orders, services, webhooks, poll_runner, accounts, support

    if cfg is not None:
        config = cfg

    _extra_providers.clear()
    store = document_store or InMemoryStore()
    provider = vps_provider or get_provider(config)
    poll_store = cursor_store or PollStore(config.poll_store_path)
    billing = StripeBilling(config.stripe, store, currency=config.currency)
    orders = OrderHandler(store, provider, config, billing=billing, poll_store=poll_store)
    services = ServiceManager(store, provider, billing=billing)
    webhooks = WebhookProcessor(store, billing, orders)
    accounts = AccountManager(store, config.stripe.app_url, currency=config.currency)
    support = SupportDesk(store)
    poll_runner = PollRunner(
        store,
        poll_store,
        resolve_provider,
        interval_seconds=config.polling.interval_seconds,
    )
    logger.info(f"Services initialized with provider {provider.PROVIDER_ID}")


async def run_poll_loop():
    """Drive the provisioning poll runner until shutdown."""
    while True:
        try:
            await asyncio.to_thread(poll_runner.run_due)
        except Exception as e:
            logger.error(f"Poll runner failed: {e}", exc_info=True)
        await asyncio.sleep(config.polling.runner_period_seconds)


@app.on_event("startup")
async def startup_event():
    """Initialize all services on startup."""
    configure_logging(config.log_level, config.log_format)
    init_services()

    # Resume polls interrupted by a restart
    if config.polling.runner_enabled:
        asyncio.create_task(run_poll_loop())

    logger.info("StableVPS API started")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    for adapter in [provider, *_extra_providers.values()]:
        if adapter is not None:
            adapter.close()


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, **exc.details})


# ============================================
# AUTH DEPENDENCIES
# ============================================

def current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    if not config.admin_token:
        raise HTTPException(status_code=403, detail="Admin API disabled")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, config.admin_token):
        raise HTTPException(status_code=403, detail="Unauthorized")


# ============================================
# REQUEST MODELS
# ============================================

class OrderBody(BaseModel):
    planId: Optional[str] = None
    billingCycle: Optional[str] = None
    location: Optional[str] = None
    paymentMethod: Optional[str] = None


class ActionBody(BaseModel):
    action: str
    password: Optional[str] = None

    @field_validator("action")
    @classmethod
    def validate_action(cls, v):
        valid = {a.value for a in ControlAction}
        if v not in valid:
            raise ValueError(f"Action must be one of: {', '.join(sorted(valid))}")
        return v


class TopupBody(BaseModel):
    amount: float


class CancelServiceBody(BaseModel):
    userId: str
    serviceId: str
    reason: str = ""


class ReferralCodeBody(BaseModel):
    referralCode: Optional[str] = None


class TicketBody(BaseModel):
    subject: Optional[str] = None
    message: Optional[str] = None
    department: Optional[str] = None
    priority: Optional[str] = None
    relatedService: Optional[str] = None


class TicketReplyBody(BaseModel):
    message: Optional[str] = None


class TicketUpdateBody(BaseModel):
    action: Optional[str] = None
    status: Optional[str] = None


class CancellationRequestBody(BaseModel):
    serviceId: Optional[str] = None


class CreditWalletBody(BaseModel):
    email: Optional[str] = None
    amount: Optional[float] = None
    reason: str = ""


# ============================================
# PUBLIC ENDPOINTS
# ============================================

@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "provider": provider.PROVIDER_ID if provider else None,
        "environment": config.environment,
        "stripe_configured": config.stripe.is_configured,
        "webhook_configured": bool(config.stripe.webhook_secret),
        "pending_polls": len(poll_store.list_cursors("pending")) if poll_store else 0,
    }


@app.get("/api/providers")
async def list_providers():
    """List registered VPS providers and which ones have credentials."""
    return {
        "active": provider.PROVIDER_ID if provider else None,
        "configured": config.credentials.available_providers(),
        "providers": ProviderRegistry.list_providers(),
    }


@app.get("/api/plans")
async def get_plans():
    return {"plans": [plan.to_dict() for plan in list_plans()], "currency": config.currency.upper()}


# ============================================
# CUSTOMER ENDPOINTS
# ============================================

@app.post("/api/orders")
@limiter.limit("10/minute")
async def create_order(request: Request, body: OrderBody, user_id: str = Depends(current_user_id)):
    """Place an order. Wallet orders provision immediately, card orders return a checkout URL."""
    order = OrderRequest(
        plan_id=body.planId or "",
        billing_cycle=body.billingCycle or "",
        location=body.location or "",
        payment_method=body.paymentMethod or "",
    )
    result = await asyncio.to_thread(orders.place_order, user_id, order)
    return result.to_dict()


@app.get("/api/user")
async def get_current_user(user_id: str = Depends(current_user_id)):
    """Current user. Services still provisioning are reconciled with the provider first."""
    user = await asyncio.to_thread(services.refresh, user_id)
    return {"user": user.to_dict()}


@app.get("/api/services")
async def list_services(user_id: str = Depends(current_user_id)):
    return {"services": [s.to_dict() for s in services.list_services(user_id)]}


@app.get("/api/services/{service_id}")
async def get_service(service_id: str, user_id: str = Depends(current_user_id)):
    service = store.get_service(user_id, service_id)
    if service is None:
        raise HTTPException(status_code=404, detail="Service not found")
    return {"service": service.to_dict(include_secrets=True)}


@app.post("/api/services/{service_id}/actions")
@limiter.limit("30/minute")
async def service_action(request: Request, service_id: str, body: ActionBody,
                         user_id: str = Depends(current_user_id)):
    """Pass a control action through to the provider."""
    accepted = await asyncio.to_thread(services.control, user_id, service_id, body.action, body.password)
    if not accepted:
        raise HTTPException(status_code=502, detail=f"Provider did not accept {body.action}")
    return {"success": True, "action": body.action}


@app.post("/api/wallet/topup")
@limiter.limit("10/minute")
async def wallet_topup(request: Request, body: TopupBody, user_id: str = Depends(current_user_id)):
    user = store.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    url = await asyncio.to_thread(billing.create_topup_checkout, user, body.amount)
    return {"success": True, "checkoutUrl": url}


@app.get("/api/invoices")
async def list_invoices(user_id: str = Depends(current_user_id)):
    return {
        "invoices": [
            {
                "invoiceNumber": inv.invoice_number,
                "type": inv.type,
                "amount": inv.amount,
                "currency": inv.currency,
                "status": inv.status,
                "description": inv.description,
                "paidAt": inv.paid_at.isoformat() if inv.paid_at else None,
            }
            for inv in store.list_invoices(user_id)
        ]
    }


# ============================================
# REFERRALS
# ============================================

@app.get("/api/referrals")
async def get_referrals(user_id: str = Depends(current_user_id)):
    return accounts.referral_info(user_id)


@app.post("/api/referrals/validate")
@limiter.limit("20/minute")
async def validate_referral(request: Request, body: ReferralCodeBody):
    """Public: checked during signup."""
    return accounts.validate_referral_code(body.referralCode or "")


# ============================================
# SUPPORT TICKETS
# ============================================

@app.get("/api/tickets")
async def list_tickets(status: Optional[str] = None, user_id: str = Depends(current_user_id)):
    result = support.list_tickets(user_id, status)
    return {
        "success": True,
        "tickets": [t.to_dict() for t in result["tickets"]],
        "counts": result["counts"],
    }


@app.post("/api/tickets")
@limiter.limit("10/minute")
async def create_ticket(request: Request, body: TicketBody, user_id: str = Depends(current_user_id)):
    ticket = support.create_ticket(
        user_id,
        subject=body.subject or "",
        message=body.message or "",
        department=body.department,
        priority=body.priority,
        related_service=body.relatedService,
    )
    return {"success": True, "ticket": ticket.to_dict(), "message": "Ticket created successfully"}


@app.post("/api/tickets/create-cancellation")
@limiter.limit("10/minute")
async def create_cancellation_ticket(request: Request, body: CancellationRequestBody,
                                     user_id: str = Depends(current_user_id)):
    result = support.request_cancellation(user_id, body.serviceId or "")
    response = {"success": True, "ticketId": result["ticket"].id}
    if not result["created"]:
        response["message"] = "A cancellation request is already open for this service."
    return response


@app.get("/api/tickets/{ticket_id}")
async def get_ticket(ticket_id: str, user_id: str = Depends(current_user_id)):
    ticket = support.get_ticket(user_id, ticket_id)
    return {"success": True, "ticket": ticket.to_dict(include_messages=True)}


@app.post("/api/tickets/{ticket_id}")
@limiter.limit("30/minute")
async def reply_ticket(request: Request, ticket_id: str, body: TicketReplyBody,
                       user_id: str = Depends(current_user_id)):
    ticket = support.reply(user_id, ticket_id, body.message or "")
    return {"success": True, "ticket": ticket.to_dict()}


@app.patch("/api/tickets/{ticket_id}")
async def update_ticket(ticket_id: str, body: TicketUpdateBody, user_id: str = Depends(current_user_id)):
    if body.action != "close":
        raise HTTPException(status_code=400, detail="Unsupported ticket action")
    ticket = support.close(user_id, ticket_id)
    return {"success": True, "status": ticket.status}


# ============================================
# ADMIN ENDPOINTS
# ============================================

@app.post("/api/admin/cancel-service", dependencies=[Depends(require_admin)])
async def admin_cancel_service(body: CancelServiceBody):
    results = await asyncio.to_thread(services.cancel, body.userId, body.serviceId, body.reason)
    return {"success": True, "results": results}


@app.post("/api/admin/poll/run", dependencies=[Depends(require_admin)])
async def admin_run_polls():
    """Run every due provisioning poll now."""
    summary = await asyncio.to_thread(poll_runner.run_due)
    return {"success": True, "summary": summary}


@app.post("/api/admin/credit-wallet", dependencies=[Depends(require_admin)])
async def admin_credit_wallet(body: CreditWalletBody):
    result = accounts.credit_wallet(body.email or "", body.amount or 0, body.reason)
    return {"success": True, **result}


@app.get("/api/admin/tickets", dependencies=[Depends(require_admin)])
async def admin_list_tickets(status: Optional[str] = None, page: int = 1, limit: int = 20):
    result = support.admin_list(status, page=page, limit=limit)
    return {
        "success": True,
        "tickets": [t.to_dict() | {"userId": t.user_id} for t in result["tickets"]],
        "counts": result["counts"],
        "pagination": result["pagination"],
    }


@app.get("/api/admin/tickets/{ticket_id}", dependencies=[Depends(require_admin)])
async def admin_get_ticket(ticket_id: str):
    ticket = support.admin_get(ticket_id)
    return {"success": True, "ticket": ticket.to_dict(include_messages=True) | {"userId": ticket.user_id}}


@app.post("/api/admin/tickets/{ticket_id}", dependencies=[Depends(require_admin)])
async def admin_reply_ticket(ticket_id: str, body: TicketReplyBody):
    ticket = support.admin_reply(ticket_id, body.message or "")
    return {"success": True, "ticket": ticket.to_dict()}


@app.patch("/api/admin/tickets/{ticket_id}", dependencies=[Depends(require_admin)])
async def admin_update_ticket(ticket_id: str, body: TicketUpdateBody):
    ticket = support.admin_set_status(ticket_id, body.status or "")
    return {"success": True, "status": ticket.status}


# ============================================
# STRIPE WEBHOOK
# ============================================

@app.post("/api/stripe/webhook")
@limiter.limit("60/minute")
async def stripe_webhook(request: Request):
    """
    Handle Stripe webhook events.

    This endpoint is PUBLIC but secured via Stripe signature verification.
    """
    if not config.stripe.webhook_secret:
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    payload = await request.body()
    try:
        event = billing.construct_event(payload, request.headers.get("stripe-signature"))
    except ValueError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        action = await asyncio.to_thread(webhooks.handle, event)
    except Exception as e:
        logger.error(f"Webhook handler failed for {event['type']}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook handler failed")

    return {"received": True, "action": action}
