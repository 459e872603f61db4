"""
StableVPS Document Store
========================

Persistence contract for users, services, invoices, transactions,
referrals and support tickets. The hosted document database is an
external collaborator; `DocumentStore` is the CRUD surface the
application relies on and `InMemoryStore` is a thread-safe
implementation used by the app and the test suite.

Getters return copies. Mutations go through the store so that balance
changes stay atomic.
"""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .providers.base import DEFAULT_ADMIN_USERNAME, InstanceDetails

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


# =========================================
# RECORDS
# =========================================

@dataclass
class ServiceRecord:
    """A purchased VPS: billing metadata plus a snapshot of the provider instance."""
    plan_id: str
    billing_cycle: str
    location: str
    id: str = field(default_factory=_new_id)
    status: str = "active"  # active, past_due, canceled, pending
    vps_status: str = "provisioning"  # provisioning, active, suspended, failed, terminated
    server_id: str = ""
    provider: str = ""
    ip_address: str = ""
    rdp_username: str = DEFAULT_ADMIN_USERNAME
    rdp_password: str = ""
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    stripe_subscription_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "planId": self.plan_id,
            "billingCycle": self.billing_cycle,
            "location": self.location,
            "status": self.status,
            "vpsStatus": self.vps_status,
            "serverId": self.server_id,
            "provider": self.provider,
            "ipAddress": self.ip_address,
            "rdpUsername": self.rdp_username,
            "currentPeriodStart": self.current_period_start.isoformat() if self.current_period_start else None,
            "currentPeriodEnd": self.current_period_end.isoformat() if self.current_period_end else None,
            "stripeSubscriptionId": self.stripe_subscription_id,
            "createdAt": self.created_at.isoformat(),
        }
        if include_secrets:
            data["rdpPassword"] = self.rdp_password
        return data


@dataclass
class UserRecord:
    email: str
    first_name: str = ""
    last_name: str = ""
    id: str = field(default_factory=_new_id)
    balance: float = 0.0
    referred_by: Optional[str] = None
    referral_code: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    services: List[ServiceRecord] = field(default_factory=list)
    pending_subscription: Dict[str, Any] = field(default_factory=dict)
    affiliate_stats: Dict[str, Any] = field(
        default_factory=lambda: {"successful_referrals": 0, "total_earnings": 0.0}
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "balance": self.balance,
            "referralCode": self.referral_code,
            "services": [s.to_dict(include_secrets=True) for s in self.services],
            "affiliateStats": dict(self.affiliate_stats),
        }


@dataclass
class InvoiceRecord:
    invoice_number: str
    user_id: str
    type: str  # subscription, wallet_topup
    amount: float
    currency: str = "EUR"
    status: str = "paid"
    description: str = ""
    payment_method: str = "wallet"
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    paid_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class TransactionRecord:
    user_id: str
    type: str  # credit, debit
    amount: float
    description: str = ""
    currency: str = "EUR"
    status: str = "completed"
    reference: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ReferralRecord:
    referrer_id: str
    referee_id: str
    status: str = "pending"  # pending, completed
    commission_amount: float = 0.0
    order_amount: float = 0.0
    order_id: str = ""
    id: str = field(default_factory=_new_id)
    paid_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class TicketMessage:
    sender: str  # user, admin
    content: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class TicketRecord:
    """A support conversation between a customer and the support desk."""
    user_id: str
    subject: str
    ticket_number: str = ""
    department: str = "technical"  # technical, billing, sales, general
    priority: str = "medium"  # low, medium, high, urgent
    status: str = "open"  # open, answered, customer_reply, closed
    related_service: Optional[str] = None
    messages: List[TicketMessage] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self, include_messages: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "ticketNumber": self.ticket_number,
            "subject": self.subject,
            "department": self.department,
            "priority": self.priority,
            "status": self.status,
            "relatedService": self.related_service,
            "messageCount": len(self.messages),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if include_messages:
            data["messages"] = [
                {"sender": m.sender, "content": m.content, "createdAt": m.created_at.isoformat()}
                for m in self.messages
            ]
        return data


# =========================================
# STORE CONTRACT
# =========================================

class DocumentStore(ABC):
    """CRUD contract of the document database."""

    @abstractmethod
    def create_user(self, email: str, first_name: str = "", last_name: str = "",
                    balance: float = 0.0, referred_by: Optional[str] = None) -> UserRecord:
        pass

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    def update_user(self, user_id: str, **updates) -> Optional[UserRecord]:
        pass

    @abstractmethod
    def find_user_by_customer(self, customer_id: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    def find_user_by_referral_code(self, code: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    def debit_balance(self, user_id: str, amount: float) -> Optional[float]:
        """Atomically debit if funds suffice. Returns the new balance or None."""
        pass

    @abstractmethod
    def credit_balance(self, user_id: str, amount: float) -> float:
        pass

    @abstractmethod
    def add_service(self, user_id: str, service: ServiceRecord) -> ServiceRecord:
        pass

    @abstractmethod
    def get_service(self, user_id: str, service_id: str) -> Optional[ServiceRecord]:
        pass

    @abstractmethod
    def update_service(self, user_id: str, service_id: str, **updates) -> Optional[ServiceRecord]:
        pass

    @abstractmethod
    def find_service_by_subscription(self, subscription_id: str) -> Optional[Tuple[str, ServiceRecord]]:
        pass

    @abstractmethod
    def create_invoice(self, user_id: str, type: str, amount: float, **fields) -> InvoiceRecord:
        pass

    @abstractmethod
    def list_invoices(self, user_id: str) -> List[InvoiceRecord]:
        pass

    @abstractmethod
    def create_transaction(self, user_id: str, type: str, amount: float, **fields) -> TransactionRecord:
        pass

    @abstractmethod
    def update_transaction(self, transaction_id: str, **updates) -> Optional[TransactionRecord]:
        pass

    @abstractmethod
    def list_transactions(self, user_id: str) -> List[TransactionRecord]:
        pass

    @abstractmethod
    def list_referrals(self, referrer_id: str) -> List[ReferralRecord]:
        """Referrals made by a user, newest first."""
        pass

    @abstractmethod
    def get_pending_referral(self, referee_id: str) -> Optional[ReferralRecord]:
        pass

    @abstractmethod
    def complete_referral(self, referral_id: str, commission_amount: float,
                          order_amount: float, order_id: str) -> Optional[ReferralRecord]:
        pass

    # Tickets

    @abstractmethod
    def create_ticket(self, ticket: TicketRecord) -> TicketRecord:
        """Persist a new ticket, assigning its ticket number."""
        pass

    @abstractmethod
    def get_ticket(self, ticket_id: str) -> Optional[TicketRecord]:
        pass

    @abstractmethod
    def list_tickets(self, user_id: Optional[str] = None, status: Optional[str] = None) -> List[TicketRecord]:
        """Tickets, most recently updated first. No user_id means every user."""
        pass

    @abstractmethod
    def add_ticket_message(self, ticket_id: str, message: TicketMessage, status: str) -> Optional[TicketRecord]:
        pass

    @abstractmethod
    def update_ticket(self, ticket_id: str, **updates) -> Optional[TicketRecord]:
        pass

    def apply_instance_details(self, user_id: str, service_id: str, details: InstanceDetails) -> Optional[ServiceRecord]:
        """Copy a ready provider instance onto the service record."""
        service = self.get_service(user_id, service_id)
        if service is None:
            return None

        updates = {
            "vps_status": "active",
            "ip_address": details.ipv4,
            "rdp_username": details.username or DEFAULT_ADMIN_USERNAME,
        }
        # Keep the password captured at order time unless the provider reports one
        if details.password:
            updates["rdp_password"] = details.password
        return self.update_service(user_id, service_id, **updates)


# =========================================
# IN-MEMORY IMPLEMENTATION
# =========================================

class InMemoryStore(DocumentStore):
    """Thread-safe in-memory document store."""

    def __init__(self):
        self._users: Dict[str, UserRecord] = {}
        self._invoices: List[InvoiceRecord] = []
        self._transactions: Dict[str, TransactionRecord] = {}
        self._referrals: Dict[str, ReferralRecord] = {}
        self._tickets: Dict[str, TicketRecord] = {}
        self._lock = threading.RLock()

    # Users

    def create_user(self, email: str, first_name: str = "", last_name: str = "",
                    balance: float = 0.0, referred_by: Optional[str] = None) -> UserRecord:
        user = UserRecord(
            email=email,
            first_name=first_name,
            last_name=last_name,
            balance=balance,
            referred_by=referred_by,
        )
        with self._lock:
            self._users[user.id] = user
            if referred_by:
                referral = ReferralRecord(referrer_id=referred_by, referee_id=user.id)
                self._referrals[referral.id] = referral
        logger.info(f"Created user {user.id}", extra={"user_id": user.id})
        return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            return copy.deepcopy(user) if user else None

    def update_user(self, user_id: str, **updates) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            if not user:
                logger.warning(f"User {user_id} not found for update")
                return None
            for key, value in updates.items():
                setattr(user, key, value)
            return copy.deepcopy(user)

    def find_user_by_customer(self, customer_id: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self._users.values():
                if user.stripe_customer_id == customer_id:
                    return copy.deepcopy(user)
        return None

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        email = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == email:
                    return copy.deepcopy(user)
        return None

    def find_user_by_referral_code(self, code: str) -> Optional[UserRecord]:
        code = code.strip().upper()
        with self._lock:
            for user in self._users.values():
                if user.referral_code and user.referral_code == code:
                    return copy.deepcopy(user)
        return None

    def debit_balance(self, user_id: str, amount: float) -> Optional[float]:
        with self._lock:
            user = self._users.get(user_id)
            if not user or user.balance < amount:
                return None
            user.balance = round(user.balance - amount, 2)
            return user.balance

    def credit_balance(self, user_id: str, amount: float) -> float:
        with self._lock:
            user = self._users[user_id]
            user.balance = round(user.balance + amount, 2)
            return user.balance

    # Services

    def add_service(self, user_id: str, service: ServiceRecord) -> ServiceRecord:
        with self._lock:
            self._users[user_id].services.append(copy.deepcopy(service))
        logger.info(
            f"Added service {service.id} ({service.plan_id}) for user {user_id}",
            extra={"user_id": user_id, "service_id": service.id},
        )
        return copy.deepcopy(service)

    def _find_service(self, user_id: str, service_id: str) -> Optional[ServiceRecord]:
        user = self._users.get(user_id)
        if not user:
            return None
        return next((s for s in user.services if s.id == service_id), None)

    def get_service(self, user_id: str, service_id: str) -> Optional[ServiceRecord]:
        with self._lock:
            service = self._find_service(user_id, service_id)
            return copy.deepcopy(service) if service else None

    def update_service(self, user_id: str, service_id: str, **updates) -> Optional[ServiceRecord]:
        with self._lock:
            service = self._find_service(user_id, service_id)
            if not service:
                logger.warning(f"Service {service_id} not found for user {user_id}")
                return None
            for key, value in updates.items():
                setattr(service, key, value)
            return copy.deepcopy(service)

    def find_service_by_subscription(self, subscription_id: str) -> Optional[Tuple[str, ServiceRecord]]:
        with self._lock:
            for user in self._users.values():
                for service in user.services:
                    if service.stripe_subscription_id == subscription_id:
                        return user.id, copy.deepcopy(service)
        return None

    # Invoices

    def _next_invoice_number(self, now: datetime) -> str:
        prefix = f"INV-{now.strftime('%Y%m')}-"
        sequences = [
            int(inv.invoice_number.rsplit("-", 1)[-1])
            for inv in self._invoices
            if inv.invoice_number.startswith(prefix)
        ]
        return f"{prefix}{max(sequences, default=0) + 1:04d}"

    def create_invoice(self, user_id: str, type: str, amount: float, **fields) -> InvoiceRecord:
        now = datetime.utcnow()
        with self._lock:
            invoice = InvoiceRecord(
                invoice_number=self._next_invoice_number(now),
                user_id=user_id,
                type=type,
                amount=amount,
                paid_at=now if fields.get("status", "paid") == "paid" else None,
                **fields,
            )
            self._invoices.append(invoice)
        logger.info(f"Invoice {invoice.invoice_number} created for user {user_id}", extra={"user_id": user_id})
        return copy.deepcopy(invoice)

    def list_invoices(self, user_id: str) -> List[InvoiceRecord]:
        with self._lock:
            return [copy.deepcopy(inv) for inv in self._invoices if inv.user_id == user_id]

    # Transactions

    def create_transaction(self, user_id: str, type: str, amount: float, **fields) -> TransactionRecord:
        transaction = TransactionRecord(user_id=user_id, type=type, amount=amount, **fields)
        with self._lock:
            self._transactions[transaction.id] = transaction
        return copy.deepcopy(transaction)

    def update_transaction(self, transaction_id: str, **updates) -> Optional[TransactionRecord]:
        with self._lock:
            transaction = self._transactions.get(transaction_id)
            if not transaction:
                return None
            for key, value in updates.items():
                setattr(transaction, key, value)
            return copy.deepcopy(transaction)

    def list_transactions(self, user_id: str) -> List[TransactionRecord]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._transactions.values() if t.user_id == user_id]

    # Referrals

    def list_referrals(self, referrer_id: str) -> List[ReferralRecord]:
        with self._lock:
            referrals = [copy.deepcopy(r) for r in self._referrals.values() if r.referrer_id == referrer_id]
        return sorted(referrals, key=lambda r: r.created_at, reverse=True)

    def get_pending_referral(self, referee_id: str) -> Optional[ReferralRecord]:
        with self._lock:
            for referral in self._referrals.values():
                if referral.referee_id == referee_id and referral.status == "pending":
                    return copy.deepcopy(referral)
        return None

    def complete_referral(self, referral_id: str, commission_amount: float,
                          order_amount: float, order_id: str) -> Optional[ReferralRecord]:
        with self._lock:
            referral = self._referrals.get(referral_id)
            if not referral or referral.status != "pending":
                return None
            referral.status = "completed"
            referral.commission_amount = commission_amount
            referral.order_amount = order_amount
            referral.order_id = order_id
            referral.paid_at = datetime.utcnow()

            referrer = self._users.get(referral.referrer_id)
            if referrer:
                referrer.balance = round(referrer.balance + commission_amount, 2)
                referrer.affiliate_stats["successful_referrals"] += 1
                referrer.affiliate_stats["total_earnings"] = round(
                    referrer.affiliate_stats["total_earnings"] + commission_amount, 2
                )
            return copy.deepcopy(referral)

    # Tickets

    def _next_ticket_number(self) -> str:
        return f"#{1000 + len(self._tickets) + 1}"

    def create_ticket(self, ticket: TicketRecord) -> TicketRecord:
        with self._lock:
            ticket = copy.deepcopy(ticket)
            ticket.ticket_number = self._next_ticket_number()
            self._tickets[ticket.id] = ticket
        logger.info(f"Ticket {ticket.ticket_number} opened for user {ticket.user_id}", extra={"user_id": ticket.user_id})
        return copy.deepcopy(ticket)

    def get_ticket(self, ticket_id: str) -> Optional[TicketRecord]:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            return copy.deepcopy(ticket) if ticket else None

    def list_tickets(self, user_id: Optional[str] = None, status: Optional[str] = None) -> List[TicketRecord]:
        with self._lock:
            tickets = [
                copy.deepcopy(t)
                for t in self._tickets.values()
                if (user_id is None or t.user_id == user_id) and (status is None or t.status == status)
            ]
        return sorted(tickets, key=lambda t: t.updated_at, reverse=True)

    def add_ticket_message(self, ticket_id: str, message: TicketMessage, status: str) -> Optional[TicketRecord]:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            if not ticket:
                return None
            ticket.messages.append(copy.deepcopy(message))
            ticket.status = status
            ticket.updated_at = datetime.utcnow()
            return copy.deepcopy(ticket)

    def update_ticket(self, ticket_id: str, **updates) -> Optional[TicketRecord]:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            if not ticket:
                return None
            for key, value in updates.items():
                setattr(ticket, key, value)
            ticket.updated_at = datetime.utcnow()
            return copy.deepcopy(ticket)
