"""
StableVPS Support Desk
======================

Customer support tickets.

    open -> answered (staff reply) -> customer_reply (customer reply) -> ... -> closed

Customers see and reply to their own tickets only. Closed tickets take
no further replies. Cancellation requests are opened as high-priority
billing tickets, at most one open request per service.
"""

import logging
from typing import Any, Dict, List, Optional

from .orders import InvalidOrderError, OrderError, UserNotFoundError
from .plans import BillingCycle, get_plan
from .services import ServiceNotFoundError
from .store import DocumentStore, TicketMessage, TicketRecord

logger = logging.getLogger(__name__)


DEPARTMENTS = ("technical", "billing", "sales", "general")
PRIORITIES = ("low", "medium", "high", "urgent")
STATUSES = ("open", "answered", "customer_reply", "closed")

SUBJECT_MAX_LENGTH = 200
CANCELLATION_SUBJECT = "Cancellation request"


class TicketNotFoundError(OrderError):
    status_code = 404

    def __init__(self, ticket_id: str):
        super().__init__("Ticket not found", {"ticket_id": ticket_id})


def status_counts(tickets: List[TicketRecord]) -> Dict[str, int]:
    counts = {status: 0 for status in STATUSES}
    for ticket in tickets:
        if ticket.status in counts:
            counts[ticket.status] += 1
    return counts


class SupportDesk:
    def __init__(self, store: DocumentStore):
        self.store = store

    def _owned_ticket(self, user_id: str, ticket_id: str) -> TicketRecord:
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None or ticket.user_id != user_id:
            raise TicketNotFoundError(ticket_id)
        return ticket

    def _any_ticket(self, ticket_id: str) -> TicketRecord:
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    # =========================================
    # CUSTOMER
    # =========================================

    def create_ticket(
        self,
        user_id: str,
        subject: str,
        message: str,
        department: Optional[str] = None,
        priority: Optional[str] = None,
        related_service: Optional[str] = None,
    ) -> TicketRecord:
        """
        Raises:
            InvalidOrderError: Missing subject or message, unknown department or priority
            UserNotFoundError: Unknown user
        """
        if not subject or not message:
            raise InvalidOrderError("Subject and message are required")
        department = department or "technical"
        priority = priority or "medium"
        if department not in DEPARTMENTS:
            raise InvalidOrderError("Invalid department")
        if priority not in PRIORITIES:
            raise InvalidOrderError("Invalid priority")
        if self.store.get_user(user_id) is None:
            raise UserNotFoundError(user_id)

        return self.store.create_ticket(TicketRecord(
            user_id=user_id,
            subject=subject[:SUBJECT_MAX_LENGTH],
            department=department,
            priority=priority,
            related_service=related_service,
            messages=[TicketMessage(sender="user", content=message)],
        ))

    def list_tickets(self, user_id: str, status: Optional[str] = None) -> Dict[str, Any]:
        all_tickets = self.store.list_tickets(user_id=user_id)
        if status and status != "all":
            tickets = [t for t in all_tickets if t.status == status]
        else:
            tickets = all_tickets
        return {"tickets": tickets, "counts": status_counts(all_tickets)}

    def get_ticket(self, user_id: str, ticket_id: str) -> TicketRecord:
        return self._owned_ticket(user_id, ticket_id)

    def reply(self, user_id: str, ticket_id: str, message: str) -> TicketRecord:
        """
        Raises:
            InvalidOrderError: Empty message or closed ticket
            TicketNotFoundError: Not the user's ticket
        """
        if not message:
            raise InvalidOrderError("Message is required")
        ticket = self._owned_ticket(user_id, ticket_id)
        if ticket.status == "closed":
            raise InvalidOrderError("Cannot reply to a closed ticket")
        return self.store.add_ticket_message(ticket.id, TicketMessage(sender="user", content=message), "customer_reply")

    def close(self, user_id: str, ticket_id: str) -> TicketRecord:
        ticket = self._owned_ticket(user_id, ticket_id)
        return self.store.update_ticket(ticket.id, status="closed")

    def request_cancellation(self, user_id: str, service_id: str) -> Dict[str, Any]:
        """
        Open a cancellation ticket for one of the user's services.

        Returns the existing ticket when a request for the service is
        still open.

        Raises:
            InvalidOrderError: No service ID
            UserNotFoundError, ServiceNotFoundError: Unknown user or service
        """
        if not service_id:
            raise InvalidOrderError("Service ID is required")
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        service = self.store.get_service(user_id, service_id)
        if service is None:
            raise ServiceNotFoundError(service_id)

        for ticket in self.store.list_tickets(user_id=user_id):
            if (ticket.status != "closed"
                    and ticket.related_service == service_id
                    and ticket.subject.startswith(CANCELLATION_SUBJECT)):
                return {"ticket": ticket, "created": False}

        plan = get_plan(service.plan_id)
        plan_name = plan.name if plan else service.plan_id
        price = plan.price(BillingCycle(service.billing_cycle)) if plan else None
        period_end = service.current_period_end.strftime("%Y-%m-%d") if service.current_period_end else "end of period"

        body = "\n".join([
            "The customer asks to cancel the following VPS service.",
            "",
            f"Plan: {plan_name} ({service.plan_id})",
            f"Price: {price} ({service.billing_cycle})",
            f"Location: {service.location}",
            f"IP address: {service.ip_address or 'Pending'}",
            f"Created: {service.created_at.strftime('%Y-%m-%d')}",
            f"Period end: {period_end}",
            "",
            f"Service ID: {service.id}",
            f"Stripe subscription: {service.stripe_subscription_id or 'N/A'}",
            f"Provider: {service.provider or 'N/A'} / server {service.server_id or 'N/A'}",
            "",
            f"Stop renewal and schedule the server shutdown for {period_end}.",
        ])

        ticket = self.store.create_ticket(TicketRecord(
            user_id=user_id,
            subject=f"{CANCELLATION_SUBJECT} - {plan_name} - {service.ip_address or 'Pending'}",
            department="billing",
            priority="high",
            related_service=service_id,
            messages=[TicketMessage(sender="user", content=body)],
        ))
        logger.info(
            f"Cancellation requested for service {service_id}",
            extra={"user_id": user_id, "service_id": service_id},
        )
        return {"ticket": ticket, "created": True}

    # =========================================
    # STAFF
    # =========================================

    def admin_list(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        all_tickets = self.store.list_tickets()
        if status and status != "all":
            matching = [t for t in all_tickets if t.status == status]
        else:
            matching = all_tickets

        page = max(page, 1)
        start = (page - 1) * limit
        return {
            "tickets": matching[start:start + limit],
            "counts": status_counts(all_tickets),
            "pagination": {"page": page, "limit": limit, "total": len(matching)},
        }

    def admin_get(self, ticket_id: str) -> TicketRecord:
        return self._any_ticket(ticket_id)

    def admin_reply(self, ticket_id: str, message: str) -> TicketRecord:
        if not message:
            raise InvalidOrderError("Message is required")
        ticket = self._any_ticket(ticket_id)
        return self.store.add_ticket_message(ticket.id, TicketMessage(sender="admin", content=message), "answered")

    def admin_set_status(self, ticket_id: str, status: str) -> TicketRecord:
        if status not in STATUSES:
            raise InvalidOrderError("Invalid status")
        ticket = self._any_ticket(ticket_id)
        return self.store.update_ticket(ticket.id, status=status)
