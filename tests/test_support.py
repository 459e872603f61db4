"""
Tests for the Support Desk
==========================
"""

import pytest

from stablevps.orders import InvalidOrderError, UserNotFoundError
from stablevps.services import ServiceNotFoundError
from stablevps.store import ServiceRecord
from stablevps.support import CANCELLATION_SUBJECT, SupportDesk, TicketNotFoundError


@pytest.fixture
def desk(store):
    return SupportDesk(store)


@pytest.fixture
def service(store, user):
    return store.add_service(user.id, ServiceRecord(
        plan_id="prime",
        billing_cycle="monthly",
        location="london",
        vps_status="active",
        server_id="777",
        provider="zomro",
        ip_address="5.6.7.8",
        stripe_subscription_id="sub_test_123",
    ))


class TestCustomerTickets:
    """Test the customer side of the desk."""

    def test_create(self, desk, user):
        ticket = desk.create_ticket(user.id, "No RDP access", "Connection refused since this morning")

        assert ticket.ticket_number == "#1001"
        assert ticket.status == "open"
        assert ticket.department == "technical"
        assert ticket.priority == "medium"
        assert ticket.messages[0].sender == "user"
        assert ticket.messages[0].content == "Connection refused since this morning"

    def test_subject_is_truncated(self, desk, user):
        ticket = desk.create_ticket(user.id, "x" * 300, "body")
        assert len(ticket.subject) == 200

    @pytest.mark.parametrize("kwargs,message", [
        ({"subject": "", "message": "body"}, "Subject and message are required"),
        ({"subject": "Help", "message": ""}, "Subject and message are required"),
        ({"subject": "Help", "message": "body", "department": "legal"}, "Invalid department"),
        ({"subject": "Help", "message": "body", "priority": "whenever"}, "Invalid priority"),
    ])
    def test_invalid(self, desk, user, kwargs, message):
        with pytest.raises(InvalidOrderError, match=message):
            desk.create_ticket(user.id, **kwargs)

    def test_unknown_user(self, desk):
        with pytest.raises(UserNotFoundError):
            desk.create_ticket("nobody", "Help", "body")

    def test_list_with_counts(self, desk, user):
        first = desk.create_ticket(user.id, "First", "body")
        desk.create_ticket(user.id, "Second", "body")
        desk.close(user.id, first.id)

        result = desk.list_tickets(user.id, status="closed")

        assert [t.id for t in result["tickets"]] == [first.id]
        assert result["counts"] == {"open": 1, "answered": 0, "customer_reply": 0, "closed": 1}
        assert len(desk.list_tickets(user.id, status="all")["tickets"]) == 2

    def test_other_users_ticket_is_hidden(self, desk, store, user):
        ticket = desk.create_ticket(user.id, "Help", "body")
        other = store.create_user("other@example.com")

        with pytest.raises(TicketNotFoundError) as exc:
            desk.get_ticket(other.id, ticket.id)
        assert exc.value.status_code == 404
        assert desk.list_tickets(other.id)["tickets"] == []

    def test_reply(self, desk, user):
        ticket = desk.create_ticket(user.id, "Help", "body")
        updated = desk.reply(user.id, ticket.id, "Any news?")
        assert updated.status == "customer_reply"
        assert len(updated.messages) == 2

    def test_no_reply_to_closed_ticket(self, desk, user):
        ticket = desk.create_ticket(user.id, "Help", "body")
        desk.close(user.id, ticket.id)

        with pytest.raises(InvalidOrderError, match="closed ticket"):
            desk.reply(user.id, ticket.id, "Reopen please")

    def test_empty_reply(self, desk, user):
        ticket = desk.create_ticket(user.id, "Help", "body")
        with pytest.raises(InvalidOrderError):
            desk.reply(user.id, ticket.id, "")


class TestCancellationRequest:
    """Test cancellation tickets."""

    def test_opens_billing_ticket(self, desk, user, service):
        result = desk.request_cancellation(user.id, service.id)

        ticket = result["ticket"]
        assert result["created"] is True
        assert ticket.subject == f"{CANCELLATION_SUBJECT} - Professional - 5.6.7.8"
        assert ticket.department == "billing"
        assert ticket.priority == "high"
        assert ticket.related_service == service.id
        body = ticket.messages[0].content
        assert "Price: 19.49 (monthly)" in body
        assert "Stripe subscription: sub_test_123" in body
        assert f"Service ID: {service.id}" in body

    def test_open_request_is_reused(self, desk, user, service):
        first = desk.request_cancellation(user.id, service.id)["ticket"]

        again = desk.request_cancellation(user.id, service.id)

        assert again["created"] is False
        assert again["ticket"].id == first.id
        assert len(desk.list_tickets(user.id)["tickets"]) == 1

    def test_closed_request_allows_a_new_one(self, desk, user, service):
        first = desk.request_cancellation(user.id, service.id)["ticket"]
        desk.close(user.id, first.id)

        assert desk.request_cancellation(user.id, service.id)["created"] is True

    def test_unknown_service(self, desk, user):
        with pytest.raises(ServiceNotFoundError):
            desk.request_cancellation(user.id, "missing")

    def test_service_required(self, desk, user):
        with pytest.raises(InvalidOrderError, match="Service ID is required"):
            desk.request_cancellation(user.id, "")


class TestStaff:
    """Test the staff side of the desk."""

    def test_reply_marks_answered(self, desk, user):
        ticket = desk.create_ticket(user.id, "Help", "body")

        updated = desk.admin_reply(ticket.id, "Rebooted your VPS")

        assert updated.status == "answered"
        assert updated.messages[-1].sender == "admin"

    def test_set_status(self, desk, user):
        ticket = desk.create_ticket(user.id, "Help", "body")
        assert desk.admin_set_status(ticket.id, "closed").status == "closed"

        with pytest.raises(InvalidOrderError, match="Invalid status"):
            desk.admin_set_status(ticket.id, "archived")

    def test_unknown_ticket(self, desk):
        with pytest.raises(TicketNotFoundError):
            desk.admin_get("missing")

    def test_list_is_paginated(self, desk, store, user):
        other = store.create_user("other@example.com")
        for i in range(3):
            desk.create_ticket(user.id, f"Ticket {i}", "body")
        desk.create_ticket(other.id, "Other", "body")

        result = desk.admin_list(page=2, limit=3)

        assert len(result["tickets"]) == 1
        assert result["pagination"] == {"page": 2, "limit": 3, "total": 4}
        assert result["counts"]["open"] == 4
