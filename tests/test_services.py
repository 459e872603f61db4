"""
Tests for the Service Manager
=============================
"""

from unittest.mock import MagicMock

import pytest

from stablevps.orders import UserNotFoundError
from stablevps.providers.base import InstanceDetails, InstanceStatus
from stablevps.services import ServiceManager, ServiceNotFoundError
from stablevps.store import ServiceRecord


MOCK_SERVER_ID = "mock-zomro-1700000000000"


@pytest.fixture
def service(store, user):
    return store.add_service(user.id, ServiceRecord(
        plan_id="basic",
        billing_cycle="monthly",
        location="london",
        vps_status="active",
        server_id=MOCK_SERVER_ID,
        provider="mock",
        rdp_password="Ord3r!pw",
        stripe_subscription_id="sub_test_123",
    ))


@pytest.fixture
def manager(store, mock_provider, mock_billing):
    return ServiceManager(store, mock_provider, billing=mock_billing)


class TestControl:
    """Test customer control actions."""

    def test_reboot(self, manager, mock_provider, user, service):
        assert manager.control(user.id, service.id, "reboot") is True
        assert mock_provider.actions == [{"instance_id": MOCK_SERVER_ID, "action": "reboot"}]

    def test_change_password_with_value(self, manager, store, user, service):
        assert manager.control(user.id, service.id, "change_password", "N3w!Secret") is True
        assert store.get_service(user.id, service.id).rdp_password == "N3w!Secret"

    def test_change_password_generated(self, manager, store, user, service):
        assert manager.control(user.id, service.id, "change_password") is True
        password = store.get_service(user.id, service.id).rdp_password
        assert password != "Ord3r!pw"
        assert len(password) == 16

    def test_delete_terminates(self, manager, store, user, service):
        assert manager.control(user.id, service.id, "delete") is True
        assert store.get_service(user.id, service.id).vps_status == "terminated"

    def test_refused_action_changes_nothing(self, store, failing_provider, user, service):
        manager = ServiceManager(store, failing_provider)
        assert manager.control(user.id, service.id, "change_password", "N3w!Secret") is False
        assert store.get_service(user.id, service.id).rdp_password == "Ord3r!pw"

    def test_service_without_server(self, manager, store, user):
        service = store.add_service(user.id, ServiceRecord(plan_id="basic", billing_cycle="monthly", location="london"))
        assert manager.control(user.id, service.id, "reboot") is False

    def test_other_users_service(self, manager, store, service):
        other = store.create_user("other@example.com")
        with pytest.raises(ServiceNotFoundError):
            manager.control(other.id, service.id, "reboot")

    def test_unknown_user(self, manager, service):
        with pytest.raises(UserNotFoundError):
            manager.control("nobody", service.id, "reboot")


class TestRefresh:
    """Test on-demand reconciliation."""

    def test_provisioning_service_becomes_active(self, store, user):
        service = store.add_service(user.id, ServiceRecord(
            plan_id="basic", billing_cycle="monthly", location="london", server_id="777",
        ))
        provider = MagicMock()
        provider.get_instance = MagicMock(return_value=InstanceDetails("777", InstanceStatus.ACTIVE, ipv4="5.6.7.8"))

        refreshed = ServiceManager(store, provider).refresh(user.id)

        assert refreshed.services[0].vps_status == "active"
        assert refreshed.services[0].ip_address == "5.6.7.8"
        provider.get_instance.assert_called_once_with("777")

    def test_only_provisioning_services_are_checked(self, store, user, service):
        provider = MagicMock()
        ServiceManager(store, provider).refresh(user.id)
        provider.get_instance.assert_not_called()

    def test_failed_instance(self, store, user):
        service = store.add_service(user.id, ServiceRecord(
            plan_id="basic", billing_cycle="monthly", location="london", server_id="777",
        ))
        provider = MagicMock()
        provider.get_instance = MagicMock(return_value=InstanceDetails("777", InstanceStatus.ERROR))

        ServiceManager(store, provider).refresh(user.id)

        assert store.get_service(user.id, service.id).vps_status == "failed"

    def test_still_provisioning(self, store, user):
        store.add_service(user.id, ServiceRecord(
            plan_id="basic", billing_cycle="monthly", location="london", server_id="777",
        ))
        provider = MagicMock()
        provider.get_instance = MagicMock(return_value=None)

        refreshed = ServiceManager(store, provider).refresh(user.id)
        assert refreshed.services[0].vps_status == "provisioning"

    def test_unknown_user(self, manager):
        with pytest.raises(UserNotFoundError):
            manager.refresh("nobody")


class TestCancel:
    """Test admin cancellation."""

    def test_cancel(self, manager, store, mock_billing, mock_provider, user, service):
        results = manager.cancel(user.id, service.id, reason="chargeback")

        assert results == {"stripe_cancel": True, "provider_delete": True, "database_update": True}
        mock_billing.cancel_subscription.assert_called_once_with("sub_test_123")
        assert mock_provider.actions[-1]["action"] == "delete"
        updated = store.get_service(user.id, service.id)
        assert updated.status == "canceled"
        assert updated.vps_status == "terminated"

    def test_cancel_is_best_effort(self, store, mock_billing, failing_provider, user, service):
        mock_billing.cancel_subscription.return_value = False
        manager = ServiceManager(store, failing_provider, billing=mock_billing)

        results = manager.cancel(user.id, service.id)

        assert results == {"stripe_cancel": False, "provider_delete": False, "database_update": True}
        assert store.get_service(user.id, service.id).status == "canceled"

    def test_list_services(self, manager, user, service):
        assert [s.id for s in manager.list_services(user.id)] == [service.id]
