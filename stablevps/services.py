"""
StableVPS Service Manager
=========================

Customer and admin operations on existing services: instance control,
on-demand status reconciliation and cancellation.

Control calls are pass-throughs to the provider. The only rule added
here is ownership: a user can only act on services in their own
account.
"""

import logging
from typing import Any, Dict, List, Optional

from .orders import OrderError, UserNotFoundError
from .poller import PollOutcome, ProvisioningPoller
from .providers.base import ControlAction, VPSProviderInterface, generate_password
from .store import DocumentStore, ServiceRecord, UserRecord

logger = logging.getLogger(__name__)


class ServiceNotFoundError(OrderError):
    status_code = 404

    def __init__(self, service_id: str):
        super().__init__("Service not found", {"service_id": service_id})


class ServiceManager:
    def __init__(self, store: DocumentStore, provider: VPSProviderInterface, billing=None):
        self.store = store
        self.provider = provider
        self.billing = billing

    def _owned_service(self, user_id: str, service_id: str) -> ServiceRecord:
        if self.store.get_user(user_id) is None:
            raise UserNotFoundError(user_id)
        service = self.store.get_service(user_id, service_id)
        if service is None:
            raise ServiceNotFoundError(service_id)
        return service

    def control(self, user_id: str, service_id: str, action: str, new_password: Optional[str] = None) -> bool:
        """
        Run a control action on a user's VPS.

        Returns whether the provider accepted the request, not whether
        the action has finished.

        Raises:
            UserNotFoundError, ServiceNotFoundError: Ownership check failed
        """
        service = self._owned_service(user_id, service_id)
        if not service.server_id:
            logger.warning(f"Service {service_id} has no server to {action}")
            return False

        params = {}
        if action == ControlAction.CHANGE_PASSWORD.value:
            params["password"] = new_password or generate_password()

        accepted = self.provider.control_instance(service.server_id, action, **params)
        if not accepted:
            return False

        if action == ControlAction.CHANGE_PASSWORD.value:
            self.store.update_service(user_id, service_id, rdp_password=params["password"])
        elif action == ControlAction.DELETE.value:
            self.store.update_service(user_id, service_id, vps_status="terminated")

        logger.info(
            f"{action} accepted for service {service_id}",
            extra={"user_id": user_id, "service_id": service_id, "instance_id": service.server_id},
        )
        return True

    def refresh(self, user_id: str) -> UserRecord:
        """
        Reconcile services still marked provisioning with the provider.

        One status check per service; anything not ready yet is left for
        the poll runner.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        poller = ProvisioningPoller(self.provider)
        changed = False
        for service in user.services:
            if service.vps_status != "provisioning" or not service.server_id:
                continue

            outcome, details = poller.check(service.server_id)
            if outcome == PollOutcome.ACTIVE:
                self.store.apply_instance_details(user_id, service.id, details)
                changed = True
            elif outcome == PollOutcome.FAILED:
                self.store.update_service(user_id, service.id, vps_status="failed")
                changed = True

        return self.store.get_user(user_id) if changed else user

    def list_services(self, user_id: str) -> List[ServiceRecord]:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user.services

    def cancel(self, user_id: str, service_id: str, reason: str = "") -> Dict[str, Any]:
        """
        Admin cancellation: stop billing, delete the VPS, close the record.

        Each step is best effort; the record is updated even when the
        provider or Stripe refuse, since the instance may already be gone.
        """
        service = self._owned_service(user_id, service_id)
        results = {"stripe_cancel": False, "provider_delete": False, "database_update": False}

        logger.info(
            f"Admin cancellation for user {user_id}, service {service_id}" + (f" ({reason})" if reason else ""),
            extra={"user_id": user_id, "service_id": service_id},
        )

        if service.stripe_subscription_id and self.billing is not None:
            results["stripe_cancel"] = self.billing.cancel_subscription(service.stripe_subscription_id)

        if service.server_id:
            results["provider_delete"] = self.provider.control_instance(service.server_id, ControlAction.DELETE)

        updated = self.store.update_service(user_id, service_id, status="canceled", vps_status="terminated")
        results["database_update"] = updated is not None
        return results
