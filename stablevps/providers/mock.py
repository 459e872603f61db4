"""
StableVPS Mock Provider
=======================

In-process provider used for local development and demos
(`USE_ZOMRO_MOCK=true`). No network calls are made: instances are
"created" instantly and report active with a synthetic IPv4 address
once `ready_after_seconds` have passed.
"""

import hashlib
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .base import (
    VPSProviderInterface,
    ControlAction,
    CreateResult,
    InstanceDetails,
    InstanceStatus,
    DEFAULT_ADMIN_USERNAME,
    generate_password,
)
from .registry import register_provider

logger = logging.getLogger(__name__)


def synthetic_ipv4(instance_id: str) -> str:
    """Stable fake address in 185.0.0.0/8 derived from the instance ID."""
    digest = hashlib.sha256(instance_id.encode()).digest()
    return f"185.{digest[0]}.{digest[1]}.{digest[2] or 1}"


@register_provider
class MockProvider(VPSProviderInterface):
    """Provider double that simulates provisioning."""

    PROVIDER_ID = "mock"
    PROVIDER_NAME = "Mock"

    PLAN_MAPPING = {"basic": "mock-basic", "prime": "mock-prime", "pro": "mock-pro"}
    REGION_MAPPING = {"default": "mock"}
    DEFAULT_REGION = "default"

    SUPPORTED_ACTIONS = tuple(ControlAction)

    def __init__(
        self,
        target: str = "zomro",
        ready_after_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
        **kwargs,
    ):
        """
        Args:
            target: Provider being imitated, embedded in the instance IDs
            ready_after_seconds: Delay before a created instance turns active
        """
        super().__init__(**kwargs)
        self.target = target
        self.ready_after_seconds = ready_after_seconds
        self._clock = clock
        self.actions: List[Dict[str, Any]] = []

    @classmethod
    def from_config(cls, config, **kwargs) -> "MockProvider":
        return cls(target=config.vps_provider, **kwargs)

    def _check_credentials(self) -> None:
        pass

    def _submit_order(self, product: str, hostname: str, region: str) -> CreateResult:
        instance_id = f"mock-{self.target}-{int(self._clock() * 1000)}"
        logger.info(f"[MOCK] Created {product} instance {instance_id} ({hostname})")
        return CreateResult(
            instance_id=instance_id,
            status=InstanceStatus.PROVISIONING,
            password=generate_password(),
        )

    def get_instance(self, instance_id: str) -> Optional[InstanceDetails]:
        if not instance_id.startswith(f"mock-{self.target}-"):
            return super().get_instance(instance_id)

        try:
            created_ms = int(instance_id.rsplit("-", 1)[-1])
        except ValueError:
            created_ms = 0

        ready = self._clock() * 1000 - created_ms >= self.ready_after_seconds * 1000
        return InstanceDetails(
            instance_id=instance_id,
            status=InstanceStatus.ACTIVE if ready else InstanceStatus.PROVISIONING,
            ipv4=synthetic_ipv4(instance_id) if ready else "",
            hostname=f"Mock {self.target} VPS",
            username=DEFAULT_ADMIN_USERNAME,
        )

    def _fetch_instance(self, instance_id: str) -> Optional[InstanceDetails]:
        # Only IDs minted above exist here
        return None

    def _perform_action(self, instance_id: str, action: ControlAction, **params) -> None:
        logger.info(f"[MOCK] {action.value} {instance_id}")
        self.actions.append({"instance_id": instance_id, "action": action.value})

    def _list_instances(self) -> List[Dict[str, Any]]:
        return []
