"""
StableVPS Provisioning Poller
=============================

Waits for a freshly ordered instance to come up.

Fixed-interval polling without backoff: every attempt calls the
provider's `get_instance`.
- None (provider did not answer or does not know the ID yet) -> retry
- active with an IPv4 address -> done, return the details
- error / failed -> stop immediately, return None
- anything else -> retry
After `max_attempts` attempts the poll gives up and returns None. The
instance may still converge later; the durable cursor in poll_store
picks that up.
"""

import logging
import time
from enum import Enum
from typing import Callable, Optional, Tuple

from .providers.base import InstanceDetails, InstanceStatus, VPSProviderInterface

logger = logging.getLogger(__name__)


class PollOutcome(Enum):
    ACTIVE = "active"
    FAILED = "failed"
    PENDING = "pending"
    SKIPPED = "skipped"  # mock or legacy ID, nothing to wait for


class ProvisioningPoller:
    """Fixed-interval status poller for one provider."""

    def __init__(
        self,
        provider: VPSProviderInterface,
        interval_seconds: float = 15.0,
        max_attempts: int = 60,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self._sleep = sleep

    def check(self, instance_id: str) -> Tuple[PollOutcome, Optional[InstanceDetails]]:
        """One poll attempt."""
        details = self.provider.get_instance(instance_id)

        if details is None:
            return PollOutcome.PENDING, None
        if details.is_ready:
            return PollOutcome.ACTIVE, details
        if details.status.is_failure:
            return PollOutcome.FAILED, details
        if details.status in (InstanceStatus.LEGACY, InstanceStatus.MOCK):
            return PollOutcome.SKIPPED, details
        return PollOutcome.PENDING, details

    def poll_until_active(self, instance_id: str) -> Optional[InstanceDetails]:
        """
        Block until the instance is active with an IPv4 address.

        Returns:
            InstanceDetails when ready; None on failure status or timeout
        """
        logger.info(
            f"Starting polling for {instance_id} "
            f"(max {self.max_attempts} attempts, {self.interval_seconds}s interval)",
            extra={"instance_id": instance_id},
        )

        for attempt in range(1, self.max_attempts + 1):
            outcome, details = self.check(instance_id)

            if details is None:
                logger.info(f"Attempt {attempt}: instance {instance_id} not found, waiting")
            else:
                logger.info(f"Attempt {attempt}: status = {details.status.value}")

            if outcome == PollOutcome.ACTIVE:
                logger.info(f"VPS {instance_id} is now active", extra={"instance_id": instance_id})
                return details

            if outcome == PollOutcome.FAILED:
                logger.error(f"VPS {instance_id} failed to provision", extra={"instance_id": instance_id})
                return None

            if attempt < self.max_attempts:
                self._sleep(self.interval_seconds)

        logger.warning(f"Polling timeout for {instance_id}", extra={"instance_id": instance_id})
        return None
