"""
StableVPS Cloudzy Provider Adapter
==================================

Cloudzy integration using direct REST API calls via httpx.

Cloudzy offers Forex-oriented Windows VPS with MetaTrader 5
preinstalled as a marketplace app.

API Docs: https://cloudzy.com/developers/
"""

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from .base import (
    VPSProviderInterface,
    ControlAction,
    CreateResult,
    InstanceDetails,
    InstanceStatus,
    ConfigurationError,
    DEFAULT_ADMIN_USERNAME,
)
from .registry import register_provider

logger = logging.getLogger(__name__)


CLOUDZY_STATUS_MAP = {
    "active": InstanceStatus.ACTIVE,
    "running": InstanceStatus.ACTIVE,
    "pending": InstanceStatus.PROVISIONING,
    "provisioning": InstanceStatus.PROVISIONING,
    "creating": InstanceStatus.PROVISIONING,
    "stopped": InstanceStatus.SUSPENDED,
    "suspended": InstanceStatus.SUSPENDED,
    "error": InstanceStatus.ERROR,
    "failed": InstanceStatus.FAILED,
}

# Windows Server 2022 image and the MetaTrader 5 marketplace app
WINDOWS_OS_ID = "5804e78eb6225097297da141deb78b3910fc1e3556c8fc3f85d634907bf7416d"
MT5_APP_ID = "cbfe4063d84e0e56f21d938e9605e095cba44b98d44f7e24998ffd9af777c155"


@register_provider
class CloudzyProvider(VPSProviderInterface):
    """Cloudzy provider adapter (Windows + MT5 images)."""

    PROVIDER_ID = "cloudzy"
    PROVIDER_NAME = "Cloudzy"
    PROVIDER_WEBSITE = "https://cloudzy.com"
    API_BASE_URL = "https://api.cloudzy.com/developers/v1"

    PLAN_MAPPING = {
        "basic": "bc1f70fe-558d-472d-b981-8cc29e995de1",
        "prime": "fe8bbbbe-3bd8-4fcb-9fb9-19f5ab96a6a8",
        "pro": "1f1cd048-6714-4aa2-82ac-a575fa24fec0",
    }

    REGION_MAPPING = {
        "london": "UK-London",
        "frankfurt": "DE-Frankfurt",
        "newyork": "US-NewYork",
        "singapore": "SG-Singapore",
    }
    DEFAULT_REGION = "london"

    # Contabo instance IDs are plain integers
    LEGACY_ID_KINDS = ("numeric",)
    LEGACY_LABEL = "Legacy Contabo VPS"

    def __init__(self, api_token: Optional[str] = None, client: Optional[httpx.Client] = None):
        """
        Initialize Cloudzy provider.

        Args:
            api_token: Cloudzy developer API token
        """
        super().__init__(client=client)
        self.api_token = api_token

    @classmethod
    def from_config(cls, config, **kwargs) -> "CloudzyProvider":
        return cls(api_token=config.credentials.cloudzy_api_token, **kwargs)

    def _check_credentials(self) -> None:
        if not self.api_token:
            raise ConfigurationError(
                self.PROVIDER_ID,
                "Missing CLOUDZY_API_TOKEN environment variable",
            )

    def _auth_headers(self) -> Dict[str, str]:
        return {"API-Token": self.api_token or ""}

    def _submit_order(self, product: str, hostname: str, region: str) -> CreateResult:
        payload = {
            "hostnames": [hostname],
            "region": region,
            "productId": product,
            "osId": WINDOWS_OS_ID,
            "appId": MT5_APP_ID,
            "billingCycle": "monthly",
            "assignIpv4": True,
            "assignIpv6": False,
        }
        response = self._request("POST", "/instances", json=payload)
        data = response.get("data") or {}

        instances = data.get("instances") or []
        instance_id = (instances[0].get("id") if instances else None) or data.get("id") or response.get("id")

        if not instance_id:
            order_id = data.get("orderId") or response.get("orderId")
            logger.warning("No instance ID in Cloudzy response, tracking by order ID")
            return CreateResult(
                instance_id=str(order_id) if order_id else f"pending-{int(time.time() * 1000)}",
                status=InstanceStatus.PROVISIONING,
                order_id=str(order_id) if order_id else None,
            )

        return CreateResult(instance_id=str(instance_id), status=InstanceStatus.PROVISIONING)

    def _fetch_instance(self, instance_id: str) -> Optional[InstanceDetails]:
        response = self._request("GET", f"/instances/{instance_id}")
        instance = (response.get("data") or {}).get("instance")

        if not instance:
            logger.warning(f"No Cloudzy instance data found for {instance_id}")
            return None

        raw_status = str(instance.get("status") or "unknown").lower()
        return InstanceDetails(
            instance_id=str(instance.get("id") or instance_id),
            status=CLOUDZY_STATUS_MAP.get(raw_status, InstanceStatus.UNKNOWN),
            ipv4=instance.get("ipv4") or "",
            hostname=instance.get("hostname") or "",
            username=instance.get("username") or DEFAULT_ADMIN_USERNAME,
            password=instance.get("password"),
        )

    def _perform_action(self, instance_id: str, action: ControlAction, **params) -> None:
        if action == ControlAction.DELETE:
            self._request("DELETE", f"/instances/{instance_id}")
        else:
            self._request("POST", f"/instances/{instance_id}/{action.value}")

    def _list_instances(self) -> List[Dict[str, Any]]:
        return (self._request("GET", "/instances").get("data") or {}).get("instances") or []
