"""
StableVPS Aeza Provider Adapter
===============================

Aeza integration using direct REST API calls via httpx.

Aeza sells AMD Ryzen VPS with Windows Server included. Orders are
asynchronous: the order is accepted first and the service is created a
few seconds later, so creation polls the order briefly for the new
service ID.

API Docs: https://github.com/AezaGroup/dev-docs
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from .base import (
    VPSProviderInterface,
    ControlAction,
    CreateResult,
    InstanceDetails,
    InstanceStatus,
    ConfigurationError,
    MappingError,
    ProviderError,
    DEFAULT_ADMIN_USERNAME,
    generate_password,
)
from .registry import register_provider

logger = logging.getLogger(__name__)


AEZA_STATUS_MAP = {
    "active": InstanceStatus.ACTIVE,
    "activation_wait": InstanceStatus.PROVISIONING,
    "creating": InstanceStatus.PROVISIONING,
    "installing": InstanceStatus.PROVISIONING,
    "provisioning": InstanceStatus.PROVISIONING,
    "suspended": InstanceStatus.SUSPENDED,
    "error": InstanceStatus.ERROR,
    "failed": InstanceStatus.FAILED,
}

# Internal control actions -> Aeza `ctl` verbs
AEZA_CTL_ACTIONS = {
    ControlAction.REBOOT: "reboot",
    ControlAction.STOP: "suspend",
    ControlAction.START: "resume",
}


@register_provider
class AezaProvider(VPSProviderInterface):
    """
    Aeza provider adapter.

    Features:
    - Windows Server 2022 image discovered from the OS catalog
    - Product IDs re-matchable against the live catalog by specs
    - Reinstall and password change
    """

    PROVIDER_ID = "aeza"
    PROVIDER_NAME = "Aeza"
    PROVIDER_WEBSITE = "https://aeza.net"
    API_BASE_URL = "https://my.aeza.net/api"

    PLAN_MAPPING = {
        "basic": {"product_id": 1, "name": "Ruthenium", "cpu": 2, "ram": 4, "disk": 60, "price_usd": 8},
        "prime": {"product_id": 2, "name": "Palladium", "cpu": 4, "ram": 8, "disk": 90, "price_usd": 14},
        "pro": {"product_id": 3, "name": "Aurum", "cpu": 8, "ram": 12, "disk": 150, "price_usd": 27},
    }

    REGION_MAPPING = {
        "london": "london",
        "frankfurt": "frankfurt",
        "vienna": "vienna",
        "amsterdam": "amsterdam",
        "newyork": "newyork",
        "moscow": "moscow",
    }
    DEFAULT_REGION = "frankfurt"

    LEGACY_ID_KINDS = ("uuid",)
    LEGACY_LABEL = "Legacy Cloudzy VPS"

    SUPPORTED_ACTIONS = (
        ControlAction.REBOOT,
        ControlAction.STOP,
        ControlAction.START,
        ControlAction.DELETE,
        ControlAction.CHANGE_PASSWORD,
        ControlAction.REINSTALL,
    )

    def __init__(
        self,
        api_token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        order_poll_attempts: int = 10,
        order_poll_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize Aeza provider.

        Args:
            api_token: Aeza API key (https://my.aeza.net/settings/apikeys)
            client: Optional preconfigured httpx client
            order_poll_attempts: How often to check an order for its service ID
            order_poll_interval: Seconds between those checks
        """
        super().__init__(client=client)
        self.api_token = api_token
        self.order_poll_attempts = order_poll_attempts
        self.order_poll_interval = order_poll_interval
        self._sleep = sleep
        self._windows_os_id: Optional[int] = None

    @classmethod
    def from_config(cls, config, **kwargs) -> "AezaProvider":
        return cls(api_token=config.credentials.aeza_api_token, **kwargs)

    def _check_credentials(self) -> None:
        if not self.api_token:
            raise ConfigurationError(
                self.PROVIDER_ID,
                "Missing AEZA_API_TOKEN environment variable",
            )

    def _auth_headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.api_token or ""}

    # =========================================
    # CATALOG
    # =========================================

    def get_windows_os_id(self) -> int:
        """Find the Windows Server image, preferring 2022. Cached per adapter."""
        if self._windows_os_id is not None:
            return self._windows_os_id

        os_list = self._request("GET", "/os").get("items") or []

        windows = next(
            (
                os for os in os_list
                if "windows" in str(os.get("name", "")).lower() and "2022" in str(os.get("name", ""))
            ),
            None,
        )
        if windows is None:
            windows = next(
                (os for os in os_list if "windows server" in str(os.get("name", "")).lower()),
                None,
            )
        if windows is None:
            raise MappingError(self.PROVIDER_ID, "No Windows Server OS found in Aeza catalog")

        self._windows_os_id = windows["id"]
        logger.info(f"Found Aeza Windows OS ID: {self._windows_os_id} ({windows.get('name')})")
        return self._windows_os_id

    def sync_product_ids(self) -> Dict[str, int]:
        """
        Re-match plan product IDs against the live catalog by CPU/RAM.

        Returns:
            Dict of plan_id -> product ID for the plans that matched
        """
        try:
            products = self._request("GET", "/services/products", params={"extra": 1}).get("items") or []
        except ProviderError as e:
            logger.error(f"Failed to sync Aeza product IDs: {e}")
            return {}

        logger.info(f"Found {len(products)} Aeza products")
        matched = {}
        for product in products:
            specs = product.get("parameters") or {}
            cpu, ram = specs.get("cpu"), specs.get("ram") or 0

            if cpu == 2 and ram == 4:
                plan_id = "basic"
            elif cpu == 4 and ram == 8:
                plan_id = "prime"
            elif cpu == 8 and ram >= 12:
                plan_id = "pro"
            else:
                continue

            self.plan_mapping[plan_id]["product_id"] = product["id"]
            matched[plan_id] = product["id"]
            logger.info(f"Aeza {plan_id} plan matched: {product.get('name')} (ID: {product['id']})")

        return matched

    # =========================================
    # INSTANCE OPERATIONS
    # =========================================

    def _submit_order(self, product: Dict[str, Any], hostname: str, region: str) -> CreateResult:
        payload = {
            "productId": product["product_id"],
            "name": hostname,
            "location": region,
            "os": self.get_windows_os_id(),
            "autoPassword": True,
            "period": 1,
            "count": 1,
        }
        response = self._request("POST", "/services/orders", json=payload)

        order_id = (response.get("data") or {}).get("id") or response.get("id")
        if not order_id:
            raise ProviderError(self.PROVIDER_ID, "No order ID returned from Aeza", details=response)
        order_id = str(order_id)

        service_id = self._wait_for_service(order_id)
        return CreateResult(
            instance_id=service_id or f"order-{order_id}",
            status=InstanceStatus.PROVISIONING,
            order_id=order_id,
        )

    def _wait_for_service(self, order_id: str) -> Optional[str]:
        """Poll the order until Aeza reports the created service ID."""
        for attempt in range(1, self.order_poll_attempts + 1):
            self._sleep(self.order_poll_interval)
            try:
                order = self._request("GET", f"/services/orders/{order_id}")
            except ProviderError as e:
                # The order is already placed; keep waiting rather than lose it
                logger.warning(f"Aeza order {order_id} lookup failed: {e}")
                continue

            created = (order.get("data") or {}).get("createdServiceIds") or order.get("createdServiceIds")
            if created:
                logger.info(f"Aeza service created with ID: {created[0]}")
                return str(created[0])

            logger.debug(f"Waiting for Aeza service creation (attempt {attempt})")

        logger.warning(f"Aeza order {order_id} has no service yet, tracking by order ID")
        return None

    def _fetch_instance(self, instance_id: str) -> Optional[InstanceDetails]:
        response = self._request("GET", f"/services/{instance_id}", params={"extra": 1})
        service = response.get("data") or response

        if not service or not service.get("id"):
            logger.warning(f"No Aeza service data found for {instance_id}")
            return None

        secure = service.get("secureParameters") or {}
        payload = service.get("payload") or {}
        raw_status = str(service.get("currentStatus") or service.get("status") or "unknown").lower()

        return InstanceDetails(
            instance_id=str(service["id"]),
            status=AEZA_STATUS_MAP.get(raw_status, InstanceStatus.UNKNOWN),
            ipv4=secure.get("ip") or secure.get("ipv4") or payload.get("ip") or payload.get("ipv4") or "",
            hostname=service.get("name") or "",
            username=secure.get("username") or DEFAULT_ADMIN_USERNAME,
            password=secure.get("password"),
        )

    def _perform_action(self, instance_id: str, action: ControlAction, **params) -> None:
        if action in AEZA_CTL_ACTIONS:
            self._request("POST", f"/services/{instance_id}/ctl", json={"action": AEZA_CTL_ACTIONS[action]})
        elif action == ControlAction.DELETE:
            self._request("DELETE", f"/services/{instance_id}")
        elif action == ControlAction.CHANGE_PASSWORD:
            self._request(
                "PUT",
                f"/services/{instance_id}/changePassword",
                json={"password": params["password"]},
            )
        elif action == ControlAction.REINSTALL:
            self._request(
                "POST",
                f"/services/{instance_id}/reinstall",
                json={
                    "os": params.get("os_id") or self.get_windows_os_id(),
                    "password": params.get("password") or generate_password(),
                },
            )

    def _list_instances(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/services", params={"extra": 1}).get("items") or []
