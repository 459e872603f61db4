"""
StableVPS Zomro Provider Adapter
================================

Zomro integration over the BILLmanager-style form API.

Every call is a form-encoded POST to a single endpoint carrying `func`,
a session token in `auth`, and `out=json`. Cloud Forex plans ship
Windows with MetaTrader preinstalled. Orders go through a cart:
the service is added with `v2.instances.order` and then paid from the
account balance with `cartorder.create.confirm`.

API Docs: https://zomro.com/docs/api/
"""

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from .base import (
    VPSProviderInterface,
    ControlAction,
    CreateResult,
    InstanceDetails,
    InstanceStatus,
    ConfigurationError,
    MappingError,
    ProviderAuthError,
    ProviderRequestError,
    DEFAULT_ADMIN_USERNAME,
    generate_password,
)
from .credentials import AccessToken, TokenCache
from .registry import register_provider

logger = logging.getLogger(__name__)


# Session tokens live about an hour; refresh after 45 minutes
SESSION_LIFETIME_SECONDS = 60 * 60
SESSION_REFRESH_SKEW_SECONDS = 15 * 60

ZOMRO_STATUS_MAP = {
    "active": InstanceStatus.ACTIVE,
    "ok": InstanceStatus.ACTIVE,
    "suspended": InstanceStatus.SUSPENDED,
    "stopped": InstanceStatus.SUSPENDED,
    "pending": InstanceStatus.PROVISIONING,
    "creating": InstanceStatus.PROVISIONING,
}

ZOMRO_FUNCS = {
    ControlAction.REBOOT: "v2.instances.reboot",
    ControlAction.STOP: "v2.instances.stop",
    ControlAction.START: "v2.instances.start",
    ControlAction.DELETE: "v2.instances.delete",
    ControlAction.REINSTALL: "v2.instances.rebuild",
}


def plan_name_matches(plan_name: str, entry_name: str) -> bool:
    """Whole-word match, so "Cloud Forex 1" does not pick up "Cloud Forex 10"."""
    return re.search(rf"\b{re.escape(plan_name)}\b", entry_name, re.IGNORECASE) is not None


class ZomroAPIError(ProviderRequestError):
    """Zomro answered 200 with an error document."""
    def __init__(self, provider: str, message: str, code: Optional[str] = None, details: Optional[Dict] = None):
        self.code = code
        super().__init__(provider, message, details=details)


@register_provider
class ZomroProvider(VPSProviderInterface):
    """
    Zomro provider adapter.

    Pricelist IDs are not stable across Zomro accounts, so they are
    discovered from `v2.instances.order.pricelist` by plan name before
    the first order.
    """

    PROVIDER_ID = "zomro"
    PROVIDER_NAME = "Zomro"
    PROVIDER_WEBSITE = "https://zomro.com"
    API_BASE_URL = "https://api.zomro.com/"

    PLAN_MAPPING = {
        "basic": {"pricelist_id": 0, "name": "Cloud Forex 1", "cpu": 2, "ram": 1, "terminals": 2, "price_eur": 6.48},
        "prime": {"pricelist_id": 0, "name": "Cloud Forex 2", "cpu": 3, "ram": 2, "terminals": 3, "price_eur": 11.48},
        "pro": {"pricelist_id": 0, "name": "Cloud Forex 3", "cpu": 4, "ram": 3, "terminals": 4, "price_eur": 16.48},
    }

    REGION_MAPPING = {
        "london": "nl",
        "frankfurt": "nl",
        "amsterdam": "nl",
        "newyork": "us",
        "singapore": "sg",
        "poland": "pl",
    }
    DEFAULT_REGION = "amsterdam"

    LEGACY_ID_KINDS = ("uuid",)
    LEGACY_LABEL = "Legacy Cloudzy VPS"

    SUPPORTED_ACTIONS = tuple(ZOMRO_FUNCS)

    def __init__(
        self,
        user: Optional[str] = None,
        password: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        token_cache: Optional[TokenCache] = None,
    ):
        """
        Initialize Zomro provider.

        Args:
            user: Zomro account email/username
            password: Zomro account password
            token_cache: Cache for the session token (one per adapter by default)
        """
        super().__init__(client=client)
        self.user = user
        self.password = password
        self.token_cache = token_cache or TokenCache(skew_seconds=SESSION_REFRESH_SKEW_SECONDS)
        self._pricelist: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def from_config(cls, config, **kwargs) -> "ZomroProvider":
        creds = config.credentials
        return cls(user=creds.zomro_user, password=creds.zomro_password, **kwargs)

    def _check_credentials(self) -> None:
        if not self.user or not self.password:
            raise ConfigurationError(
                self.PROVIDER_ID,
                "Missing ZOMRO_USER or ZOMRO_PASSWORD environment variables",
            )

    # =========================================
    # TRANSPORT
    # =========================================

    def _post_form(self, form: Dict[str, Any]) -> Dict[str, Any]:
        data = self._request("POST", "", data={**form, "out": "json"})
        doc = data.get("doc") or {}
        error = doc.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            msg = error.get("msg") if isinstance(error, dict) else error
            raise ZomroAPIError(self.PROVIDER_ID, f"Zomro API error ({form.get('func')}): {msg}", code=code)
        return doc

    def _authenticate(self) -> AccessToken:
        logger.info("Authenticating with Zomro API")
        try:
            doc = self._post_form({"func": "auth", "authinfo": f"{self.user}:{self.password}"})
        except ZomroAPIError as e:
            raise ProviderAuthError(self.PROVIDER_ID, f"Zomro authentication failed: {e.message}")

        auth = doc.get("auth") or {}
        token = (auth.get("$id") or auth.get("$")) if isinstance(auth, dict) else None
        if not token:
            raise ProviderAuthError(self.PROVIDER_ID, "Failed to get Zomro session token")

        logger.info("Zomro session token acquired")
        return AccessToken.expiring_in(token, SESSION_LIFETIME_SECONDS)

    def _call(self, func: str, params: Optional[Dict[str, Any]] = None, retry: bool = True) -> Dict[str, Any]:
        """Authenticated API call. Re-authenticates once when the session expired."""
        token = self.token_cache.get(self._authenticate)
        try:
            return self._post_form({"func": func, "auth": token, **(params or {})})
        except ZomroAPIError as e:
            if e.code == "auth" and retry:
                logger.warning("Zomro session expired, re-authenticating")
                self.token_cache.invalidate()
                return self._call(func, params, retry=False)
            raise

    # =========================================
    # PRICELIST
    # =========================================

    def fetch_pricelist(self) -> List[Dict[str, Any]]:
        """Load Cloud Forex pricelist entries and bind them to our plans."""
        if self._pricelist is not None:
            return self._pricelist

        doc = self._call("v2.instances.order.pricelist")
        self._pricelist = [
            {"id": int(item["id"]), "name": str(item.get("name") or ""), "price": float(item.get("cost") or 0)}
            for item in doc.get("elem") or []
            if item.get("id") is not None
        ]
        logger.info(f"Found {len(self._pricelist)} Zomro plans")

        for entry in self._pricelist:
            for plan_id, plan in self.plan_mapping.items():
                if plan_name_matches(plan["name"], entry["name"]):
                    plan["pricelist_id"] = entry["id"]
                    logger.info(f"Zomro {plan_id} plan matched: {entry['name']} (ID: {entry['id']})")

        return self._pricelist

    def resolve_product(self, plan_id: str) -> Any:
        product = super().resolve_product(plan_id)
        if not product["pricelist_id"]:
            self.fetch_pricelist()
        if not product["pricelist_id"]:
            raise MappingError(self.PROVIDER_ID, f"Zomro plan {plan_id} not found in pricelist")
        return product

    # =========================================
    # INSTANCE OPERATIONS
    # =========================================

    def _submit_order(self, product: Dict[str, Any], hostname: str, region: str) -> CreateResult:
        password = generate_password(length=16)

        cart = self._call("v2.instances.order", {
            "pricelist": product["pricelist_id"],
            "period": 1,
            "server_name": hostname,
            "server_password": password,
            "datacenter": region,
            "sok": "ok",
        })
        cart_item_id = cart.get("id") or cart.get("elid")
        if not cart_item_id:
            raise ProviderRequestError(self.PROVIDER_ID, "No cart item ID returned from Zomro")
        cart_item_id = str(cart_item_id)

        # Pay from account balance
        confirm = self._call("cartorder.create.confirm", {
            "elid": cart_item_id,
            "paymethod_id": 0,
            "sok": "ok",
        })
        service_id = confirm.get("id") or confirm.get("service_id") or confirm.get("elid")
        if not service_id:
            elements = confirm.get("elem") or []
            service_id = elements[0].get("id") if elements else None

        return CreateResult(
            instance_id=str(service_id or cart_item_id),
            status=InstanceStatus.PROVISIONING,
            password=password,
            order_id=cart_item_id,
        )

    def _fetch_instance(self, instance_id: str) -> Optional[InstanceDetails]:
        doc = self._call("v2.instances", {"elid": instance_id})
        elements = doc.get("elem") or []
        if not elements:
            logger.warning(f"No Zomro service data found for {instance_id}")
            return None

        service = elements[0]
        raw_status = str(service.get("status") or "").lower()
        return InstanceDetails(
            instance_id=str(service.get("id") or instance_id),
            status=ZOMRO_STATUS_MAP.get(raw_status, InstanceStatus.UNKNOWN),
            ipv4=str(service.get("ip") or service.get("ipv4") or ""),
            hostname=str(service.get("name") or service.get("server_name") or ""),
            username=str(service.get("username") or DEFAULT_ADMIN_USERNAME),
            password=str(service["password"]) if service.get("password") else None,
        )

    def _perform_action(self, instance_id: str, action: ControlAction, **params) -> None:
        self._call(ZOMRO_FUNCS[action], {"elid": instance_id, "sok": "ok"})

    def _list_instances(self) -> List[Dict[str, Any]]:
        return self._call("v2.instances").get("elem") or []
