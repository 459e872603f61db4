"""
StableVPS Contabo Provider Adapter
==================================

Contabo integration using the Contabo REST API via httpx.

Contabo authenticates with an OAuth2 password grant. Access tokens are
held in an injectable TokenCache and refreshed one minute before they
expire. Root passwords are never sent in the clear: they are stored as
a Contabo secret first and referenced by secret ID.

API Docs: https://api.contabo.com/
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from .base import (
    VPSProviderInterface,
    ControlAction,
    CreateResult,
    InstanceDetails,
    InstanceStatus,
    ConfigurationError,
    ProviderAuthError,
    ProviderError,
    ProviderRequestError,
    NUMERIC_PATTERN,
    generate_password,
)
from .credentials import AccessToken, TokenCache
from .registry import register_provider

logger = logging.getLogger(__name__)


CONTABO_AUTH_URL = "https://auth.contabo.com/auth/realms/contabo/protocol/openid-connect/token"

# Windows Server 2022 image
WINDOWS_IMAGE_ID = "5af826e8-0e9d-4cec-9728-0966f98b4565"

CONTABO_STATUS_MAP = {
    "running": InstanceStatus.ACTIVE,
    "provisioning": InstanceStatus.PROVISIONING,
    "installing": InstanceStatus.PROVISIONING,
    "pending_payment": InstanceStatus.PROVISIONING,
    "stopped": InstanceStatus.SUSPENDED,
    "error": InstanceStatus.ERROR,
    "unknown": InstanceStatus.UNKNOWN,
}

CONTABO_ACTIONS = {
    ControlAction.REBOOT: "restart",
    ControlAction.STOP: "stop",
    ControlAction.START: "start",
}


def generate_root_password() -> str:
    """Password satisfying Contabo's rules: 2 upper, 4 lower, 4 digits, 2 special."""
    return generate_password(
        length=12,
        min_upper=2,
        min_lower=4,
        min_digits=4,
        min_special=2,
        special_chars="!@#$?_",
    )


@register_provider
class ContaboProvider(VPSProviderInterface):
    """
    Contabo provider adapter.

    Plans map to Contabo's VDS product codes. Deletion cancels the
    contract, which Contabo executes at the end of the billing period.
    """

    PROVIDER_ID = "contabo"
    PROVIDER_NAME = "Contabo"
    PROVIDER_WEBSITE = "https://contabo.com"
    API_BASE_URL = "https://api.contabo.com/v1"

    PLAN_MAPPING = {
        "basic": "V8",
        "prime": "V9",
        "pro": "V10",
    }

    REGION_MAPPING = {
        "london": "UK",
        "germany": "EU",
        "usa": "US-central",
        "singapore": "SIN",
        "australia": "AUS",
        "japan": "JPN",
    }
    DEFAULT_REGION = "london"

    LEGACY_ID_KINDS = ("uuid",)
    LEGACY_LABEL = "Legacy Cloudzy VPS"

    SUPPORTED_ACTIONS = (
        ControlAction.REBOOT,
        ControlAction.STOP,
        ControlAction.START,
        ControlAction.DELETE,
        ControlAction.CHANGE_PASSWORD,
    )

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        api_user: Optional[str] = None,
        api_password: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        token_cache: Optional[TokenCache] = None,
    ):
        """
        Initialize Contabo provider.

        Args:
            client_id: OAuth2 client ID
            client_secret: OAuth2 client secret
            api_user: Contabo account email
            api_password: Contabo API password
            token_cache: Cache for access tokens (one per adapter by default)
        """
        super().__init__(client=client)
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_user = api_user
        self.api_password = api_password
        self.token_cache = token_cache or TokenCache(skew_seconds=60)

    @classmethod
    def from_config(cls, config, **kwargs) -> "ContaboProvider":
        creds = config.credentials
        return cls(
            client_id=creds.contabo_client_id,
            client_secret=creds.contabo_client_secret,
            api_user=creds.contabo_api_user,
            api_password=creds.contabo_api_password,
            **kwargs,
        )

    def _check_credentials(self) -> None:
        missing = [
            name for name, value in (
                ("CONTABO_CLIENT_ID", self.client_id),
                ("CONTABO_CLIENT_SECRET", self.client_secret),
                ("CONTABO_API_USER", self.api_user),
                ("CONTABO_API_PASSWORD", self.api_password),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                self.PROVIDER_ID,
                f"Missing Contabo credentials: {', '.join(missing)}",
            )

    # =========================================
    # AUTHENTICATION
    # =========================================

    def _fetch_token(self) -> AccessToken:
        """Run the OAuth2 password grant."""
        try:
            response = self.client.post(
                CONTABO_AUTH_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "username": self.api_user,
                    "password": self.api_password,
                    "grant_type": "password",
                },
            )
        except httpx.HTTPError as e:
            raise ProviderAuthError(self.PROVIDER_ID, f"Token request failed: {e}")

        if not response.is_success:
            raise ProviderAuthError(
                self.PROVIDER_ID,
                f"Contabo authentication failed: {response.status_code}",
                details={"status_code": response.status_code},
            )

        try:
            data = response.json()
            token = data["access_token"]
        except (ValueError, KeyError):
            raise ProviderAuthError(self.PROVIDER_ID, "Malformed token response")

        logger.info("Contabo access token obtained")
        return AccessToken.expiring_in(token, float(data.get("expires_in", 300)))

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token_cache.get(self._fetch_token)}",
            "x-request-id": str(uuid.uuid4()),
        }

    def _api(self, method: str, endpoint: str, json: Optional[Any] = None) -> Any:
        """API call that re-authenticates once if the token was rejected."""
        try:
            return self._request(method, endpoint, json=json)
        except ProviderAuthError as e:
            if e.status_code != 401:
                raise
            logger.info("Contabo token rejected, re-authenticating")
            self.token_cache.invalidate()
            return self._request(method, endpoint, json=json)

    # =========================================
    # INSTANCE OPERATIONS
    # =========================================

    def create_secret(self, label: str, password: str) -> int:
        """Store a password as a Contabo secret and return its ID."""
        response = self._api(
            "POST",
            "/secrets",
            json={
                "name": f"vps-{label}-{int(time.time() * 1000)}",
                "value": password,
                "type": "password",
            },
        )
        try:
            return response["data"][0]["secretId"]
        except (KeyError, IndexError, TypeError):
            raise ProviderRequestError(self.PROVIDER_ID, "No secret ID returned from Contabo")

    def _submit_order(self, product: str, hostname: str, region: str) -> CreateResult:
        password = generate_root_password()
        secret_id = self.create_secret(hostname, password)

        payload = {
            "imageId": WINDOWS_IMAGE_ID,
            "productId": product,
            "region": region,
            "rootPassword": secret_id,
            "period": 1,
            "displayName": hostname,
            "defaultUser": "administrator",
        }
        response = self._api("POST", "/compute/instances", json=payload)

        try:
            instance_id = response["data"][0]["instanceId"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError(self.PROVIDER_ID, "No instance ID returned from Contabo", details=response)

        return CreateResult(
            instance_id=str(instance_id),
            status=InstanceStatus.PROVISIONING,
            password=password,
        )

    def _fetch_instance(self, instance_id: str) -> Optional[InstanceDetails]:
        if not NUMERIC_PATTERN.match(instance_id):
            logger.warning(f"Invalid Contabo instance ID: {instance_id}")
            return None

        response = self._api("GET", f"/compute/instances/{instance_id}")
        instances = response.get("data") or []
        if not instances:
            return None

        instance = instances[0]
        ip_config = (instance.get("ipConfig") or {}).get("v4") or {}
        raw_status = str(instance.get("status") or "unknown").lower()

        return InstanceDetails(
            instance_id=str(instance.get("instanceId") or instance_id),
            status=CONTABO_STATUS_MAP.get(raw_status, InstanceStatus.UNKNOWN),
            ipv4=ip_config.get("ip") or "",
            hostname=instance.get("displayName") or "",
            username="administrator",
        )

    def _perform_action(self, instance_id: str, action: ControlAction, **params) -> None:
        if action in CONTABO_ACTIONS:
            self._api("POST", f"/compute/instances/{instance_id}/actions/{CONTABO_ACTIONS[action]}")
        elif action == ControlAction.DELETE:
            self._api("POST", f"/compute/instances/{instance_id}/cancel", json={})
        elif action == ControlAction.CHANGE_PASSWORD:
            secret_id = self.create_secret(instance_id, params["password"])
            self._api(
                "POST",
                f"/compute/instances/{instance_id}/actions/resetPassword",
                json={"rootPassword": secret_id},
            )

    def _list_instances(self) -> List[Dict[str, Any]]:
        return self._api("GET", "/compute/instances").get("data") or []
