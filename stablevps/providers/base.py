"""
StableVPS Provider Base Classes and Interfaces
==============================================

Defines the interface every VPS vendor adapter implements, the shared
instance model, and the error taxonomy of the provisioning core.

Adapters differ only in how they talk to their vendor. The flow around
that (credential checks, plan/region mapping, hostname sanitizing,
short-circuiting IDs left behind by previous providers, best-effort
control actions) lives here once.
"""

import copy
import logging
import re
import secrets
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)


HOSTNAME_MAX_LENGTH = 50
DEFAULT_ADMIN_USERNAME = "Administrator"

# IDs minted locally instead of by a provider
MOCK_ID_PREFIXES = ("mock-", "pending-", "order-")

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
NUMERIC_PATTERN = re.compile(r"^[0-9]+$")


class InstanceStatus(Enum):
    """Normalized instance states across all providers."""
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    FAILED = "failed"
    ERROR = "error"
    LEGACY = "legacy"
    MOCK = "mock"
    UNKNOWN = "unknown"

    @property
    def is_failure(self) -> bool:
        return self in (InstanceStatus.FAILED, InstanceStatus.ERROR)


class ControlAction(Enum):
    """Instance control operations exposed to customers and admins."""
    REBOOT = "reboot"
    STOP = "stop"
    START = "start"
    DELETE = "delete"
    CHANGE_PASSWORD = "change_password"
    REINSTALL = "reinstall"


@dataclass
class CreateResult:
    """What a provider hands back when an order is accepted."""
    instance_id: str
    status: InstanceStatus = InstanceStatus.PROVISIONING
    password: Optional[str] = None
    order_id: Optional[str] = None


@dataclass
class InstanceDetails:
    """Snapshot of a provider-side instance."""
    instance_id: str
    status: InstanceStatus
    ipv4: str = ""
    hostname: str = ""
    username: str = DEFAULT_ADMIN_USERNAME
    password: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        """Active with an assigned IPv4 address."""
        return self.status == InstanceStatus.ACTIVE and bool(self.ipv4)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    def __str__(self) -> str:
        return f"{self.instance_id}: {self.ipv4 or '-'} [{self.status.value}]"


# =========================================
# ERRORS
# =========================================

class ProviderError(Exception):
    """Base exception for provider errors."""
    def __init__(self, provider: str, message: str, details: Optional[Dict] = None):
        self.provider = provider
        self.message = message
        self.details = details or {}
        super().__init__(f"[{provider}] {message}")


class ConfigurationError(ProviderError):
    """Required credentials are missing. Raised before any network call."""
    pass


class MappingError(ProviderError):
    """No provider product exists for the requested plan."""
    pass


class ProviderRequestError(ProviderError):
    """Non-2xx status, transport failure, or unparsable response body."""
    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict] = None,
    ):
        self.status_code = status_code
        super().__init__(provider, message, details)


# Raised when a 2xx body parses as JSON but not in the documented shape
MALFORMED_RESPONSE_ERRORS = (AttributeError, KeyError, IndexError, TypeError, ValueError)


class ProviderAuthError(ProviderRequestError):
    """Authentication or token acquisition failed."""
    pass


# =========================================
# HELPERS
# =========================================

def sanitize_hostname(label: str) -> str:
    """Replace anything outside [a-zA-Z0-9-] with a hyphen and cap the length."""
    return re.sub(r"[^a-zA-Z0-9-]", "-", label or "")[:HOSTNAME_MAX_LENGTH]


def classify_foreign_id(instance_id: str) -> Optional[str]:
    """
    Recognize instance IDs by shape.

    Returns:
        "mock" for locally minted IDs, "uuid" or "numeric" for the ID
        formats used by the providers this service has migrated between,
        or None when the shape carries no information.
    """
    if instance_id.startswith(MOCK_ID_PREFIXES):
        return "mock"
    if UUID_PATTERN.match(instance_id):
        return "uuid"
    if NUMERIC_PATTERN.match(instance_id):
        return "numeric"
    return None


def generate_password(
    length: int = 16,
    min_upper: int = 1,
    min_lower: int = 1,
    min_digits: int = 1,
    min_special: int = 1,
    special_chars: str = "!@#$%",
) -> str:
    """
    Generate a random password satisfying vendor complexity rules.

    The minimum counts are always honored; the remainder up to `length`
    is drawn from letters and digits.
    """
    rng = secrets.SystemRandom()
    chars = (
        [secrets.choice(string.ascii_uppercase) for _ in range(min_upper)]
        + [secrets.choice(string.ascii_lowercase) for _ in range(min_lower)]
        + [secrets.choice(string.digits) for _ in range(min_digits)]
        + [secrets.choice(special_chars) for _ in range(min_special)]
    )
    filler = string.ascii_letters + string.digits
    while len(chars) < length:
        chars.append(secrets.choice(filler))
    rng.shuffle(chars)
    return "".join(chars)


# =========================================
# PROVIDER INTERFACE
# =========================================

class VPSProviderInterface(ABC):
    """
    Abstract interface for VPS providers.

    Subclasses describe their vendor through class attributes and
    implement the transport hooks (`_check_credentials`, `_submit_order`,
    `_fetch_instance`, `_perform_action`, `_list_instances`). Callers only
    ever use the public operations defined here.
    """

    # Provider metadata (override in subclasses)
    PROVIDER_ID: str = "base"
    PROVIDER_NAME: str = "Base Provider"
    PROVIDER_WEBSITE: str = ""
    API_BASE_URL: str = ""
    REQUEST_TIMEOUT: float = 30.0

    # Internal plan id -> vendor product reference
    PLAN_MAPPING: Dict[str, Any] = {}
    # Internal location id -> vendor region code
    REGION_MAPPING: Dict[str, str] = {}
    DEFAULT_REGION: str = ""

    # ID shapes that belong to the provider this one replaced
    LEGACY_ID_KINDS: Tuple[str, ...] = ()
    LEGACY_LABEL: str = "Legacy VPS"

    SUPPORTED_ACTIONS: Tuple[ControlAction, ...] = (
        ControlAction.REBOOT,
        ControlAction.STOP,
        ControlAction.START,
        ControlAction.DELETE,
    )

    def __init__(self, client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(
            base_url=self.API_BASE_URL,
            timeout=self.REQUEST_TIMEOUT,
        )
        # Per-instance copy so product discovery never leaks between adapters
        self.plan_mapping: Dict[str, Any] = copy.deepcopy(self.PLAN_MAPPING)

    @classmethod
    def from_config(cls, config, **kwargs) -> "VPSProviderInterface":
        """Build the adapter from a StableVPSConfig."""
        return cls(**kwargs)

    # =========================================
    # TRANSPORT HOOKS
    # =========================================

    @abstractmethod
    def _check_credentials(self) -> None:
        """
        Ensure the credentials needed for API calls are present.

        Raises:
            ConfigurationError: If anything is missing
        """
        pass

    @abstractmethod
    def _submit_order(self, product: Any, hostname: str, region: str) -> CreateResult:
        """Place the vendor order and return the new instance reference."""
        pass

    @abstractmethod
    def _fetch_instance(self, instance_id: str) -> Optional[InstanceDetails]:
        """Query the vendor for one instance. None if the vendor does not know it."""
        pass

    @abstractmethod
    def _perform_action(self, instance_id: str, action: ControlAction, **params) -> None:
        """Issue one control call. Raises ProviderError on failure."""
        pass

    @abstractmethod
    def _list_instances(self) -> List[Dict[str, Any]]:
        """Return the raw vendor inventory."""
        pass

    def _auth_headers(self) -> Dict[str, str]:
        """Headers added to every API request."""
        return {}

    def _request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Any] = None,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Make an API request and return the decoded JSON body."""
        request_headers = {**self._auth_headers(), **(headers or {})}
        logger.debug(f"{self.PROVIDER_NAME} API {method} {endpoint}")

        try:
            response = self.client.request(
                method,
                endpoint,
                json=json,
                data=data,
                params=params,
                headers=request_headers,
            )
        except httpx.HTTPError as e:
            raise ProviderRequestError(self.PROVIDER_ID, f"Request failed: {e}")

        if response.status_code in (401, 403):
            raise ProviderAuthError(
                self.PROVIDER_ID,
                f"Authentication failed ({response.status_code})",
                status_code=response.status_code,
            )

        if not response.is_success:
            raise ProviderRequestError(
                self.PROVIDER_ID,
                f"API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError:
            raise ProviderRequestError(
                self.PROVIDER_ID,
                f"Non-JSON response - {response.text[:100]}",
                status_code=response.status_code,
            )

    # =========================================
    # PLAN & REGION MAPPING
    # =========================================

    def resolve_product(self, plan_id: str) -> Any:
        """
        Map an internal plan id to the vendor product reference.

        Raises:
            MappingError: If the plan has no mapping
        """
        product = self.plan_mapping.get(plan_id)
        if product is None:
            raise MappingError(self.PROVIDER_ID, f"No {self.PROVIDER_NAME} plan found for {plan_id}")
        return product

    def resolve_region(self, region: Optional[str]) -> str:
        """Map an internal location id to a vendor region, falling back to the default."""
        if region and region in self.REGION_MAPPING:
            return self.REGION_MAPPING[region]
        return self.REGION_MAPPING[self.DEFAULT_REGION]

    # =========================================
    # INSTANCE OPERATIONS
    # =========================================

    def create_instance(
        self,
        plan_id: str,
        hostname_label: str,
        region: Optional[str] = None,
    ) -> CreateResult:
        """
        Order a new VPS.

        This provisions billable infrastructure and is not idempotent:
        callers must never retry it blindly.

        Raises:
            ConfigurationError: Credentials are missing
            MappingError: The plan has no product mapping
            ProviderRequestError: The vendor rejected or garbled the order
        """
        self._check_credentials()
        product = self.resolve_product(plan_id)
        region_code = self.resolve_region(region)
        hostname = sanitize_hostname(hostname_label)

        logger.info(
            f"Creating {self.PROVIDER_NAME} VPS: plan={plan_id} region={region_code} hostname={hostname}",
            extra={"provider": self.PROVIDER_ID},
        )

        try:
            result = self._submit_order(product, hostname, region_code)
        except ProviderError as e:
            logger.error(f"Failed to create {self.PROVIDER_NAME} VPS: {e}", extra={"provider": self.PROVIDER_ID})
            raise
        except MALFORMED_RESPONSE_ERRORS as e:
            logger.error(
                f"Malformed {self.PROVIDER_NAME} order response: {e!r}",
                extra={"provider": self.PROVIDER_ID},
            )
            raise ProviderRequestError(self.PROVIDER_ID, "Malformed response", details={"error": repr(e)})

        logger.info(
            f"{self.PROVIDER_NAME} VPS provisioning started: {result.instance_id}",
            extra={"provider": self.PROVIDER_ID, "instance_id": result.instance_id},
        )
        return result

    def get_instance(self, instance_id: str) -> Optional[InstanceDetails]:
        """
        Get details for an instance.

        IDs minted locally or left behind by a previous provider are
        answered without a network call.

        Returns:
            InstanceDetails, or None if the provider does not know the ID
            or could not be queried
        """
        kind = classify_foreign_id(instance_id)

        if kind == "mock":
            logger.info(f"[MOCK] Skipping lookup for {instance_id}")
            return InstanceDetails(
                instance_id=instance_id,
                status=InstanceStatus.MOCK,
                hostname=f"Mock {self.PROVIDER_NAME} VPS",
            )

        if kind is not None and kind in self.LEGACY_ID_KINDS:
            logger.info(f"[LEGACY] Skipping {kind} ID {instance_id} (not a {self.PROVIDER_NAME} instance)")
            return InstanceDetails(
                instance_id=instance_id,
                status=InstanceStatus.LEGACY,
                hostname=self.LEGACY_LABEL,
            )

        try:
            self._check_credentials()
            return self._fetch_instance(instance_id)
        except ProviderError as e:
            logger.error(
                f"Failed to get VPS details for {instance_id}: {e}",
                extra={"provider": self.PROVIDER_ID, "instance_id": instance_id},
            )
            return None
        except MALFORMED_RESPONSE_ERRORS as e:
            logger.error(
                f"Malformed {self.PROVIDER_NAME} status for {instance_id}: {e!r}",
                extra={"provider": self.PROVIDER_ID, "instance_id": instance_id},
            )
            return None

    def control_instance(self, instance_id: str, action, **params) -> bool:
        """
        Run a control action. Best effort: never raises.

        A True result means the provider accepted the request, not that
        the action has completed.
        """
        try:
            action = ControlAction(action)
        except ValueError:
            logger.warning(f"Unknown control action {action!r} for {instance_id}")
            return False

        if action not in self.SUPPORTED_ACTIONS:
            logger.warning(f"{self.PROVIDER_NAME} does not support {action.value}")
            return False

        if action == ControlAction.CHANGE_PASSWORD and not params.get("password"):
            logger.warning(f"No new password given for {instance_id}")
            return False

        try:
            self._check_credentials()
            self._perform_action(instance_id, action, **params)
        except (ProviderError,) + MALFORMED_RESPONSE_ERRORS as e:
            logger.error(
                f"Failed to {action.value} VPS {instance_id}: {e}",
                extra={"provider": self.PROVIDER_ID, "instance_id": instance_id},
            )
            return False

        logger.info(
            f"VPS {instance_id} {action.value} initiated",
            extra={"provider": self.PROVIDER_ID, "instance_id": instance_id},
        )
        return True

    def list_instances(self) -> List[Dict[str, Any]]:
        """List all instances on the account. Empty list on failure."""
        try:
            self._check_credentials()
            return self._list_instances()
        except (ProviderError,) + MALFORMED_RESPONSE_ERRORS as e:
            logger.error(f"Failed to list {self.PROVIDER_NAME} instances: {e}")
            return []

    # =========================================
    # LIFECYCLE
    # =========================================

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} ({self.PROVIDER_ID})>"
