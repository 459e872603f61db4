"""
Tests for the Provider Interface
================================

Shared adapter behaviour: hostname sanitizing, ID classification,
mapping, error translation and best-effort control.
"""

import string

import httpx
import pytest
import respx

from stablevps.providers.base import (
    VPSProviderInterface,
    ControlAction,
    CreateResult,
    InstanceDetails,
    InstanceStatus,
    ConfigurationError,
    MappingError,
    ProviderAuthError,
    ProviderRequestError,
    HOSTNAME_MAX_LENGTH,
    classify_foreign_id,
    generate_password,
    sanitize_hostname,
)


BASE_URL = "https://api.example.test/v1"


class RecordingProvider(VPSProviderInterface):
    """Minimal adapter that records hook calls."""

    PROVIDER_ID = "recording"
    PROVIDER_NAME = "Recording"
    API_BASE_URL = BASE_URL

    PLAN_MAPPING = {"basic": "small", "prime": "medium"}
    REGION_MAPPING = {"london": "uk-1", "frankfurt": "de-1"}
    DEFAULT_REGION = "frankfurt"
    LEGACY_ID_KINDS = ("numeric",)
    LEGACY_LABEL = "Legacy Other VPS"

    def __init__(self, token="secret", fetch_result=None, fail_with=None):
        super().__init__()
        self.token = token
        self.fetch_result = fetch_result
        self.fail_with = fail_with
        self.orders = []
        self.fetches = []
        self.actions = []

    def _check_credentials(self):
        if not self.token:
            raise ConfigurationError(self.PROVIDER_ID, "Missing RECORDING_TOKEN environment variable")

    def _submit_order(self, product, hostname, region):
        if self.fail_with:
            raise self.fail_with
        self.orders.append((product, hostname, region))
        return CreateResult(instance_id="inst-1")

    def _fetch_instance(self, instance_id):
        self.fetches.append(instance_id)
        if self.fail_with:
            raise self.fail_with
        return self.fetch_result

    def _perform_action(self, instance_id, action, **params):
        if self.fail_with:
            raise self.fail_with
        self.actions.append((instance_id, action, params))

    def _list_instances(self):
        if self.fail_with:
            raise self.fail_with
        return [{"id": "inst-1"}]


@pytest.fixture
def provider():
    p = RecordingProvider()
    yield p
    p.close()


class TestSanitizeHostname:
    """Test hostname sanitizing."""

    def test_replaces_invalid_characters(self):
        assert sanitize_hostname("vps-Jane Doe_2024.01") == "vps-Jane-Doe-2024-01"

    def test_keeps_valid_hostname(self):
        assert sanitize_hostname("vps-abc-123") == "vps-abc-123"

    def test_truncates_to_max_length(self):
        result = sanitize_hostname("x" * 80)
        assert len(result) == HOSTNAME_MAX_LENGTH

    def test_non_ascii_letters_are_replaced(self):
        assert sanitize_hostname("vps-José") == "vps-Jos-"


class TestClassifyForeignId:
    """Test instance ID shape detection."""

    @pytest.mark.parametrize("instance_id", ["mock-vps-1700000000000", "pending-17", "order-99"])
    def test_locally_minted_ids(self, instance_id):
        assert classify_foreign_id(instance_id) == "mock"

    def test_uuid(self):
        assert classify_foreign_id("3f2b8c1e-9d4a-4b7e-8f00-1a2b3c4d5e6f") == "uuid"

    def test_uuid_is_case_insensitive(self):
        assert classify_foreign_id("3F2B8C1E-9D4A-4B7E-8F00-1A2B3C4D5E6F") == "uuid"

    def test_numeric(self):
        assert classify_foreign_id("202517") == "numeric"

    def test_unknown_shape(self):
        assert classify_foreign_id("srv-abc") is None


class TestGeneratePassword:
    """Test password generation."""

    def test_default_length_and_classes(self):
        password = generate_password()
        assert len(password) == 16
        assert any(c in string.ascii_uppercase for c in password)
        assert any(c in string.ascii_lowercase for c in password)
        assert any(c in string.digits for c in password)
        assert any(c in "!@#$%" for c in password)

    def test_minimums_are_exact_when_length_is_tight(self):
        password = generate_password(length=6, min_upper=2, min_lower=2, min_digits=1, min_special=1, special_chars="_")
        assert len(password) == 6
        assert sum(c in string.ascii_uppercase for c in password) == 2
        assert password.count("_") == 1

    def test_passwords_differ(self):
        assert generate_password() != generate_password()


class TestInstanceDetails:
    """Test the instance snapshot."""

    def test_ready_needs_active_and_ip(self):
        assert InstanceDetails("1", InstanceStatus.ACTIVE, ipv4="1.2.3.4").is_ready
        assert not InstanceDetails("1", InstanceStatus.ACTIVE).is_ready
        assert not InstanceDetails("1", InstanceStatus.PROVISIONING, ipv4="1.2.3.4").is_ready

    def test_failure_statuses(self):
        assert InstanceStatus.FAILED.is_failure
        assert InstanceStatus.ERROR.is_failure
        assert not InstanceStatus.SUSPENDED.is_failure

    def test_to_dict_serializes_status(self):
        data = InstanceDetails("1", InstanceStatus.ACTIVE, ipv4="1.2.3.4").to_dict()
        assert data["status"] == "active"
        assert data["username"] == "Administrator"


class TestCreateInstance:
    """Test the shared create flow."""

    def test_maps_plan_region_and_hostname(self, provider):
        result = provider.create_instance("prime", "vps-Jane Doe-1", "london")
        assert result.instance_id == "inst-1"
        assert provider.orders == [("medium", "vps-Jane-Doe-1", "uk-1")]

    def test_unknown_region_uses_default(self, provider):
        provider.create_instance("basic", "vps", "atlantis")
        assert provider.orders[0][2] == "de-1"

    def test_missing_region_uses_default(self, provider):
        provider.create_instance("basic", "vps")
        assert provider.orders[0][2] == "de-1"

    def test_unknown_plan_raises_mapping_error(self, provider):
        with pytest.raises(MappingError):
            provider.create_instance("enterprise", "vps", "london")
        assert provider.orders == []

    def test_missing_credentials_fail_before_ordering(self):
        provider = RecordingProvider(token="")
        with pytest.raises(ConfigurationError):
            provider.create_instance("basic", "vps", "london")
        assert provider.orders == []

    def test_provider_errors_propagate(self):
        provider = RecordingProvider(fail_with=ProviderRequestError("recording", "boom", status_code=500))
        with pytest.raises(ProviderRequestError) as exc:
            provider.create_instance("basic", "vps", "london")
        assert exc.value.status_code == 500

    def test_malformed_reply_becomes_request_error(self):
        provider = RecordingProvider(fail_with=KeyError("instances"))
        with pytest.raises(ProviderRequestError, match="Malformed response"):
            provider.create_instance("basic", "vps", "london")

    def test_plan_mapping_is_per_instance(self, provider):
        provider.plan_mapping["basic"] = "changed"
        assert RecordingProvider.PLAN_MAPPING["basic"] == "small"


class TestGetInstance:
    """Test instance lookup short-circuits."""

    def test_mock_id_skips_lookup(self, provider):
        details = provider.get_instance("mock-vps-123")
        assert details.status == InstanceStatus.MOCK
        assert provider.fetches == []

    def test_legacy_id_skips_lookup(self, provider):
        details = provider.get_instance("12345")
        assert details.status == InstanceStatus.LEGACY
        assert details.hostname == "Legacy Other VPS"
        assert details.ipv4 == ""
        assert provider.fetches == []

    def test_other_ids_are_fetched(self):
        expected = InstanceDetails("srv-1", InstanceStatus.ACTIVE, ipv4="1.2.3.4")
        provider = RecordingProvider(fetch_result=expected)
        assert provider.get_instance("srv-1") == expected
        assert provider.fetches == ["srv-1"]

    def test_errors_become_none(self):
        provider = RecordingProvider(fail_with=ProviderRequestError("recording", "down"))
        assert provider.get_instance("srv-1") is None

    def test_malformed_reply_becomes_none(self):
        provider = RecordingProvider(fail_with=AttributeError("'list' object has no attribute 'get'"))
        assert provider.get_instance("srv-1") is None

    def test_missing_credentials_become_none(self):
        provider = RecordingProvider(token="")
        assert provider.get_instance("srv-1") is None
        assert provider.fetches == []


class TestControlInstance:
    """Test best-effort control."""

    def test_accepted_action(self, provider):
        assert provider.control_instance("srv-1", "reboot") is True
        assert provider.actions == [("srv-1", ControlAction.REBOOT, {})]

    def test_accepts_enum(self, provider):
        assert provider.control_instance("srv-1", ControlAction.STOP) is True

    def test_unknown_action(self, provider):
        assert provider.control_instance("srv-1", "explode") is False
        assert provider.actions == []

    def test_unsupported_action(self, provider):
        assert provider.control_instance("srv-1", "change_password", password="x") is False
        assert provider.actions == []

    def test_provider_error_returns_false(self):
        provider = RecordingProvider(fail_with=ProviderRequestError("recording", "refused", status_code=409))
        assert provider.control_instance("srv-1", "start") is False

    def test_list_instances_swallows_errors(self):
        provider = RecordingProvider(fail_with=ProviderRequestError("recording", "down"))
        assert provider.list_instances() == []


class TestRequest:
    """Test HTTP error translation."""

    def test_json_body(self, provider):
        with respx.mock(base_url=BASE_URL) as respx_mock:
            respx_mock.get("/things").mock(return_value=httpx.Response(200, json={"ok": True}))
            assert provider._request("GET", "/things") == {"ok": True}

    def test_empty_body(self, provider):
        with respx.mock(base_url=BASE_URL) as respx_mock:
            respx_mock.delete("/things/1").mock(return_value=httpx.Response(204))
            assert provider._request("DELETE", "/things/1") == {}

    def test_auth_failure(self, provider):
        with respx.mock(base_url=BASE_URL) as respx_mock:
            respx_mock.get("/things").mock(return_value=httpx.Response(401))
            with pytest.raises(ProviderAuthError) as exc:
                provider._request("GET", "/things")
            assert exc.value.status_code == 401

    def test_server_error(self, provider):
        with respx.mock(base_url=BASE_URL) as respx_mock:
            respx_mock.get("/things").mock(return_value=httpx.Response(503, text="maintenance"))
            with pytest.raises(ProviderRequestError) as exc:
                provider._request("GET", "/things")
            assert exc.value.status_code == 503
            assert not isinstance(exc.value, ProviderAuthError)

    def test_non_json_body(self, provider):
        with respx.mock(base_url=BASE_URL) as respx_mock:
            respx_mock.get("/things").mock(return_value=httpx.Response(200, text="<html>"))
            with pytest.raises(ProviderRequestError, match="Non-JSON"):
                provider._request("GET", "/things")

    def test_transport_error(self, provider):
        with respx.mock(base_url=BASE_URL) as respx_mock:
            respx_mock.get("/things").mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(ProviderRequestError, match="Request failed"):
                provider._request("GET", "/things")
