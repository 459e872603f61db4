"""
Tests for the Contabo Adapter
=============================
"""

import json
import string

import httpx
import pytest
import respx

from stablevps.providers.base import ConfigurationError, InstanceStatus, ProviderAuthError, ProviderError
from stablevps.providers.contabo import (
    CONTABO_AUTH_URL,
    WINDOWS_IMAGE_ID,
    ContaboProvider,
    generate_root_password,
)


API = "https://api.contabo.com/v1"
TOKEN_RESPONSE = {"access_token": "contabo-token-1", "expires_in": 300}


@pytest.fixture
def contabo():
    provider = ContaboProvider(
        client_id="cid",
        client_secret="csecret",
        api_user="ops@stablevps.test",
        api_password="api-pass",
    )
    yield provider
    provider.close()


class TestRootPassword:
    """Test Contabo password rules."""

    def test_composition(self):
        password = generate_root_password()
        assert len(password) == 12
        assert sum(c in string.ascii_uppercase for c in password) == 2
        assert sum(c in string.ascii_lowercase for c in password) == 4
        assert sum(c in string.digits for c in password) == 4
        assert sum(c in "!@#$?_" for c in password) == 2


class TestContaboAuth:
    """Test OAuth2 token handling."""

    def test_missing_credentials_are_listed(self):
        provider = ContaboProvider(client_id="cid")
        with pytest.raises(ConfigurationError) as exc:
            provider.create_instance("basic", "vps-x")
        assert "CONTABO_CLIENT_SECRET" in exc.value.message
        assert "CONTABO_CLIENT_ID" not in exc.value.message

    def test_token_is_reused(self, contabo):
        with respx.mock(assert_all_called=False) as respx_mock:
            token = respx_mock.post(CONTABO_AUTH_URL).mock(return_value=httpx.Response(200, json=TOKEN_RESPONSE))
            instance = respx_mock.get(f"{API}/compute/instances/12345").mock(
                return_value=httpx.Response(200, json={"data": [{"instanceId": 12345, "status": "provisioning"}]})
            )

            contabo.get_instance("12345")
            contabo.get_instance("12345")

            assert token.call_count == 1
            assert instance.call_count == 2
            request = instance.calls.last.request
            assert request.headers["Authorization"] == "Bearer contabo-token-1"
            assert request.headers["x-request-id"]

            form = token.calls.last.request.content.decode()
            assert "grant_type=password" in form

    def test_rejected_token_is_refreshed_once(self, contabo):
        with respx.mock() as respx_mock:
            token = respx_mock.post(CONTABO_AUTH_URL).mock(side_effect=[
                httpx.Response(200, json={"access_token": "stale", "expires_in": 300}),
                httpx.Response(200, json={"access_token": "fresh", "expires_in": 300}),
            ])
            instance = respx_mock.get(f"{API}/compute/instances/12345").mock(side_effect=[
                httpx.Response(401),
                httpx.Response(200, json={"data": [{
                    "instanceId": 12345,
                    "status": "running",
                    "ipConfig": {"v4": {"ip": "161.97.1.2"}},
                }]}),
            ])

            details = contabo.get_instance("12345")

            assert token.call_count == 2
            assert instance.calls.last.request.headers["Authorization"] == "Bearer fresh"
        assert details.is_ready
        assert details.ipv4 == "161.97.1.2"
        assert details.username == "administrator"

    def test_auth_failure_is_not_retried(self, contabo):
        with respx.mock() as respx_mock:
            token = respx_mock.post(CONTABO_AUTH_URL).mock(return_value=httpx.Response(401))
            with pytest.raises(ProviderAuthError):
                contabo.create_instance("basic", "vps-x")
            assert token.call_count == 1


class TestContaboCreate:
    """Test ordering."""

    def test_create_instance(self, contabo):
        with respx.mock() as respx_mock:
            respx_mock.post(CONTABO_AUTH_URL).mock(return_value=httpx.Response(200, json=TOKEN_RESPONSE))
            secret = respx_mock.post(f"{API}/secrets").mock(
                return_value=httpx.Response(201, json={"data": [{"secretId": 42}]})
            )
            order = respx_mock.post(f"{API}/compute/instances").mock(
                return_value=httpx.Response(201, json={"data": [{"instanceId": 202517}]})
            )

            result = contabo.create_instance("prime", "vps-x", "singapore")

            secret_payload = json.loads(secret.calls.last.request.content)
            order_payload = json.loads(order.calls.last.request.content)

        assert result.instance_id == "202517"
        assert len(result.password) == 12
        assert secret_payload["value"] == result.password
        assert secret_payload["type"] == "password"
        assert order_payload["rootPassword"] == 42
        assert order_payload["productId"] == "V9"
        assert order_payload["region"] == "SIN"
        assert order_payload["imageId"] == WINDOWS_IMAGE_ID
        # The password itself never travels with the order
        assert result.password not in json.dumps(order_payload)

    def test_missing_instance_id(self, contabo):
        with respx.mock() as respx_mock:
            respx_mock.post(CONTABO_AUTH_URL).mock(return_value=httpx.Response(200, json=TOKEN_RESPONSE))
            respx_mock.post(f"{API}/secrets").mock(return_value=httpx.Response(201, json={"data": [{"secretId": 42}]}))
            respx_mock.post(f"{API}/compute/instances").mock(return_value=httpx.Response(201, json={"data": []}))
            with pytest.raises(ProviderError, match="No instance ID"):
                contabo.create_instance("basic", "vps-x")


class TestContaboInstances:
    """Test lookup and control."""

    def test_cloudzy_uuid_is_legacy(self, contabo):
        with respx.mock():
            details = contabo.get_instance("8d1c2f3e-4a5b-4c6d-8e7f-9a0b1c2d3e4f")
        assert details.status == InstanceStatus.LEGACY

    def test_non_numeric_id(self, contabo):
        with respx.mock():
            assert contabo.get_instance("srv-abc") is None

    @pytest.mark.parametrize("action,verb", [("reboot", "restart"), ("stop", "stop"), ("start", "start")])
    def test_power_actions(self, contabo, action, verb):
        with respx.mock() as respx_mock:
            respx_mock.post(CONTABO_AUTH_URL).mock(return_value=httpx.Response(200, json=TOKEN_RESPONSE))
            route = respx_mock.post(f"{API}/compute/instances/12345/actions/{verb}").mock(
                return_value=httpx.Response(201, json={})
            )
            assert contabo.control_instance("12345", action) is True
            assert route.called

    def test_delete_cancels_contract(self, contabo):
        with respx.mock() as respx_mock:
            respx_mock.post(CONTABO_AUTH_URL).mock(return_value=httpx.Response(200, json=TOKEN_RESPONSE))
            route = respx_mock.post(f"{API}/compute/instances/12345/cancel").mock(return_value=httpx.Response(200, json={}))
            assert contabo.control_instance("12345", "delete") is True
            assert route.called

    def test_change_password_goes_through_secret(self, contabo):
        with respx.mock() as respx_mock:
            respx_mock.post(CONTABO_AUTH_URL).mock(return_value=httpx.Response(200, json=TOKEN_RESPONSE))
            respx_mock.post(f"{API}/secrets").mock(return_value=httpx.Response(201, json={"data": [{"secretId": 77}]}))
            reset = respx_mock.post(f"{API}/compute/instances/12345/actions/resetPassword").mock(
                return_value=httpx.Response(201, json={})
            )
            assert contabo.control_instance("12345", "change_password", password="N3w!Secret12") is True
            assert json.loads(reset.calls.last.request.content) == {"rootPassword": 77}

    def test_reinstall_unsupported(self, contabo):
        assert contabo.control_instance("12345", "reinstall") is False
