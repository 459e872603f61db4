"""
Tests for Durable Provisioning Polls
====================================
"""

import json
from unittest.mock import MagicMock

import pytest

from stablevps.poll_store import (
    COMPLETED,
    FAILED,
    PENDING,
    SKIPPED,
    TIMEOUT,
    PollRunner,
    PollStore,
)
from stablevps.providers.base import ConfigurationError, InstanceDetails, InstanceStatus
from stablevps.store import ServiceRecord


@pytest.fixture
def service(store, user):
    return store.add_service(user.id, ServiceRecord(
        plan_id="basic",
        billing_cycle="monthly",
        location="london",
        server_id="777",
        provider="zomro",
        rdp_password="Ord3r!pw",
    ))


@pytest.fixture
def provider():
    provider = MagicMock()
    provider.get_instance = MagicMock(return_value=None)
    return provider


@pytest.fixture
def runner(store, poll_store, provider):
    return PollRunner(store, poll_store, lambda provider_id: provider, interval_seconds=15)


def enqueue(poll_store, user, service, max_attempts=3, now=1000.0):
    return poll_store.enqueue(
        instance_id=service.server_id,
        provider="zomro",
        user_id=user.id,
        service_id=service.id,
        interval_seconds=15,
        max_attempts=max_attempts,
        now=now,
    )


class TestPollStore:
    """Test cursor bookkeeping."""

    def test_enqueue_schedules_first_poll(self, poll_store, user, service):
        cursor = enqueue(poll_store, user, service)
        assert cursor.state == PENDING
        assert cursor.next_poll_at == 1015.0
        assert cursor.deadline == 1000.0 + 15 * 4

    def test_due(self, poll_store, user, service):
        enqueue(poll_store, user, service)
        assert poll_store.due(now=1010.0) == []
        assert len(poll_store.due(now=1015.0)) == 1

    def test_returns_copies(self, poll_store, user, service):
        cursor = enqueue(poll_store, user, service)
        cursor.attempts = 99
        assert poll_store.get(cursor.cursor_id).attempts == 0

    def test_persists_and_reloads(self, tmp_path, user, service):
        first = PollStore(str(tmp_path))
        cursor = enqueue(first, user, service)

        on_disk = json.loads((tmp_path / f"{cursor.cursor_id}.json").read_text())
        assert on_disk["instance_id"] == "777"

        reloaded = PollStore(str(tmp_path))
        assert reloaded.get(cursor.cursor_id).service_id == service.id
        assert len(reloaded.due(now=2000.0)) == 1

    def test_unreadable_files_are_skipped(self, tmp_path):
        (tmp_path / "broken.json").write_text("{not json")
        assert PollStore(str(tmp_path)).list_cursors() == []


class TestPollRunner:
    """Test reconciliation of due cursors."""

    def test_active_instance_updates_service(self, store, poll_store, runner, provider, user, service):
        cursor = enqueue(poll_store, user, service)
        provider.get_instance.return_value = InstanceDetails("777", InstanceStatus.ACTIVE, ipv4="5.6.7.8")

        assert runner.run_due(now=1015.0) == {COMPLETED: 1}

        updated = store.get_service(user.id, service.id)
        assert updated.vps_status == "active"
        assert updated.ip_address == "5.6.7.8"
        assert updated.rdp_password == "Ord3r!pw"
        assert poll_store.get(cursor.cursor_id).state == COMPLETED

    def test_not_due_is_left_alone(self, poll_store, runner, provider, user, service):
        enqueue(poll_store, user, service)
        assert runner.run_due(now=1001.0) == {}
        provider.get_instance.assert_not_called()

    def test_pending_is_rescheduled(self, poll_store, runner, provider, user, service):
        cursor = enqueue(poll_store, user, service)
        provider.get_instance.return_value = InstanceDetails("777", InstanceStatus.PROVISIONING)

        runner.run_due(now=1015.0)

        saved = poll_store.get(cursor.cursor_id)
        assert saved.state == PENDING
        assert saved.attempts == 1
        assert saved.next_poll_at == 1030.0
        assert saved.last_status == "provisioning"

    def test_failure_marks_service_failed(self, store, poll_store, runner, provider, user, service):
        enqueue(poll_store, user, service)
        provider.get_instance.return_value = InstanceDetails("777", InstanceStatus.FAILED)

        assert runner.run_due(now=1015.0) == {FAILED: 1}
        assert store.get_service(user.id, service.id).vps_status == "failed"

    def test_timeout_after_max_attempts(self, store, poll_store, runner, user, service):
        cursor = enqueue(poll_store, user, service, max_attempts=2)

        runner.run_due(now=1015.0)
        assert runner.run_due(now=1030.0) == {TIMEOUT: 1}

        assert poll_store.get(cursor.cursor_id).attempts == 2
        assert store.get_service(user.id, service.id).vps_status == "provisioning"

    def test_legacy_instance_is_skipped(self, poll_store, runner, provider, user, service):
        enqueue(poll_store, user, service)
        provider.get_instance.return_value = InstanceDetails("777", InstanceStatus.LEGACY)
        assert runner.run_due(now=1015.0) == {SKIPPED: 1}

    def test_unbuildable_provider_keeps_cursor(self, store, poll_store, user, service):
        def resolve(provider_id):
            raise ConfigurationError(provider_id, "Missing credentials")

        cursor = enqueue(poll_store, user, service)
        runner = PollRunner(store, poll_store, resolve, interval_seconds=15)

        assert runner.run_due(now=1015.0) == {PENDING: 1}
        saved = poll_store.get(cursor.cursor_id)
        assert saved.attempts == 0
        assert saved.next_poll_at == 1030.0

    def test_terminal_cursors_are_not_polled_again(self, poll_store, runner, provider, user, service):
        enqueue(poll_store, user, service)
        provider.get_instance.return_value = InstanceDetails("777", InstanceStatus.ACTIVE, ipv4="5.6.7.8")

        runner.run_due(now=1015.0)
        runner.run_due(now=5000.0)
        assert provider.get_instance.call_count == 1

    def test_crashing_lookup_does_not_stall_other_cursors(self, store, poll_store, runner, provider, user, service):
        other = store.add_service(user.id, ServiceRecord(
            plan_id="basic", billing_cycle="monthly", location="london", server_id="888", provider="zomro",
        ))
        broken = enqueue(poll_store, user, service, now=990.0)
        healthy = enqueue(poll_store, user, other)

        def get_instance(instance_id):
            if instance_id == "777":
                raise AttributeError("'list' object has no attribute 'get'")
            return InstanceDetails(instance_id, InstanceStatus.ACTIVE, ipv4="5.6.7.8")

        provider.get_instance.side_effect = get_instance

        assert runner.run_due(now=1015.0) == {PENDING: 1, COMPLETED: 1}

        saved = poll_store.get(broken.cursor_id)
        assert saved.attempts == 1
        assert saved.next_poll_at == 1030.0
        assert poll_store.get(healthy.cursor_id).state == COMPLETED
        assert store.get_service(user.id, other.id).vps_status == "active"

    def test_crashing_lookup_times_out_eventually(self, poll_store, runner, provider, user, service):
        cursor = enqueue(poll_store, user, service, max_attempts=2)
        provider.get_instance.side_effect = KeyError("instance")

        runner.run_due(now=1015.0)
        assert runner.run_due(now=1030.0) == {TIMEOUT: 1}
        assert poll_store.get(cursor.cursor_id).attempts == 2
