"""Unit tests for engine configuration, leases and the system clock.

Tests cover:
- EngineConfig defaults, dictionary and environment loading
- Lease claim, expiry takeover and persisted acquisition
- SystemClock timed waits
"""

import asyncio

import pytest

from src.shared.incident_playbooks.clock import SystemClock
from src.shared.incident_playbooks.config import EngineConfig
from src.shared.incident_playbooks.errors import (
    ConcurrentModificationError,
    ExecutionNotFoundError,
    LeaseConflictError,
)
from src.shared.incident_playbooks.execution import Execution
from src.shared.incident_playbooks.execution_store import InMemoryExecutionStore
from src.shared.incident_playbooks.lease import LeaseManager
from src.shared.incident_playbooks.models import RiskLevel


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_defaults(self):
        """Should provide conservative defaults and a unique owner."""
        first = EngineConfig()
        second = EngineConfig()

        assert first.max_concurrent_actions == 10
        assert first.lease_ttl_seconds == 60
        assert first.halt_on_stage_failure is False
        assert first.auto_rollback_on_timeout is True
        assert first.owner_id != second.owner_id

    def test_from_dict(self):
        """Should read known keys and default the rest."""
        config = EngineConfig.from_dict({"max_concurrent_actions": 2, "owner_id": "engine-7", "dry_run": True})

        assert config.max_concurrent_actions == 2
        assert config.owner_id == "engine-7"
        assert config.dry_run is True
        assert config.approval_poll_seconds == 5.0
        assert EngineConfig.from_dict(None).save_retry_attempts == 3

    def test_from_environment(self, monkeypatch):
        """Should read PLAYBOOK_* environment variables."""
        monkeypatch.setenv("PLAYBOOK_MAX_CONCURRENT_ACTIONS", "4")
        monkeypatch.setenv("PLAYBOOK_LEASE_TTL_SECONDS", "30")
        monkeypatch.setenv("PLAYBOOK_OWNER_ID", "worker-1")
        monkeypatch.setenv("PLAYBOOK_APPROVAL_POLL_SECONDS", "2.5")
        monkeypatch.setenv("PLAYBOOK_DRY_RUN", "yes")
        monkeypatch.setenv("PLAYBOOK_AUTO_ROLLBACK_ON_TIMEOUT", "false")

        config = EngineConfig.from_environment()

        assert config.max_concurrent_actions == 4
        assert config.lease_ttl_seconds == 30
        assert config.owner_id == "worker-1"
        assert config.approval_poll_seconds == 2.5
        assert config.dry_run is True
        assert config.auto_rollback_on_timeout is False
        assert config.halt_on_stage_failure is False


class TestLeaseManager:
    """Tests for execution leases."""

    @pytest.fixture
    def execution(self, clock):
        return Execution.create(
            playbook_id="pb-impossible-travel",
            playbook_version=1,
            target_id="user-123",
            incident={},
            risk_level=RiskLevel.HIGH,
            started_at=clock.now(),
        )

    def test_claim_and_conflict(self, clock, execution):
        """Should refuse to claim a live lease held by another owner."""
        LeaseManager(clock, "engine-a").claim(execution)

        assert execution.lease_owner == "engine-a"
        with pytest.raises(LeaseConflictError):
            LeaseManager(clock, "engine-b").claim(execution)

    def test_expired_lease_taken_over(self, clock, execution):
        """Should allow a takeover once the lease expires."""
        LeaseManager(clock, "engine-a", ttl_seconds=60).claim(execution)
        clock.advance(61)

        other = LeaseManager(clock, "engine-b", ttl_seconds=60)
        assert other.held_by_other(execution) is False
        other.claim(execution)

        assert execution.lease_owner == "engine-b"

    def test_renew_and_release(self, clock, execution):
        """Should extend and clear the lease."""
        leases = LeaseManager(clock, "engine-a", ttl_seconds=60)
        leases.claim(execution)
        clock.advance(30)
        leases.renew(execution)

        assert (execution.lease_expires_at - clock.now()).total_seconds() == 60
        leases.release(execution)
        assert execution.lease_owner is None

    def test_acquire_persists_claim(self, clock, execution):
        """Should save the claim to the store."""
        store = InMemoryExecutionStore()
        store.save(execution)

        acquired = LeaseManager(clock, "engine-b").acquire(store, execution.id)

        assert acquired.version == 2
        assert store.get(execution.id).lease_owner == "engine-b"

    def test_acquire_missing(self, clock):
        """Should raise for unknown executions."""
        with pytest.raises(ExecutionNotFoundError):
            LeaseManager(clock, "engine-a").acquire(InMemoryExecutionStore(), "missing")

    def test_acquire_retries_on_conflict(self, clock, execution):
        """Should reload and retry when a concurrent write wins."""
        store = InMemoryExecutionStore()
        store.save(execution)
        original_save = store.save
        calls = []

        def racing_save(record):
            calls.append(record.version)
            if len(calls) == 1:
                raise ConcurrentModificationError(record.id, record.version)
            return original_save(record)

        store.save = racing_save

        acquired = LeaseManager(clock, "engine-a").acquire(store, execution.id)

        assert len(calls) == 2
        assert acquired.lease_owner == "engine-a"


class TestSystemClock:
    """Tests for SystemClock."""

    @pytest.mark.asyncio
    async def test_wait_for_event(self):
        """Should report whether the event was set before the timeout."""
        clock = SystemClock()
        event = asyncio.Event()

        assert await clock.wait_for_event(event, 0.01) is False
        event.set()
        assert await clock.wait_for_event(event, 0.01) is True
        assert clock.now().tzinfo is not None
