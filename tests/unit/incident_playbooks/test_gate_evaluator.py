"""Unit tests for the approval gate evaluator.

Tests cover:
- Gate selection from policies and playbook gates
- Exemptions and auto-approval
- Approver resolution and the no-approver denial
- Quorum and denial votes
- Escalation and fallback behaviors after expiry
- Notification failures and evaluator errors
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from src.shared.incident_playbooks.approval_store import InMemoryApprovalStore
from src.shared.incident_playbooks.config import EngineConfig
from src.shared.incident_playbooks.execution import ActionExecution, ApprovalRequest, Execution, Vote
from src.shared.incident_playbooks.gate_evaluator import ApprovalGateEvaluator, StaticApproverDirectory
from src.shared.incident_playbooks.models import (
    ActionStatus,
    ApprovalStatus,
    AuditEventType,
    RiskLevel,
)
from src.shared.incident_playbooks.notifier import CallbackNotifier
from src.shared.incident_playbooks.playbook_store import InMemoryPolicyStore
from src.shared.incident_playbooks.policy import ApprovalPolicy, ApproverRole

APPROVERS = {
    "security_lead": ["alice", "bob"],
    "ciso": ["carol"],
}


def suspend_action(**overrides):
    action = {
        "id": "suspend",
        "kind": "ACCOUNT_SUSPEND",
        "requires_approval": True,
        "approval_roles": ["security_lead"],
    }
    action.update(overrides)
    return action


class GateHarness:
    """Evaluator wired to in-memory stores and a recording notifier."""

    def __init__(self, clock, incident, playbook, on_notify=None, policies=None, directory=None, **config):
        self.clock = clock
        self.store = InMemoryApprovalStore()
        self.notifications = []
        self.on_notify = on_notify
        self.evaluator = ApprovalGateEvaluator(
            self.store,
            clock,
            policy_store=InMemoryPolicyStore(policies or []),
            notifier=CallbackNotifier(self._notify),
            directory=directory or StaticApproverDirectory(APPROVERS),
            config=EngineConfig(owner_id="test", **config),
        )
        self.playbook = playbook
        self.spec = playbook.actions[0]
        self.execution = Execution.create(
            playbook_id=playbook.id,
            playbook_version=playbook.version,
            target_id="user-123",
            incident=incident,
            risk_level=RiskLevel.HIGH,
            started_at=clock.now(),
            confidence_score=incident["confidence_score"],
        )
        self.record = ActionExecution(
            action_id=self.spec.id,
            kind=self.spec.kind.value,
            stage=self.spec.stage,
            idempotency_key=f"{self.spec.id}:key",
        )
        self.execution.actions[self.spec.id] = self.record
        self.writer = MagicMock()

    def _notify(self, approver_ids, request):
        self.notifications.append((request.escalation_level, approver_ids))
        if self.on_notify:
            self.on_notify(self, approver_ids, request)

    def vote(self, request_id, approver_id, decision="APPROVE"):
        return self.store.record_vote(request_id, Vote(approver_id, decision, self.clock.now()))

    async def evaluate(self):
        return await self.evaluator.evaluate(self.playbook, self.spec, self.execution, self.record, self.writer)

    def request(self):
        return self.store.get(self.record.approval_request_id)


@pytest.fixture
def harness(clock, incident, make_playbook):
    def _harness(action=None, gates=None, **kwargs):
        playbook = make_playbook([action or suspend_action()], policy_gates=gates or [])
        return GateHarness(clock, incident, playbook, **kwargs)
    return _harness


class TestGateSelection:
    """Tests for choosing the gates that apply to an action."""

    def test_default_gate_from_approval_roles(self, harness):
        """Should fall back to a single-approver gate over the action's roles."""
        h = harness()
        gates = h.evaluator.applicable_gates(h.playbook, h.spec, h.execution)

        assert len(gates) == 1
        policy, gate = gates[0]
        assert policy is None
        assert gate.name == "suspend-approval"
        assert gate.required_approvers == 1
        assert [r.role for r in gate.approver_roles] == ["security_lead"]

    def test_untriggered_gates_are_ignored(self, harness):
        """Should skip gates whose risk-level trigger does not match."""
        h = harness(gates=[{"name": "critical-only", "risk_levels": ["CRITICAL"]}])
        gates = h.evaluator.applicable_gates(h.playbook, h.spec, h.execution)
        assert [g.name for _, g in gates] == ["suspend-approval"]

    def test_policies_ordered_by_priority(self, harness):
        """Should evaluate higher-priority policy gates first."""
        policies = [
            ApprovalPolicy.from_dict({"id": "low", "priority": 1, "gates": [{"name": "low-gate"}]}),
            ApprovalPolicy.from_dict({"id": "high", "priority": 10, "gates": [{"name": "high-gate"}]}),
            ApprovalPolicy.from_dict({
                "id": "other", "scope": "SPECIFIC_PLAYBOOKS", "playbook_ids": ["pb-other"],
                "gates": [{"name": "other-gate"}],
            }),
        ]
        h = harness(policies=policies, gates=[{"name": "playbook-gate"}])
        names = [g.name for _, g in h.evaluator.applicable_gates(h.playbook, h.spec, h.execution)]

        assert names[0] == "high-gate"
        assert "other-gate" not in names
        assert set(names) == {"high-gate", "low-gate", "playbook-gate"}


class TestApproverResolution:
    """Tests for resolving roles to approvers."""

    def test_explicit_members_directory_and_fallback(self, harness):
        """Should use role members, then the directory, then fallback users."""
        h = harness()
        approvers = h.evaluator.resolve_approvers([
            ApproverRole(role="on_call", user_ids=["dave"], priority=0),
            ApproverRole(role="security_lead", priority=1),
            ApproverRole(role="empty_role", fallback_users=["erin"], priority=2),
        ])
        assert approvers == ["dave", "alice", "bob", "erin"]

    def test_deduplicates_and_caps(self, harness):
        """Should drop duplicates and honour max_approvers_per_gate."""
        h = harness(max_approvers_per_gate=2)
        approvers = h.evaluator.resolve_approvers([
            ApproverRole(role="security_lead"),
            ApproverRole(role="team", user_ids=["alice", "carol"]),
        ])
        assert approvers == ["alice", "bob"]

    def test_escalation_targets(self, harness):
        """Should expand roles and keep plain user IDs."""
        h = harness()
        assert h.evaluator.resolve_escalation_targets(["ciso", "frank"]) == ["carol", "frank"]


class TestGateShortcuts:
    """Tests for gates that pass or deny without a vote."""

    @pytest.mark.asyncio
    async def test_exempt_target(self, harness):
        """Should pass the gate for targets holding an exempt role."""
        h = harness(gates=[{"name": "suspend-gate", "exemptions": [{"roles": ["employee"], "reason": "drill"}]}])

        decision = await h.evaluate()

        assert decision.passed
        assert decision.reason == "EXEMPT"
        assert h.notifications == []
        assert h.record.approval_request_id is None

    @pytest.mark.asyncio
    async def test_expired_exemption_is_ignored(self, harness, clock):
        """Should request approval once an exemption has lapsed."""
        lapsed = (clock.now() - timedelta(days=1)).isoformat()
        h = harness(
            gates=[{"name": "suspend-gate", "approver_roles": ["security_lead"],
                    "exemptions": [{"user_ids": ["user-123"], "valid_until": lapsed}]}],
            on_notify=lambda h, ids, r: h.vote(r.id, "alice"),
        )

        decision = await h.evaluate()

        assert decision.passed
        assert decision.reason == "QUORUM_REACHED"
        assert decision.approved_by == ["alice"]

    @pytest.mark.asyncio
    async def test_auto_approval(self, harness):
        """Should pass when the auto-approval predicate holds."""
        h = harness(gates=[{"name": "suspend-gate", "auto_approval": "confidence_score >= 90"}])

        decision = await h.evaluate()

        assert decision.passed
        assert decision.reason == "AUTO_APPROVED"
        gate_events = [e for e in h.execution.audit_trail if e.event_type == AuditEventType.GATE_PASSED]
        assert gate_events[0].detail["reason"] == "AUTO_APPROVED"

    @pytest.mark.asyncio
    async def test_no_approvers_denies(self, harness):
        """Should deny when no approver can be resolved."""
        h = harness(gates=[{"name": "suspend-gate", "approver_roles": ["incident_commander"]}])

        decision = await h.evaluate()

        assert not decision.passed
        assert decision.reason == "NO_APPROVERS_AVAILABLE"
        assert h.store.list_pending() == []


class TestVoting:
    """Tests for requests resolved by votes."""

    @pytest.mark.asyncio
    async def test_quorum_of_two(self, harness):
        """Should wait for the second distinct approval."""
        def on_notify(h, ids, request):
            h.vote(request.id, "alice")
            h.vote(request.id, "bob")

        h = harness(
            gates=[{"name": "two-person", "required_approvers": 2, "approver_roles": ["security_lead"]}],
            on_notify=on_notify,
        )

        decision = await h.evaluate()

        assert decision.passed
        assert sorted(decision.approved_by) == ["alice", "bob"]
        assert h.record.status == ActionStatus.APPROVAL_PENDING
        synced = h.execution.get_approval(h.record.approval_request_id)
        assert synced.status == ApprovalStatus.APPROVED
        decisions = [e for e in h.execution.audit_trail if e.event_type == AuditEventType.APPROVAL_DECISION]
        assert [e.actor for e in decisions] == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_single_denial_wins(self, harness):
        """Should deny on one DENY even after an approval."""
        def on_notify(h, ids, request):
            h.vote(request.id, "alice")
            h.vote(request.id, "bob", "DENY")

        h = harness(
            gates=[{"name": "two-person", "required_approvers": 2, "approver_roles": ["security_lead"]}],
            on_notify=on_notify,
        )

        decision = await h.evaluate()

        assert not decision.passed
        assert decision.reason == "APPROVAL_DENIED"
        assert h.request().status == ApprovalStatus.DENIED

    @pytest.mark.asyncio
    async def test_polls_until_vote_arrives(self, harness, clock):
        """Should keep polling and renewing the lease while waiting."""
        h = harness(gates=[{"name": "suspend-gate", "approver_roles": ["security_lead"]}],
                    approval_poll_seconds=5)
        waits = []

        original = clock.wait_for_event

        async def wait_then_vote(event, timeout):
            waits.append(timeout)
            if len(waits) == 3:
                h.vote(h.record.approval_request_id, "bob")
            return await original(event, timeout)

        clock.wait_for_event = wait_then_vote
        decision = await h.evaluate()

        assert decision.passed
        assert waits[:3] == [5, 5, 5]
        assert h.writer.heartbeat.call_count >= 3


class TestExpiry:
    """Tests for escalation and fallback after a request expires."""

    @pytest.mark.asyncio
    async def test_escalation_then_deny(self, harness):
        """Should escalate once, then deny with APPROVAL_TIMEOUT."""
        def on_notify(h, ids, request):
            if request.escalation_level == 0:
                h.vote(request.id, "alice")

        h = harness(
            gates=[{
                "name": "two-person",
                "required_approvers": 2,
                "approver_roles": ["security_lead"],
                "approval_timeout_ms": 60000,
                "escalation_path": [{"delay_ms": 120000, "escalate_to": ["ciso"]}],
                "fallback_behavior": "DENY_ACTION",
            }],
            on_notify=on_notify,
        )
        start = h.clock.now()

        decision = await h.evaluate()

        assert not decision.passed
        assert decision.reason == "APPROVAL_DENIED"
        request = h.request()
        assert request.status == ApprovalStatus.DENIED
        assert request.resolution_reason == "APPROVAL_TIMEOUT"
        assert request.escalation_level == 1
        assert "carol" in request.approver_ids
        assert h.notifications[1] == (1, ["carol"])
        assert h.clock.now() - start >= timedelta(seconds=180)
        types = [e.event_type for e in h.execution.audit_trail]
        assert AuditEventType.APPROVAL_ESCALATED in types
        assert AuditEventType.APPROVAL_FALLBACK in types

    @pytest.mark.asyncio
    async def test_escalated_approver_can_approve(self, harness):
        """Should accept a vote from an approver added by escalation."""
        def on_notify(h, ids, request):
            if request.escalation_level == 1:
                h.vote(request.id, "carol")

        h = harness(
            gates=[{
                "name": "suspend-gate",
                "approver_roles": ["security_lead"],
                "approval_timeout_ms": 10000,
                "escalation_path": [{"delay_ms": 10000, "escalate_to": "ciso"}],
            }],
            on_notify=on_notify,
        )

        decision = await h.evaluate()

        assert decision.passed
        assert decision.approved_by == ["carol"]

    @pytest.mark.asyncio
    async def test_allow_fallback(self, harness):
        """Should approve with a warning after the final timeout."""
        h = harness(gates=[{
            "name": "suspend-gate",
            "approver_roles": ["security_lead"],
            "approval_timeout_ms": 10000,
            "fallback_behavior": "ALLOW_ACTION",
        }])

        decision = await h.evaluate()

        assert decision.passed
        assert decision.reason == "FALLBACK_ALLOW"
        assert h.execution.warnings[0].code == "FALLBACK_ALLOW"
        assert h.request().status == ApprovalStatus.APPROVED

    @pytest.mark.asyncio
    async def test_escalate_to_human_holds_request(self, harness):
        """Should keep the request open for the hold period."""
        def on_notify(h, ids, request):
            if request.escalation_level == 1:
                h.vote(request.id, "bob")

        h = harness(
            gates=[{
                "name": "suspend-gate",
                "approver_roles": ["security_lead"],
                "approval_timeout_ms": 10000,
                "fallback_behavior": "ESCALATE_TO_HUMAN",
            }],
            on_notify=on_notify,
            approval_hold_seconds=60,
        )

        decision = await h.evaluate()

        assert decision.passed
        assert h.request().escalation_level == 1

    @pytest.mark.asyncio
    async def test_escalate_to_human_denies_after_hold(self, harness):
        """Should deny once the hold period also expires."""
        h = harness(
            gates=[{
                "name": "suspend-gate",
                "approver_roles": ["security_lead"],
                "approval_timeout_ms": 10000,
                "fallback_behavior": "ESCALATE_TO_HUMAN",
            }],
            approval_hold_seconds=60,
        )

        decision = await h.evaluate()

        assert not decision.passed
        assert h.request().resolution_reason == "APPROVAL_TIMEOUT"


class TestFailures:
    """Tests for notification failures and evaluator errors."""

    @staticmethod
    def failing_notify(h, ids, request):
        raise ConnectionError("chat webhook unreachable")

    @pytest.mark.asyncio
    async def test_notification_failure_denies(self, harness):
        """Should deny when notification fails under DENY_ACTION."""
        h = harness(
            gates=[{"name": "suspend-gate", "approver_roles": ["security_lead"]}],
            on_notify=self.failing_notify,
        )

        decision = await h.evaluate()

        assert not decision.passed
        assert h.request().resolution_reason == "NOTIFICATION_FAILED"
        failed = [e for e in h.execution.audit_trail if e.event_type == AuditEventType.NOTIFICATION_FAILED]
        assert "chat webhook unreachable" in failed[0].detail["error"]

    @pytest.mark.asyncio
    async def test_notification_failure_allows(self, harness):
        """Should approve with a warning when notification fails under ALLOW_ACTION."""
        h = harness(
            gates=[{"name": "suspend-gate", "approver_roles": ["security_lead"], "fallback_behavior": "ALLOW_ACTION"}],
            on_notify=self.failing_notify,
        )

        decision = await h.evaluate()

        assert decision.passed
        assert decision.reason == "FALLBACK_ALLOW"
        assert h.execution.warnings[0].code == "FALLBACK_ALLOW"

    @pytest.mark.asyncio
    async def test_evaluator_error_uses_fallback(self, harness):
        """Should apply the gate's fallback when resolving approvers raises."""
        directory = MagicMock()
        directory.users_for_role.side_effect = RuntimeError("directory offline")
        deny = harness(gates=[{"name": "g", "approver_roles": ["security_lead"]}], directory=directory)
        allow = harness(
            gates=[{"name": "g", "approver_roles": ["security_lead"], "fallback_behavior": "ALLOW_ACTION"}],
            directory=directory,
        )

        denied = await deny.evaluate()
        allowed = await allow.evaluate()

        assert not denied.passed
        assert denied.reason == "APPROVAL_DENIED"
        assert allowed.passed
        assert allowed.reason == "FALLBACK_ALLOW"

    @staticmethod
    def offline_directory():
        directory = MagicMock()
        directory.users_for_role.side_effect = RuntimeError("directory offline")
        return directory

    @staticmethod
    def held_gate(**role):
        return [{
            "name": "g",
            "approver_roles": [dict(role="security_lead", **role)],
            "fallback_behavior": "ESCALATE_TO_HUMAN",
        }]

    @pytest.mark.asyncio
    async def test_evaluator_error_holds_for_human_review(self, harness):
        """Should hold a request open for reachable users instead of denying."""
        def on_notify(h, ids, request):
            h.vote(request.id, "dave")

        h = harness(
            gates=self.held_gate(fallback_users=["dave"]),
            directory=self.offline_directory(),
            on_notify=on_notify,
            approval_hold_seconds=60,
        )

        decision = await h.evaluate()

        assert decision.passed
        assert decision.approved_by == ["dave"]
        assert h.notifications == [(1, ["dave"])]
        request = h.request()
        assert request.status == ApprovalStatus.APPROVED
        assert request.escalation_level == 1
        requested = [e for e in h.execution.audit_trail if e.event_type == AuditEventType.APPROVAL_REQUESTED]
        assert requested[0].detail["held"] is True
        types = [e.event_type for e in h.execution.audit_trail]
        assert types.index(AuditEventType.APPROVAL_FALLBACK) < types.index(AuditEventType.APPROVAL_REQUESTED)

    @pytest.mark.asyncio
    async def test_held_request_times_out(self, harness):
        """Should deny with APPROVAL_TIMEOUT only after the hold expires."""
        h = harness(
            gates=self.held_gate(fallback_users=["dave"]),
            directory=self.offline_directory(),
            approval_hold_seconds=60,
        )
        start = h.clock.now()

        decision = await h.evaluate()

        assert not decision.passed
        assert h.request().resolution_reason == "APPROVAL_TIMEOUT"
        assert h.clock.now() - start >= timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_evaluator_error_without_reviewers(self, harness):
        """Should deny with ESCALATION_UNAVAILABLE when nobody can take the decision."""
        h = harness(
            gates=self.held_gate(),
            directory=self.offline_directory(),
            approval_hold_seconds=60,
        )

        decision = await h.evaluate()

        assert not decision.passed
        assert decision.reason == "ESCALATION_UNAVAILABLE"
        assert h.record.approval_request_id is None
        assert h.notifications == []
        denied = [e for e in h.execution.audit_trail if e.event_type == AuditEventType.GATE_DENIED]
        assert denied[0].detail["reason"] == "ESCALATION_UNAVAILABLE"


class TestDenyPending:
    """Tests for denying open requests of an execution."""

    def test_denies_pending_requests(self, harness, clock):
        """Should resolve pending requests with the given reason."""
        h = harness()
        request = ApprovalRequest.create(
            execution_id=h.execution.id,
            action_id="suspend",
            gate_name="suspend-approval",
            required_approvers=1,
            approver_ids=["alice"],
            requested_at=clock.now(),
            expires_at=clock.now() + timedelta(hours=1),
        )
        h.store.create(request)
        h.execution.upsert_approval(request)

        h.evaluator.deny_pending(h.execution, "EXECUTION_CANCELLED", clock.now())

        stored = h.store.get(request.id)
        assert stored.status == ApprovalStatus.DENIED
        assert stored.resolution_reason == "EXECUTION_CANCELLED"
        assert h.execution.get_approval(request.id).status == ApprovalStatus.DENIED
