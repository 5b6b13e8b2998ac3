"""Integration tests for the incident playbook flow.

Tests:
- YAML playbook and policy files loaded through file stores
- Incident matching, staged execution and approval voting
- Templated parameters and conditional actions
- Rollback of the finished execution
"""

from typing import Any, Dict, List

import pytest

from src.shared.incident_playbooks.action_audit import ActionAuditLog
from src.shared.incident_playbooks.config import EngineConfig
from src.shared.incident_playbooks.engine import OrchestrationEngine
from src.shared.incident_playbooks.gate_evaluator import StaticApproverDirectory
from src.shared.incident_playbooks.handlers import ActionHandlerRegistry
from src.shared.incident_playbooks.models import ActionKind, ActionStatus, ApprovalStatus, ExecutionStatus
from src.shared.incident_playbooks.notifier import CallbackNotifier
from src.shared.incident_playbooks.playbook import PlaybookDefinition
from src.shared.incident_playbooks.playbook_store import FilePlaybookStore, FilePolicyStore
from src.shared.incident_playbooks.policy import ApprovalPolicy
from src.shared.incident_playbooks.service import PlaybookService

PLAYBOOK_YAML = """
id: pb-impossible-travel
name: Impossible travel containment
playbook_type: SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL
severity: HIGH
max_execution_time_ms: 3600000
rules:
  - id: travel-from-unexpected-country
    rule_type: SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL
    condition: incident.details.countries contains RU
stages:
  1:
    - id: revoke_sessions
      kind: SELECTIVE_TOKEN_REVOKE
      parameters:
        session_ids: "{{ incident.details.session_ids | join(',') }}"
    - id: step_up
      kind: STEP_UP_CHALLENGE
  2:
    - id: geo_lock
      kind: GEO_LOCK
      requires_approval: true
      condition: actions.revoke_sessions.status == SUCCESS
      parameters:
        block_ip: "{{ incident.details.source_ip }}"
      compensating_action:
        kind: GEO_UNLOCK
        parameters:
          unblock_ip: "{{ incident.details.source_ip }}"
  3:
    - id: notify_user
      kind: USER_NOTIFICATION
      parameters:
        message: "Sessions for {{ target_id }} were revoked"
"""

POLICY_YAML = """
id: geo-lock-two-person
name: Two-person rule for geo locks
scope: ACTION_TYPE_BASED
action_kinds: [GEO_LOCK]
priority: 10
gates:
  - name: two-person-geo-lock
    required_approvers: 2
    approver_roles: [security_lead]
    approval_timeout_ms: 900000
"""


class Recorder:
    """Records handler calls as (kind, params) pairs."""

    def __init__(self):
        self.calls: List[tuple] = []

    def handler(self, kind: ActionKind):
        def run(params: Dict[str, Any], context: Dict[str, Any]):
            self.calls.append((kind, params))
            return {"ok": True}
        return run


@pytest.fixture
def stores(tmp_path):
    playbooks = FilePlaybookStore(str(tmp_path))
    policies = FilePolicyStore(str(tmp_path))
    playbooks.save(PlaybookDefinition.from_yaml(PLAYBOOK_YAML))
    policies.save(ApprovalPolicy.from_yaml(POLICY_YAML))
    return tmp_path


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def service(stores, recorder, clock):
    holder = {}

    def on_notify(approver_ids, request):
        for approver in approver_ids:
            holder["service"].submit_approval_decision(request.id, approver, "APPROVE")

    engine = OrchestrationEngine(
        playbook_store=FilePlaybookStore(str(stores)),
        policy_store=FilePolicyStore(str(stores)),
        registry=ActionHandlerRegistry({kind: recorder.handler(kind) for kind in ActionKind}),
        notifier=CallbackNotifier(on_notify),
        directory=StaticApproverDirectory({"security_lead": ["alice", "bob"]}),
        clock=clock,
        config=EngineConfig(owner_id="engine-int"),
        audit_log=ActionAuditLog(),
    )
    holder["service"] = PlaybookService(engine)
    return holder["service"]


class TestIncidentPlaybookFlow:
    """End-to-end flow from incident to rollback."""

    @pytest.mark.asyncio
    async def test_incident_to_completion(self, service, recorder, incident):
        """Should match the YAML playbook and run every stage."""
        execution_id = await service.detect_and_orchestrate(incident, wait=True)

        execution = service.get_execution(execution_id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert [s.stage for s in execution.stages] == [1, 2, 3]

        params = dict(recorder.calls)
        assert params[ActionKind.SELECTIVE_TOKEN_REVOKE] == {"session_ids": "s-1,s-2"}
        assert params[ActionKind.GEO_LOCK] == {"block_ip": "203.0.113.7"}
        assert params[ActionKind.USER_NOTIFICATION] == {"message": "Sessions for user-123 were revoked"}

        geo_lock = execution.get_action("geo_lock")
        approval = service.approval_store.get(geo_lock.approval_request_id)
        assert approval.status == ApprovalStatus.APPROVED
        assert approval.gate_name == "two-person-geo-lock"
        assert sorted(approval.voter_ids) == ["alice", "bob"]

        metrics = service.get_metrics("pb-impossible-travel")
        assert metrics["total_executions"] == 1
        assert metrics["successful_executions"] == 1

    @pytest.mark.asyncio
    async def test_rollback_undoes_geo_lock(self, service, recorder, incident):
        """Should run the compensating unlock when the execution is rolled back."""
        execution_id = await service.detect_and_orchestrate(incident, wait=True)

        rolled_back = await service.rollback_execution(execution_id)

        assert rolled_back.status == ExecutionStatus.ROLLED_BACK
        geo_lock = rolled_back.get_action("geo_lock")
        assert geo_lock.status == ActionStatus.COMPENSATED
        assert recorder.calls[-1] == (ActionKind.GEO_UNLOCK, {"unblock_ip": "203.0.113.7"})
        assert rolled_back.get_action("revoke_sessions").status == ActionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_unmatched_incident(self, service, incident):
        """Should not start anything when the rule condition fails."""
        incident["details"]["countries"] = ["US"]

        assert await service.detect_and_orchestrate(incident) is None
        assert service.list_executions() == []
