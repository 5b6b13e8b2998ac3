"""
Incident Playbooks - Root Test Configuration

Pytest fixtures and configuration for all tests.
"""

import sys
from pathlib import Path

# Add src directory to Python path for imports
ROOT_DIR = Path(__file__).parent.parent
SRC_DIR = ROOT_DIR / 'src'
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import boto3
import pytest
from moto import mock_aws

from src.shared.incident_playbooks.action_audit import ActionAuditLog
from src.shared.incident_playbooks.approval_store import InMemoryApprovalStore
from src.shared.incident_playbooks.config import EngineConfig
from src.shared.incident_playbooks.engine import OrchestrationEngine
from src.shared.incident_playbooks.execution_store import InMemoryExecutionStore
from src.shared.incident_playbooks.gate_evaluator import StaticApproverDirectory
from src.shared.incident_playbooks.handlers import ActionHandlerRegistry
from src.shared.incident_playbooks.playbook import PlaybookDefinition
from src.shared.incident_playbooks.playbook_store import InMemoryPlaybookStore, InMemoryPolicyStore


class FakeClock:
    """Virtual clock: sleeps and timed waits advance time instantly.

    Waiting on an event first yields to the event loop a few times so
    concurrently scheduled work (votes, cancels) gets to run before the
    timeout is applied.
    """

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        self.sleeps: List[float] = []
        self.waits: List[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)
        self.advance(seconds)

    async def wait_for_event(self, event: asyncio.Event, timeout: float) -> bool:
        self.waits.append(timeout)
        for _ in range(5):
            if event.is_set():
                return True
            await asyncio.sleep(0)
        if event.is_set():
            return True
        self.advance(timeout)
        return False


@pytest.fixture
def mock_aws_credentials(monkeypatch):
    """Mock AWS credentials for testing"""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb_resource(mock_aws_credentials):
    """Mock DynamoDB resource"""
    with mock_aws():
        yield boto3.resource('dynamodb', region_name='us-east-1')


@pytest.fixture
def clock():
    """Virtual clock shared by an engine and its collaborators"""
    return FakeClock()


@pytest.fixture
def incident() -> Dict[str, Any]:
    """Impossible-travel incident against user-123"""
    return {
        'incident_id': 'inc-1001',
        'incident_type': 'SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL',
        'target_id': 'user-123',
        'severity': 'HIGH',
        'confidence_score': 92,
        'target_roles': ['employee'],
        'details': {
            'source_ip': '203.0.113.7',
            'countries': ['US', 'RU'],
            'session_ids': ['s-1', 's-2'],
        },
    }


@pytest.fixture
def make_playbook():
    """Factory for playbooks; keyword arguments override top-level fields"""
    def _make(actions: List[Dict[str, Any]], **overrides) -> PlaybookDefinition:
        data = {
            'id': 'pb-impossible-travel',
            'name': 'Impossible travel response',
            'playbook_type': 'SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL',
            'severity': 'HIGH',
            'rules': [{'id': 'rule-1', 'rule_type': 'SUSPICIOUS_LOGIN_IMPOSSIBLE_TRAVEL'}],
            'actions': actions,
            'max_execution_time_ms': 86400000,
        }
        data.update(overrides)
        return PlaybookDefinition.from_dict(data)
    return _make


@pytest.fixture
def build_engine(clock):
    """Factory for engines wired to in-memory stores and the virtual clock"""
    def _build(
        playbooks=(),
        handlers=None,
        policies=None,
        approvers=None,
        notifier=None,
        execution_store=None,
        approval_store=None,
        playbook_store=None,
        audit_log=None,
        owner_id='engine-a',
        **config,
    ) -> OrchestrationEngine:
        if playbook_store is None:
            playbook_store = InMemoryPlaybookStore(list(playbooks))
        return OrchestrationEngine(
            execution_store=execution_store or InMemoryExecutionStore(),
            playbook_store=playbook_store,
            registry=ActionHandlerRegistry(handlers or {}),
            approval_store=approval_store or InMemoryApprovalStore(),
            policy_store=InMemoryPolicyStore(policies or []),
            notifier=notifier,
            directory=StaticApproverDirectory(approvers or {}),
            clock=clock,
            config=EngineConfig(owner_id=owner_id, **config),
            audit_log=audit_log or ActionAuditLog(),
        )
    return _build


@pytest.fixture
def temp_playbook_directory(tmp_path):
    """Create temporary directory for playbook and policy files"""
    playbook_dir = tmp_path / "playbooks"
    playbook_dir.mkdir()
    return playbook_dir
