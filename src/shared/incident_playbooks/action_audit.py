"""Per-action audit ledger.

Alongside each execution's embedded audit trail, every action that reaches
a terminal status is written once to a flat ledger. The ledger is queryable
by execution and by target account, which is what compliance reviews and
forensics ask for.
"""

import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .execution import ActionExecution, Execution
from .storage import dynamodb_table, from_dynamodb_item, strip_keys, to_dynamodb_item

logger = logging.getLogger(__name__)


@dataclass
class ActionAuditEntry:
    """A single action outcome recorded for audit purposes.

    Attributes:
        id: Unique entry ID
        timestamp: When the action reached its terminal status
        execution_id: Execution the action ran in
        playbook_id: Playbook the action belongs to
        action_id: Action identifier
        kind: Action kind
        target_id: Account the action was applied to
        status: Terminal action status
        approval_status: Status of the gating approval request, if any
        retry_count: Retries after the first attempt
        compensation_status: Status of the compensating action, if any
        error: Last error message
        reason: Machine-readable failure reason
        duration_ms: Time from first attempt to terminal status
        idempotency_key: Action idempotency key
        dry_run: Whether the action was simulated
    """
    id: str
    timestamp: datetime
    execution_id: str
    playbook_id: str
    action_id: str
    kind: str
    target_id: str
    status: str
    approval_status: Optional[str] = None
    retry_count: int = 0
    compensation_status: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    duration_ms: Optional[int] = None
    idempotency_key: str = ""
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "execution_id": self.execution_id,
            "playbook_id": self.playbook_id,
            "action_id": self.action_id,
            "kind": self.kind,
            "target_id": self.target_id,
            "status": self.status,
            "approval_status": self.approval_status,
            "retry_count": self.retry_count,
            "compensation_status": self.compensation_status,
            "error": self.error,
            "reason": self.reason,
            "duration_ms": self.duration_ms,
            "idempotency_key": self.idempotency_key,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionAuditEntry":
        """Create from dictionary."""
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))

        return cls(
            id=data.get("id", str(uuid.uuid4())),
            timestamp=timestamp,
            execution_id=data.get("execution_id", ""),
            playbook_id=data.get("playbook_id", ""),
            action_id=data.get("action_id", ""),
            kind=data.get("kind", ""),
            target_id=data.get("target_id", ""),
            status=data.get("status", ""),
            approval_status=data.get("approval_status"),
            retry_count=int(data.get("retry_count", 0)),
            compensation_status=data.get("compensation_status"),
            error=data.get("error"),
            reason=data.get("reason"),
            duration_ms=data.get("duration_ms"),
            idempotency_key=data.get("idempotency_key", ""),
            dry_run=data.get("dry_run", False),
        )


class ActionAuditStore(ABC):
    """Abstract base class for action audit storage."""

    @abstractmethod
    def save(self, entry: ActionAuditEntry) -> str:
        """Save an audit entry."""
        pass

    @abstractmethod
    def get_by_execution(self, execution_id: str, limit: int = 100) -> List[ActionAuditEntry]:
        """Get audit entries for an execution."""
        pass

    @abstractmethod
    def get_by_target(
        self,
        target_id: str,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ActionAuditEntry]:
        """Get audit entries for a target account, newest first."""
        pass


class InMemoryActionAuditStore(ActionAuditStore):
    """In-memory action audit store for testing and development."""

    def __init__(self):
        self._entries: Dict[str, ActionAuditEntry] = {}

    def save(self, entry: ActionAuditEntry) -> str:
        self._entries[entry.id] = entry
        return entry.id

    def get_by_execution(self, execution_id: str, limit: int = 100) -> List[ActionAuditEntry]:
        entries = [e for e in self._entries.values() if e.execution_id == execution_id]
        entries.sort(key=lambda e: e.timestamp)
        return entries[:limit]

    def get_by_target(
        self,
        target_id: str,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ActionAuditEntry]:
        entries = [e for e in self._entries.values() if e.target_id == target_id]
        if since:
            entries = [e for e in entries if e.timestamp >= since]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]


class DynamoDBActionAuditStore(ActionAuditStore):
    """DynamoDB-backed action audit store for production use.

    Table layout: ``pk`` = entry ID, ``sk`` = timestamp, with GSIs
    ``execution-index`` (execution_pk, sk) and ``target-index``
    (target_pk, sk).
    """

    KEY_ATTRIBUTES = ("pk", "sk", "execution_pk", "target_pk", "ttl")

    def __init__(
        self,
        table_name: str = "incident-playbook-action-audit",
        region: Optional[str] = None,
        retention_days: int = 365,
    ):
        """Initialize DynamoDB action audit store.

        Args:
            table_name: DynamoDB table name
            region: AWS region
            retention_days: TTL for audit entries
        """
        self.table_name = table_name
        self.region = region
        self.retention_days = retention_days
        self._table = None

    @property
    def table(self):
        """Lazy-load DynamoDB table."""
        if self._table is None:
            self._table = dynamodb_table(self.table_name, self.region)
        return self._table

    def _to_entry(self, item: dict) -> ActionAuditEntry:
        return ActionAuditEntry.from_dict(strip_keys(from_dynamodb_item(item), *self.KEY_ATTRIBUTES))

    def save(self, entry: ActionAuditEntry) -> str:
        item = to_dynamodb_item(entry.to_dict())
        item["pk"] = entry.id
        item["sk"] = entry.timestamp.isoformat()
        item["execution_pk"] = entry.execution_id
        item["target_pk"] = entry.target_id
        item["ttl"] = int((entry.timestamp + timedelta(days=self.retention_days)).timestamp())

        self.table.put_item(Item=item)
        return entry.id

    def get_by_execution(self, execution_id: str, limit: int = 100) -> List[ActionAuditEntry]:
        response = self.table.query(
            IndexName="execution-index",
            KeyConditionExpression="execution_pk = :eid",
            ExpressionAttributeValues={":eid": execution_id},
            Limit=limit,
        )
        return [self._to_entry(item) for item in response.get("Items", [])]

    def get_by_target(
        self,
        target_id: str,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ActionAuditEntry]:
        response = self.table.query(
            IndexName="target-index",
            KeyConditionExpression="target_pk = :target",
            ExpressionAttributeValues={":target": target_id},
            ScanIndexForward=False,
        )
        entries = [self._to_entry(item) for item in response.get("Items", [])]
        if since:
            entries = [e for e in entries if e.timestamp >= since]
        return entries[:limit]


class ActionAuditLog:
    """Service writing and reading the per-action audit ledger."""

    def __init__(self, store: Optional[ActionAuditStore] = None):
        """Initialize action audit log.

        Args:
            store: Action audit store backend
        """
        self.store = store or InMemoryActionAuditStore()

    def record(
        self,
        execution: Execution,
        action: ActionExecution,
        at: datetime,
        dry_run: bool = False,
    ) -> str:
        """Record a terminal action outcome.

        Args:
            execution: Execution the action belongs to
            action: Terminal action record
            at: Timestamp of the entry
            dry_run: Whether the action was simulated

        Returns:
            Audit entry ID
        """
        approval = execution.get_approval(action.approval_request_id) if action.approval_request_id else None
        entry = ActionAuditEntry(
            id=str(uuid.uuid4()),
            timestamp=at,
            execution_id=execution.id,
            playbook_id=execution.playbook_id,
            action_id=action.action_id,
            kind=action.kind,
            target_id=execution.target_id,
            status=action.status.value,
            approval_status=approval.status.value if approval else None,
            retry_count=action.retry_count,
            compensation_status=action.compensation.status.value if action.compensation else None,
            error=action.error,
            reason=action.reason,
            duration_ms=action.duration_ms,
            idempotency_key=action.idempotency_key,
            dry_run=dry_run,
        )

        entry_id = self.store.save(entry)
        logger.info(
            f"Audited action: {action.kind} for {execution.target_id}, "
            f"status: {action.status.value}, execution: {execution.id}"
        )
        return entry_id

    def get_actions(self, execution_id: str, limit: int = 100) -> List[ActionAuditEntry]:
        return self.store.get_by_execution(execution_id, limit)

    def get_target_history(
        self,
        target_id: str,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ActionAuditEntry]:
        return self.store.get_by_target(target_id, since=since, limit=limit)


def get_action_audit_log(store_type: Optional[str] = None, **kwargs) -> ActionAuditLog:
    """Factory function to get an action audit log instance.

    Args:
        store_type: Type of store ("memory" or "dynamodb")
        **kwargs: Store-specific configuration

    Returns:
        ActionAuditLog instance
    """
    if store_type is None:
        store_type = os.environ.get("ACTION_AUDIT_STORE_TYPE", "memory")

    if store_type == "dynamodb":
        store = DynamoDBActionAuditStore(
            table_name=kwargs.get(
                "table_name",
                os.environ.get("ACTION_AUDIT_TABLE_NAME", "incident-playbook-action-audit"),
            ),
            region=kwargs.get("region", os.environ.get("AWS_REGION")),
        )
    else:
        store = InMemoryActionAuditStore()

    return ActionAuditLog(store=store)
