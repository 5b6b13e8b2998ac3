"""Execution Store for incident playbook runs.

Executions are persisted whole, with their action records, approval
snapshots and audit trail embedded. Every write is conditional on the
version the writer last read; a mismatch surfaces as
ConcurrentModificationError and the caller reloads and retries.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from botocore.exceptions import ClientError

from .errors import ConcurrentModificationError, ExecutionNotFoundError
from .execution import Execution
from .models import ExecutionStatus
from .storage import (
    dynamodb_table,
    from_dynamodb_item,
    is_conditional_check_failure,
    strip_keys,
    to_dynamodb_item,
)

logger = logging.getLogger(__name__)


class ExecutionStore(ABC):
    """Abstract base class for execution storage backends."""

    @abstractmethod
    def get(self, execution_id: str) -> Optional[Execution]:
        """Get an execution by ID.

        Args:
            execution_id: ID of execution to retrieve

        Returns:
            Execution or None if not found
        """
        pass

    @abstractmethod
    def save(self, execution: Execution) -> int:
        """Save an execution if nobody else wrote it since it was read.

        On success the execution's ``version`` is incremented in place.

        Args:
            execution: Execution to save

        Returns:
            The new version

        Raises:
            ConcurrentModificationError: If the stored version differs
        """
        pass

    @abstractmethod
    def list(
        self,
        playbook_id: Optional[str] = None,
        target_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Execution]:
        """List executions newest first with optional filters."""
        pass

    def load(self, execution_id: str) -> Execution:
        """Get an execution or raise ExecutionNotFoundError."""
        execution = self.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution


class InMemoryExecutionStore(ExecutionStore):
    """In-memory execution store for testing and development.

    Records are kept serialised so callers never share objects with the
    store.
    """

    def __init__(self):
        self._executions: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            data = self._executions.get(execution_id)
        return Execution.from_dict(data) if data else None

    def save(self, execution: Execution) -> int:
        with self._lock:
            stored = self._executions.get(execution.id)
            stored_version = stored["version"] if stored else 0
            if stored_version != execution.version:
                raise ConcurrentModificationError(execution.id, execution.version)

            new_version = execution.version + 1
            data = execution.to_dict()
            data["version"] = new_version
            self._executions[execution.id] = data

        execution.version = new_version
        return new_version

    def list(
        self,
        playbook_id: Optional[str] = None,
        target_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Execution]:
        with self._lock:
            executions = [Execution.from_dict(d) for d in self._executions.values()]

        if playbook_id:
            executions = [e for e in executions if e.playbook_id == playbook_id]
        if target_id:
            executions = [e for e in executions if e.target_id == target_id]
        if status:
            executions = [e for e in executions if e.status == status]

        executions.sort(key=lambda e: e.started_at, reverse=True)
        return executions[offset : offset + limit]


class DynamoDBExecutionStore(ExecutionStore):
    """DynamoDB-backed execution store for production use.

    Table layout: ``pk`` = execution ID, ``sk`` = "EXECUTION", with GSIs
    ``playbook-index`` (playbook_pk, started_at), ``target-index``
    (target_pk, started_at) and ``status-index`` (status_pk, started_at).
    """

    KEY_ATTRIBUTES = ("pk", "sk", "playbook_pk", "target_pk", "status_pk")

    def __init__(
        self,
        table_name: str = "incident-playbook-executions",
        region: Optional[str] = None,
    ):
        """Initialize DynamoDB execution store.

        Args:
            table_name: DynamoDB table name
            region: AWS region (default: use environment)
        """
        self.table_name = table_name
        self.region = region
        self._table = None

    @property
    def table(self):
        """Lazy-load DynamoDB table resource."""
        if self._table is None:
            self._table = dynamodb_table(self.table_name, self.region)
        return self._table

    def _to_execution(self, item: dict) -> Execution:
        return Execution.from_dict(strip_keys(from_dynamodb_item(item), *self.KEY_ATTRIBUTES))

    def get(self, execution_id: str) -> Optional[Execution]:
        response = self.table.get_item(
            Key={"pk": execution_id, "sk": "EXECUTION"},
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        return self._to_execution(item)

    def save(self, execution: Execution) -> int:
        new_version = execution.version + 1
        data = execution.to_dict()
        data["version"] = new_version

        item = to_dynamodb_item(data)
        item["pk"] = execution.id
        item["sk"] = "EXECUTION"
        item["playbook_pk"] = execution.playbook_id
        item["target_pk"] = execution.target_id
        item["status_pk"] = execution.status.value

        if execution.version == 0:
            condition = {"ConditionExpression": "attribute_not_exists(pk)"}
        else:
            condition = {
                "ConditionExpression": "version = :expected",
                "ExpressionAttributeValues": {":expected": execution.version},
            }

        try:
            self.table.put_item(Item=item, **condition)
        except ClientError as e:
            if is_conditional_check_failure(e):
                raise ConcurrentModificationError(execution.id, execution.version) from e
            logger.error(f"Error saving execution {execution.id}: {e}")
            raise

        execution.version = new_version
        logger.debug(f"Saved execution {execution.id} at version {new_version}")
        return new_version

    def list(
        self,
        playbook_id: Optional[str] = None,
        target_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Execution]:
        if playbook_id:
            response = self.table.query(
                IndexName="playbook-index",
                KeyConditionExpression="playbook_pk = :pk",
                ExpressionAttributeValues={":pk": playbook_id},
                ScanIndexForward=False,
            )
        elif target_id:
            response = self.table.query(
                IndexName="target-index",
                KeyConditionExpression="target_pk = :pk",
                ExpressionAttributeValues={":pk": target_id},
                ScanIndexForward=False,
            )
        elif status:
            response = self.table.query(
                IndexName="status-index",
                KeyConditionExpression="status_pk = :status",
                ExpressionAttributeValues={":status": status.value},
                ScanIndexForward=False,
            )
        else:
            # Scan all (not recommended for large tables)
            response = self.table.scan()

        executions = [self._to_execution(item) for item in response.get("Items", [])]

        # Index queries cover one filter; apply the rest here
        if target_id:
            executions = [e for e in executions if e.target_id == target_id]
        if status:
            executions = [e for e in executions if e.status == status]

        executions.sort(key=lambda e: e.started_at, reverse=True)
        return executions[offset : offset + limit]


def get_execution_store(store_type: Optional[str] = None, **kwargs) -> ExecutionStore:
    """Factory function to get an execution store instance.

    Args:
        store_type: Type of store ("memory" or "dynamodb")
        **kwargs: Store-specific configuration

    Returns:
        ExecutionStore instance
    """
    if store_type is None:
        store_type = os.environ.get("EXECUTION_STORE_TYPE", "memory")

    if store_type == "dynamodb":
        return DynamoDBExecutionStore(
            table_name=kwargs.get(
                "table_name",
                os.environ.get("EXECUTION_TABLE_NAME", "incident-playbook-executions"),
            ),
            region=kwargs.get("region", os.environ.get("AWS_REGION")),
        )

    return InMemoryExecutionStore()
