"""Approval request storage.

Votes are the one mutation that arrives from outside the engine, typically
from several approvers at once. Every backend therefore records a vote with
an atomic append-if-not-already-voted, and resolves a request with a
compare-and-set on its PENDING status, so concurrent voters never lose each
other's updates.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from botocore.exceptions import ClientError

from .errors import AlreadyVotedError, ApprovalClosedError, ApprovalNotFoundError
from .execution import ApprovalRequest, Vote
from .models import ApprovalStatus, Decision
from .storage import (
    dynamodb_table,
    from_dynamodb_item,
    is_conditional_check_failure,
    strip_keys,
    to_dynamodb_item,
)

logger = logging.getLogger(__name__)


class ApprovalStore(ABC):
    """Abstract base class for approval request storage."""

    @abstractmethod
    def create(self, request: ApprovalRequest) -> str:
        """Persist a new approval request."""
        pass

    @abstractmethod
    def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        """Get an approval request by ID."""
        pass

    @abstractmethod
    def record_vote(self, approval_id: str, vote: Vote) -> ApprovalRequest:
        """Atomically append a vote and apply the quorum rule.

        Args:
            approval_id: Request to vote on
            vote: The approver's decision

        Returns:
            The request after the vote

        Raises:
            ApprovalNotFoundError: If the request does not exist
            ApprovalClosedError: If the request already resolved
            ApproverNotAuthorizedError: If the voter is not an approver
            AlreadyVotedError: If the voter already voted
        """
        pass

    @abstractmethod
    def resolve(
        self, approval_id: str, status: ApprovalStatus, reason: str, at: datetime
    ) -> ApprovalRequest:
        """Resolve a request if it is still pending.

        Returns:
            The request after the call; if it had already resolved, its
            existing resolution is kept and returned
        """
        pass

    @abstractmethod
    def escalate(
        self,
        approval_id: str,
        level: int,
        expires_at: datetime,
        approver_ids: List[str],
    ) -> ApprovalRequest:
        """Record an escalation level and widen the approver set."""
        pass

    @abstractmethod
    def list_pending(self, approver_id: Optional[str] = None, limit: int = 100) -> List[ApprovalRequest]:
        """List pending requests, newest first."""
        pass

    @abstractmethod
    def list_by_execution(self, execution_id: str) -> List[ApprovalRequest]:
        """List requests raised by an execution."""
        pass


class InMemoryApprovalStore(ApprovalStore):
    """In-memory approval store for testing and development."""

    def __init__(self):
        self._requests: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def _load(self, approval_id: str) -> ApprovalRequest:
        data = self._requests.get(approval_id)
        if data is None:
            raise ApprovalNotFoundError(approval_id)
        return ApprovalRequest.from_dict(data)

    def create(self, request: ApprovalRequest) -> str:
        with self._lock:
            self._requests[request.id] = request.to_dict()
        return request.id

    def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            data = self._requests.get(approval_id)
        return ApprovalRequest.from_dict(data) if data else None

    def record_vote(self, approval_id: str, vote: Vote) -> ApprovalRequest:
        with self._lock:
            request = self._load(approval_id)
            request.record_vote(vote)
            self._requests[approval_id] = request.to_dict()
            return request

    def resolve(
        self, approval_id: str, status: ApprovalStatus, reason: str, at: datetime
    ) -> ApprovalRequest:
        with self._lock:
            request = self._load(approval_id)
            if request.is_pending:
                if status == ApprovalStatus.APPROVED and request.has_denial:
                    request.resolve(ApprovalStatus.DENIED, "APPROVAL_DENIED", at)
                else:
                    request.resolve(status, reason, at)
                self._requests[approval_id] = request.to_dict()
            return request

    def escalate(
        self,
        approval_id: str,
        level: int,
        expires_at: datetime,
        approver_ids: List[str],
    ) -> ApprovalRequest:
        with self._lock:
            request = self._load(approval_id)
            if not request.is_pending:
                return request
            request.escalation_level = level
            request.expires_at = expires_at
            request.approver_ids = approver_ids
            self._requests[approval_id] = request.to_dict()
            return request

    def list_pending(self, approver_id: Optional[str] = None, limit: int = 100) -> List[ApprovalRequest]:
        with self._lock:
            requests = [ApprovalRequest.from_dict(d) for d in self._requests.values()]

        pending = [
            r for r in requests
            if r.is_pending and (approver_id is None or approver_id in r.approver_ids)
        ]
        pending.sort(key=lambda r: r.requested_at, reverse=True)
        return pending[:limit]

    def list_by_execution(self, execution_id: str) -> List[ApprovalRequest]:
        with self._lock:
            requests = [ApprovalRequest.from_dict(d) for d in self._requests.values()]
        return [r for r in requests if r.execution_id == execution_id]


class DynamoDBApprovalStore(ApprovalStore):
    """DynamoDB-backed approval store for production use.

    Table layout: ``pk`` = approval ID, ``sk`` = "APPROVAL", with a GSI
    ``execution-index`` on ``execution_pk`` and ``status-index`` on
    ``status_pk``/``requested_at``.
    """

    KEY_ATTRIBUTES = ("pk", "sk", "execution_pk", "status_pk", "deny_count")

    def __init__(
        self,
        table_name: str = "incident-playbook-approvals",
        region: Optional[str] = None,
    ):
        """Initialize DynamoDB approval store.

        Args:
            table_name: DynamoDB table name
            region: AWS region
        """
        self.table_name = table_name
        self.region = region
        self._table = None

    @property
    def table(self):
        """Lazy-load DynamoDB table."""
        if self._table is None:
            self._table = dynamodb_table(self.table_name, self.region)
        return self._table

    def _key(self, approval_id: str) -> dict:
        return {"pk": approval_id, "sk": "APPROVAL"}

    def _to_request(self, item: dict) -> ApprovalRequest:
        return ApprovalRequest.from_dict(strip_keys(from_dynamodb_item(item), *self.KEY_ATTRIBUTES))

    def _load(self, approval_id: str) -> ApprovalRequest:
        request = self.get(approval_id)
        if request is None:
            raise ApprovalNotFoundError(approval_id)
        return request

    def create(self, request: ApprovalRequest) -> str:
        item = to_dynamodb_item(request.to_dict())
        item.update(self._key(request.id))
        item["execution_pk"] = request.execution_id
        item["status_pk"] = request.status.value
        item["deny_count"] = sum(1 for v in request.votes if v.decision == Decision.DENY)

        self.table.put_item(Item=item, ConditionExpression="attribute_not_exists(pk)")
        logger.info(f"Created approval request: {request.id}")
        return request.id

    def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        response = self.table.get_item(Key=self._key(approval_id), ConsistentRead=True)
        item = response.get("Item")
        if not item:
            return None
        return self._to_request(item)

    def _append_vote(self, approval_id: str, vote: Vote) -> ApprovalRequest:
        """Append a vote unless the voter already voted or the request closed.

        ``deny_count`` is bumped in the same write so an APPROVED resolution
        can be conditioned on it.
        """
        try:
            response = self.table.update_item(
                Key=self._key(approval_id),
                UpdateExpression=(
                    "SET votes = list_append(votes, :vote), "
                    "voter_ids = list_append(voter_ids, :voter_list), "
                    "deny_count = if_not_exists(deny_count, :zero) + :denied"
                ),
                ConditionExpression="NOT contains(voter_ids, :voter) AND #status = :pending",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":vote": [to_dynamodb_item(vote.to_dict())],
                    ":voter_list": [vote.approver_id],
                    ":voter": vote.approver_id,
                    ":pending": ApprovalStatus.PENDING.value,
                    ":zero": 0,
                    ":denied": 1 if vote.decision == Decision.DENY else 0,
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if not is_conditional_check_failure(e):
                logger.error(f"Error recording vote on {approval_id}: {e}")
                raise
            latest = self._load(approval_id)
            if not latest.is_pending:
                raise ApprovalClosedError(approval_id, latest.status.value) from e
            raise AlreadyVotedError(approval_id, vote.approver_id) from e
        return self._to_request(response["Attributes"])

    def record_vote(self, approval_id: str, vote: Vote) -> ApprovalRequest:
        current = self._load(approval_id)
        current.check_can_vote(vote.approver_id)

        request = self._append_vote(approval_id, vote)
        if request.has_denial:
            return self.resolve(approval_id, ApprovalStatus.DENIED, "APPROVAL_DENIED", vote.timestamp)
        if request.approval_count >= request.required_approvers:
            return self.resolve(approval_id, ApprovalStatus.APPROVED, "QUORUM_REACHED", vote.timestamp)
        return request

    def resolve(
        self, approval_id: str, status: ApprovalStatus, reason: str, at: datetime
    ) -> ApprovalRequest:
        condition = "#status = :pending"
        values = {
            ":status": status.value,
            ":reason": reason,
            ":at": at.isoformat(),
            ":pending": ApprovalStatus.PENDING.value,
        }
        if status == ApprovalStatus.APPROVED:
            # A deny appended after the caller read the votes must win
            condition += " AND (attribute_not_exists(deny_count) OR deny_count = :zero)"
            values[":zero"] = 0

        try:
            response = self.table.update_item(
                Key=self._key(approval_id),
                UpdateExpression="SET #status = :status, status_pk = :status, resolution_reason = :reason, resolved_at = :at",
                ConditionExpression=condition,
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if not is_conditional_check_failure(e):
                logger.error(f"Error resolving approval {approval_id}: {e}")
                raise
            latest = self._load(approval_id)
            if latest.is_pending and latest.has_denial:
                logger.warning(f"Approval {approval_id} received a denial before {status.value} could be recorded")
                return self.resolve(approval_id, ApprovalStatus.DENIED, "APPROVAL_DENIED", at)
            return latest
        return self._to_request(response["Attributes"])

    def escalate(
        self,
        approval_id: str,
        level: int,
        expires_at: datetime,
        approver_ids: List[str],
    ) -> ApprovalRequest:
        try:
            response = self.table.update_item(
                Key=self._key(approval_id),
                UpdateExpression="SET escalation_level = :level, expires_at = :expires, approver_ids = :approvers",
                ConditionExpression="#status = :pending",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":level": level,
                    ":expires": expires_at.isoformat(),
                    ":approvers": list(approver_ids),
                    ":pending": ApprovalStatus.PENDING.value,
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if not is_conditional_check_failure(e):
                logger.error(f"Error escalating approval {approval_id}: {e}")
                raise
            return self._load(approval_id)
        return self._to_request(response["Attributes"])

    def list_pending(self, approver_id: Optional[str] = None, limit: int = 100) -> List[ApprovalRequest]:
        response = self.table.query(
            IndexName="status-index",
            KeyConditionExpression="status_pk = :status",
            ExpressionAttributeValues={":status": ApprovalStatus.PENDING.value},
            ScanIndexForward=False,
        )
        requests = [self._to_request(item) for item in response.get("Items", [])]
        if approver_id:
            requests = [r for r in requests if approver_id in r.approver_ids]
        return requests[:limit]

    def list_by_execution(self, execution_id: str) -> List[ApprovalRequest]:
        response = self.table.query(
            IndexName="execution-index",
            KeyConditionExpression="execution_pk = :execution",
            ExpressionAttributeValues={":execution": execution_id},
        )
        return [self._to_request(item) for item in response.get("Items", [])]


def get_approval_store(store_type: Optional[str] = None, **kwargs) -> ApprovalStore:
    """Factory function to get an approval store instance.

    Args:
        store_type: Type of store ("memory" or "dynamodb")
        **kwargs: Store-specific configuration

    Returns:
        ApprovalStore instance
    """
    if store_type is None:
        store_type = os.environ.get("APPROVAL_STORE_TYPE", "memory")

    if store_type == "dynamodb":
        return DynamoDBApprovalStore(
            table_name=kwargs.get(
                "table_name",
                os.environ.get("APPROVAL_TABLE_NAME", "incident-playbook-approvals"),
            ),
            region=kwargs.get("region", os.environ.get("AWS_REGION")),
        )

    return InMemoryApprovalStore()
