"""Approver notification.

Notifiers tell approvers that a request is waiting for their vote, either
when it is raised or when it escalates. Notification failures never block a
gate; the evaluator applies the gate's fallback behavior and the timeout and
escalation paths still run.
"""

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import requests

from .execution import ApprovalRequest

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised by a notifier that could not deliver a notification."""


class Notifier(ABC):
    """Base class for approver notifiers."""

    @abstractmethod
    async def notify(self, approver_ids: List[str], request: ApprovalRequest) -> None:
        """Notify approvers about a pending request.

        Raises:
            NotificationError: If delivery failed
        """
        pass


class LoggingNotifier(Notifier):
    """Notifier that only logs; the default when nothing is configured."""

    async def notify(self, approver_ids: List[str], request: ApprovalRequest) -> None:
        logger.info(
            f"Approval {request.id} for action {request.action_id} "
            f"(level {request.escalation_level}) awaiting: {', '.join(approver_ids)}"
        )


class CallbackNotifier(Notifier):
    """Notifier that hands notifications to a callable."""

    def __init__(self, callback: Callable[[List[str], ApprovalRequest], Any]):
        self.callback = callback

    async def notify(self, approver_ids: List[str], request: ApprovalRequest) -> None:
        try:
            result = self.callback(list(approver_ids), request)
            if inspect.isawaitable(result):
                await result
        except NotificationError:
            raise
        except Exception as e:
            raise NotificationError(str(e)) from e


class WebhookNotifier(Notifier):
    """Posts approval notifications to an HTTP endpoint (e.g. a chat webhook)."""

    def __init__(
        self,
        webhook_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: int = 10,
        session: Optional[requests.Session] = None,
    ):
        """Initialize webhook notifier.

        Args:
            webhook_url: Endpoint receiving the notification
            headers: Optional custom headers
            timeout: Request timeout in seconds
            session: Optional requests session
        """
        self.webhook_url = webhook_url
        self.headers = headers or {"Content-Type": "application/json"}
        self.timeout = timeout
        self._session = session or requests.Session()

    def format_payload(self, approver_ids: List[str], request: ApprovalRequest) -> Dict[str, Any]:
        return {
            "type": "approval_request",
            "approval_id": request.id,
            "execution_id": request.execution_id,
            "action_id": request.action_id,
            "gate": request.gate_name,
            "required_approvers": request.required_approvers,
            "approvals": request.approval_count,
            "escalation_level": request.escalation_level,
            "expires_at": request.expires_at.isoformat(),
            "approvers": list(approver_ids),
        }

    def _post(self, payload: Dict[str, Any]) -> None:
        try:
            response = self._session.post(
                self.webhook_url,
                data=json.dumps(payload),
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise NotificationError(f"Webhook notification failed: {e}") from e
        if response.status_code >= 300:
            raise NotificationError(f"Webhook notification returned HTTP {response.status_code}")

    async def notify(self, approver_ids: List[str], request: ApprovalRequest) -> None:
        await asyncio.to_thread(self._post, self.format_payload(approver_ids, request))
