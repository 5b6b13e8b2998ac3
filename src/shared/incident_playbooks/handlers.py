"""Action handlers and their registry.

Every side effect a playbook has on the outside world lives behind an
ActionHandler registered for an action kind. The dispatcher is the only
caller; it treats handler errors as opaque and only distinguishes success,
failure and timeout.

Handlers may be coroutines or plain blocking functions. Blocking handlers
run in a worker thread so they cannot stall the event loop.
"""

import asyncio
import hashlib
import hmac
import inspect
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import requests

from .models import ActionKind

logger = logging.getLogger(__name__)


@dataclass
class HandlerOutcome:
    """Result of one handler invocation.

    Attributes:
        success: Whether the action took effect
        result: Handler-specific result data
        error: Error message on failure
    """
    success: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, **result: Any) -> "HandlerOutcome":
        return cls(success=True, result=result)

    @classmethod
    def failed(cls, error: str, **result: Any) -> "HandlerOutcome":
        return cls(success=False, result=result, error=error)

    @classmethod
    def coerce(cls, value: Any) -> "HandlerOutcome":
        """Normalise a handler return value.

        Accepts a HandlerOutcome, a ``(result, error)`` tuple, a dict with
        ``success``/``result``/``error`` keys, or a bare result dict.
        """
        if isinstance(value, HandlerOutcome):
            return value
        if isinstance(value, tuple) and len(value) == 2:
            result, error = value
            if error:
                return cls(success=False, result=result or {}, error=str(error))
            return cls(success=True, result=result or {})
        if isinstance(value, dict) and "success" in value:
            return cls(
                success=bool(value["success"]),
                result=value.get("result") or {},
                error=value.get("error"),
            )
        if value is None:
            return cls(success=True)
        if isinstance(value, dict):
            return cls(success=True, result=value)
        return cls(success=True, result={"value": value})


class ActionHandler(ABC):
    """Base class for action handlers."""

    @abstractmethod
    async def execute(self, params: Dict[str, Any], context: Dict[str, Any]) -> HandlerOutcome:
        """Perform the action.

        Args:
            params: Rendered action parameters
            context: Execution context (target, incident, prior results)

        Returns:
            HandlerOutcome
        """
        pass


HandlerLike = Union[ActionHandler, Callable[..., Any]]


class FunctionHandler(ActionHandler):
    """Adapts a plain function or coroutine function to ActionHandler."""

    def __init__(self, func: Callable[..., Any]):
        self.func = func

    async def execute(self, params: Dict[str, Any], context: Dict[str, Any]) -> HandlerOutcome:
        if inspect.iscoroutinefunction(self.func):
            value = await self.func(params, context)
        else:
            value = await asyncio.to_thread(self.func, params, context)
            if inspect.isawaitable(value):
                value = await value
        return HandlerOutcome.coerce(value)


class DryRunHandler(ActionHandler):
    """Records what would have been done without side effects."""

    def __init__(self, kind: Optional[ActionKind] = None):
        self.kind = kind

    async def execute(self, params: Dict[str, Any], context: Dict[str, Any]) -> HandlerOutcome:
        return HandlerOutcome.ok(
            action=self.kind.value if self.kind else None,
            parameters=params,
            target_id=context.get("target_id"),
            dry_run=True,
            message="Dry run - action simulated",
        )


class WebhookActionHandler(ActionHandler):
    """Handler for CUSTOM_WEBHOOK actions.

    Parameters:
        url: Endpoint to call (required)
        method: POST, PUT or PATCH (default POST)
        headers: Extra request headers
        payload: Body to send; defaults to target and incident summary
        timeout_seconds: Request timeout (default 10)

    Requests are signed with HMAC when a signing secret is configured.
    Retries are left to the dispatcher, so the session does not retry.
    """

    SUCCESS_STATUS_CODES = (200, 201, 202, 204)

    def __init__(
        self,
        signing_secret: Optional[str] = None,
        signing_header: str = "X-Webhook-Signature",
        session: Optional[requests.Session] = None,
    ):
        self.signing_secret = signing_secret
        self.signing_header = signing_header
        self._session = session or requests.Session()

    def _sign(self, body: str) -> str:
        digest = hmac.new(self.signing_secret.encode(), body.encode(), hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    def _send(self, params: Dict[str, Any], context: Dict[str, Any]) -> HandlerOutcome:
        url = params.get("url")
        if not url or not str(url).startswith(("http://", "https://")):
            return HandlerOutcome.failed(f"Invalid webhook URL: {url!r}")

        method = str(params.get("method", "POST")).upper()
        if method not in ("POST", "PUT", "PATCH"):
            return HandlerOutcome.failed(f"Unsupported webhook method: {method}")

        payload = params.get("payload") or {
            "target_id": context.get("target_id"),
            "incident": context.get("incident", {}),
            "execution_id": context.get("execution", {}).get("id"),
        }
        body = json.dumps(payload, default=str)
        headers = {"Content-Type": "application/json"}
        headers.update(params.get("headers") or {})
        if self.signing_secret:
            headers[self.signing_header] = self._sign(body)

        try:
            response = self._session.request(
                method,
                url,
                data=body,
                headers=headers,
                timeout=params.get("timeout_seconds", 10),
            )
        except requests.exceptions.RequestException as e:
            return HandlerOutcome.failed(f"Webhook request failed: {e}")

        if response.status_code not in self.SUCCESS_STATUS_CODES:
            return HandlerOutcome.failed(
                f"Webhook returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return HandlerOutcome.ok(status_code=response.status_code, body=response.text[:1000])

    async def execute(self, params: Dict[str, Any], context: Dict[str, Any]) -> HandlerOutcome:
        return await asyncio.to_thread(self._send, params, context)


class ActionHandlerRegistry:
    """Registry mapping action kinds to handlers.

    Passed explicitly to the engine; there is no process-wide registry.
    """

    def __init__(self, handlers: Optional[Dict[ActionKind, HandlerLike]] = None):
        self._handlers: Dict[ActionKind, ActionHandler] = {}
        for kind, handler in (handlers or {}).items():
            self.register(kind, handler)

    def register(self, kind: Union[ActionKind, str], handler: HandlerLike) -> None:
        """Register a handler, replacing any existing one for the kind."""
        if isinstance(kind, str):
            kind = ActionKind(kind)
        if not isinstance(handler, ActionHandler):
            handler = FunctionHandler(handler)
        if kind in self._handlers:
            logger.info(f"Replacing handler for {kind.value}")
        self._handlers[kind] = handler

    def get(self, kind: ActionKind) -> Optional[ActionHandler]:
        return self._handlers.get(kind)

    def has(self, kind: ActionKind) -> bool:
        return kind in self._handlers

    def kinds(self) -> List[ActionKind]:
        return list(self._handlers.keys())
