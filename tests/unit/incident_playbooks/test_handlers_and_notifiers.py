"""Unit tests for action handlers and approver notifiers.

Tests cover:
- Handler return value normalisation
- Function, dry-run and webhook handlers
- Handler registry
- Logging, callback and webhook notifiers
"""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from src.shared.incident_playbooks.execution import ApprovalRequest
from src.shared.incident_playbooks.handlers import (
    ActionHandlerRegistry,
    DryRunHandler,
    FunctionHandler,
    HandlerOutcome,
    WebhookActionHandler,
)
from src.shared.incident_playbooks.models import ActionKind
from src.shared.incident_playbooks.notifier import (
    CallbackNotifier,
    LoggingNotifier,
    NotificationError,
    WebhookNotifier,
)

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
CONTEXT = {
    "target_id": "user-123",
    "incident": {"incident_id": "inc-1001"},
    "execution": {"id": "exec-1"},
}


def make_session(status_code=200, text="ok"):
    session = MagicMock()
    response = MagicMock(status_code=status_code, text=text)
    session.request.return_value = response
    session.post.return_value = response
    return session


def make_request():
    return ApprovalRequest.create(
        execution_id="exec-1",
        action_id="suspend",
        gate_name="two-person",
        required_approvers=2,
        approver_ids=["alice", "bob"],
        requested_at=NOW,
        expires_at=NOW + timedelta(hours=1),
    )


class TestHandlerOutcome:
    """Tests for HandlerOutcome.coerce."""

    def test_passes_outcomes_through(self):
        """Should return HandlerOutcome values unchanged."""
        outcome = HandlerOutcome.failed("boom")
        assert HandlerOutcome.coerce(outcome) is outcome

    def test_result_error_tuple(self):
        """Should treat a truthy error as failure."""
        failed = HandlerOutcome.coerce((None, "directory unavailable"))
        ok = HandlerOutcome.coerce(({"revoked": 2}, None))

        assert failed.success is False
        assert failed.error == "directory unavailable"
        assert ok.success is True
        assert ok.result == {"revoked": 2}

    def test_dict_forms(self):
        """Should accept explicit success dicts and bare result dicts."""
        explicit = HandlerOutcome.coerce({"success": False, "error": "denied"})
        bare = HandlerOutcome.coerce({"sessions": ["s-1"]})

        assert explicit.success is False
        assert explicit.error == "denied"
        assert bare.success is True
        assert bare.result == {"sessions": ["s-1"]}

    def test_scalars(self):
        """Should treat None and scalars as success."""
        assert HandlerOutcome.coerce(None).success is True
        assert HandlerOutcome.coerce(3).result == {"value": 3}


class TestFunctionHandler:
    """Tests for FunctionHandler."""

    @pytest.mark.asyncio
    async def test_sync_function(self):
        """Should run blocking functions and coerce their result."""
        def revoke(params, context):
            return {"revoked": params["count"], "target": context["target_id"]}

        outcome = await FunctionHandler(revoke).execute({"count": 2}, CONTEXT)

        assert outcome.success is True
        assert outcome.result == {"revoked": 2, "target": "user-123"}

    @pytest.mark.asyncio
    async def test_coroutine_function(self):
        """Should await coroutine functions."""
        async def notify(params, context):
            return HandlerOutcome.failed("mailbox full")

        outcome = await FunctionHandler(notify).execute({}, CONTEXT)

        assert outcome.success is False
        assert outcome.error == "mailbox full"

    @pytest.mark.asyncio
    async def test_exceptions_propagate(self):
        """Should let handler exceptions reach the dispatcher."""
        def broken(params, context):
            raise RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            await FunctionHandler(broken).execute({}, CONTEXT)


class TestDryRunHandler:
    """Tests for DryRunHandler."""

    @pytest.mark.asyncio
    async def test_simulates(self):
        """Should describe the action without performing it."""
        outcome = await DryRunHandler(ActionKind.GEO_LOCK).execute({"countries": ["RU"]}, CONTEXT)

        assert outcome.success is True
        assert outcome.result["dry_run"] is True
        assert outcome.result["action"] == "GEO_LOCK"
        assert outcome.result["target_id"] == "user-123"


class TestWebhookActionHandler:
    """Tests for WebhookActionHandler."""

    @pytest.mark.asyncio
    async def test_posts_signed_payload(self):
        """Should send the payload with an HMAC signature."""
        session = make_session(status_code=202)
        handler = WebhookActionHandler(signing_secret="s3cret", session=session)

        outcome = await handler.execute(
            {"url": "https://soar.example.com/hooks/contain", "payload": {"ticket": "INC-1"}},
            CONTEXT,
        )

        assert outcome.success is True
        assert outcome.result["status_code"] == 202
        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        assert method == "POST"
        assert url == "https://soar.example.com/hooks/contain"
        assert json.loads(kwargs["data"]) == {"ticket": "INC-1"}
        expected = hmac.new(b"s3cret", kwargs["data"].encode(), hashlib.sha256).hexdigest()
        assert kwargs["headers"]["X-Webhook-Signature"] == f"sha256={expected}"

    @pytest.mark.asyncio
    async def test_default_payload(self):
        """Should describe the target and incident when no payload is given."""
        session = make_session()
        handler = WebhookActionHandler(session=session)

        await handler.execute({"url": "https://soar.example.com/hook", "method": "put"}, CONTEXT)

        method = session.request.call_args.args[0]
        body = json.loads(session.request.call_args.kwargs["data"])
        assert method == "PUT"
        assert body == {"target_id": "user-123", "incident": {"incident_id": "inc-1001"}, "execution_id": "exec-1"}
        assert "X-Webhook-Signature" not in session.request.call_args.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_rejects_bad_parameters(self):
        """Should fail without calling out for bad URLs or methods."""
        session = make_session()
        handler = WebhookActionHandler(session=session)

        bad_url = await handler.execute({"url": "ftp://example.com"}, CONTEXT)
        bad_method = await handler.execute({"url": "https://example.com", "method": "DELETE"}, CONTEXT)

        assert "Invalid webhook URL" in bad_url.error
        assert "Unsupported webhook method" in bad_method.error
        session.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error(self):
        """Should fail on non-success status codes."""
        handler = WebhookActionHandler(session=make_session(status_code=503))

        outcome = await handler.execute({"url": "https://example.com"}, CONTEXT)

        assert outcome.success is False
        assert outcome.error == "Webhook returned HTTP 503"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Should turn request exceptions into failures."""
        session = make_session()
        session.request.side_effect = requests.exceptions.ConnectionError("refused")

        outcome = await WebhookActionHandler(session=session).execute({"url": "https://example.com"}, CONTEXT)

        assert outcome.success is False
        assert "refused" in outcome.error


class TestActionHandlerRegistry:
    """Tests for ActionHandlerRegistry."""

    def test_wraps_functions(self):
        """Should wrap plain callables and accept kind names."""
        registry = ActionHandlerRegistry({ActionKind.GEO_LOCK: lambda p, c: None})
        registry.register("GEO_UNLOCK", DryRunHandler())

        assert isinstance(registry.get(ActionKind.GEO_LOCK), FunctionHandler)
        assert isinstance(registry.get(ActionKind.GEO_UNLOCK), DryRunHandler)
        assert registry.has(ActionKind.ACCOUNT_SUSPEND) is False
        assert set(registry.kinds()) == {ActionKind.GEO_LOCK, ActionKind.GEO_UNLOCK}


class TestNotifiers:
    """Tests for approver notifiers."""

    @pytest.mark.asyncio
    async def test_logging_notifier(self, caplog):
        """Should log the pending approvers."""
        with caplog.at_level("INFO"):
            await LoggingNotifier().notify(["alice", "bob"], make_request())
        assert "alice, bob" in caplog.text

    @pytest.mark.asyncio
    async def test_callback_notifier(self):
        """Should pass approvers and the request to the callback."""
        received = []

        async def callback(approver_ids, request):
            received.append((approver_ids, request.action_id))

        await CallbackNotifier(callback).notify(["alice"], make_request())

        assert received == [(["alice"], "suspend")]

    @pytest.mark.asyncio
    async def test_callback_errors_wrapped(self):
        """Should wrap callback errors in NotificationError."""
        def callback(approver_ids, request):
            raise ValueError("pager offline")

        with pytest.raises(NotificationError, match="pager offline"):
            await CallbackNotifier(callback).notify(["alice"], make_request())

    @pytest.mark.asyncio
    async def test_webhook_notifier(self):
        """Should post the formatted payload."""
        session = make_session()
        request = make_request()

        await WebhookNotifier("https://chat.example.com/hook", session=session).notify(["alice"], request)

        kwargs = session.post.call_args.kwargs
        payload = json.loads(kwargs["data"])
        assert session.post.call_args.args[0] == "https://chat.example.com/hook"
        assert payload["approval_id"] == request.id
        assert payload["approvers"] == ["alice"]
        assert payload["required_approvers"] == 2
        assert kwargs["timeout"] == 10

    @pytest.mark.asyncio
    async def test_webhook_notifier_failures(self):
        """Should raise NotificationError on HTTP and connection errors."""
        rejected = WebhookNotifier("https://chat.example.com/hook", session=make_session(status_code=400))
        with pytest.raises(NotificationError, match="HTTP 400"):
            await rejected.notify(["alice"], make_request())

        session = make_session()
        session.post.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(NotificationError):
            await WebhookNotifier("https://chat.example.com/hook", session=session).notify(["alice"], make_request())
