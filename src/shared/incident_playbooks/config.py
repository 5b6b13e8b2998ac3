"""
Configuration for the incident playbook orchestration engine.
"""

import os
import socket
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


def _default_owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


@dataclass
class EngineConfig:
    """Configuration for the orchestration engine.

    Attributes:
        max_concurrent_actions: Cap on concurrently dispatched actions per stage
        lease_ttl_seconds: How long an execution lease lasts without renewal
        owner_id: Identity of this engine instance in execution leases
        save_retry_attempts: Reload-and-retry attempts on a write conflict
        max_approvers_per_gate: Cap on approvers resolved for one gate
        approval_poll_seconds: Longest wait between approval status checks
        approval_hold_seconds: How long ESCALATE_TO_HUMAN keeps a request open
        dry_run: Route every action through the dry-run handler
        halt_on_stage_failure: Stop after a stage containing a failed action
        auto_rollback_on_timeout: Roll back succeeded actions when the
            playbook's maximum execution time is exceeded
    """

    max_concurrent_actions: int = 10
    lease_ttl_seconds: int = 60
    owner_id: str = field(default_factory=_default_owner_id)
    save_retry_attempts: int = 3
    max_approvers_per_gate: int = 5
    approval_poll_seconds: float = 5.0
    approval_hold_seconds: int = 86400
    dry_run: bool = False
    halt_on_stage_failure: bool = False
    auto_rollback_on_timeout: bool = True

    @classmethod
    def from_dict(cls, config_dict: Optional[Dict[str, Any]] = None) -> "EngineConfig":
        """Create config from dictionary."""
        if not config_dict:
            return cls()

        return cls(
            max_concurrent_actions=config_dict.get("max_concurrent_actions", 10),
            lease_ttl_seconds=config_dict.get("lease_ttl_seconds", 60),
            owner_id=config_dict.get("owner_id") or _default_owner_id(),
            save_retry_attempts=config_dict.get("save_retry_attempts", 3),
            max_approvers_per_gate=config_dict.get("max_approvers_per_gate", 5),
            approval_poll_seconds=config_dict.get("approval_poll_seconds", 5.0),
            approval_hold_seconds=config_dict.get("approval_hold_seconds", 86400),
            dry_run=config_dict.get("dry_run", False),
            halt_on_stage_failure=config_dict.get("halt_on_stage_failure", False),
            auto_rollback_on_timeout=config_dict.get("auto_rollback_on_timeout", True),
        )

    @classmethod
    def from_environment(cls) -> "EngineConfig":
        """Create config from environment variables."""
        return cls(
            max_concurrent_actions=int(os.environ.get("PLAYBOOK_MAX_CONCURRENT_ACTIONS", "10")),
            lease_ttl_seconds=int(os.environ.get("PLAYBOOK_LEASE_TTL_SECONDS", "60")),
            owner_id=os.environ.get("PLAYBOOK_OWNER_ID") or _default_owner_id(),
            save_retry_attempts=int(os.environ.get("PLAYBOOK_SAVE_RETRY_ATTEMPTS", "3")),
            max_approvers_per_gate=int(os.environ.get("PLAYBOOK_MAX_APPROVERS_PER_GATE", "5")),
            approval_poll_seconds=float(os.environ.get("PLAYBOOK_APPROVAL_POLL_SECONDS", "5")),
            approval_hold_seconds=int(os.environ.get("PLAYBOOK_APPROVAL_HOLD_SECONDS", "86400")),
            dry_run=_env_bool("PLAYBOOK_DRY_RUN", "false"),
            halt_on_stage_failure=_env_bool("PLAYBOOK_HALT_ON_STAGE_FAILURE", "false"),
            auto_rollback_on_timeout=_env_bool("PLAYBOOK_AUTO_ROLLBACK_ON_TIMEOUT", "true"),
        )
