"""Execution leases.

One execution is driven by one engine instance at a time. The driving
instance holds a lease recorded on the execution itself (owner and expiry)
and renews it whenever it persists. Another instance may take the execution
over once the lease has expired, which is how a crashed run is resumed
without two engines driving it at once.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .clock import Clock
from .errors import ConcurrentModificationError, LeaseConflictError
from .execution import Execution
from .execution_store import ExecutionStore

logger = logging.getLogger(__name__)


class LeaseManager:
    """Claims, renews and releases execution leases for one owner."""

    def __init__(self, clock: Clock, owner_id: str, ttl_seconds: int = 60):
        self.clock = clock
        self.owner_id = owner_id
        self.ttl = timedelta(seconds=ttl_seconds)

    def held_by_other(self, execution: Execution, now: Optional[datetime] = None) -> bool:
        """Check whether a different owner holds a live lease."""
        now = now or self.clock.now()
        return (
            execution.lease_owner is not None
            and execution.lease_owner != self.owner_id
            and execution.lease_expires_at is not None
            and execution.lease_expires_at > now
        )

    def claim(self, execution: Execution) -> None:
        """Take the lease on an in-memory execution.

        Raises:
            LeaseConflictError: If another owner holds a live lease
        """
        now = self.clock.now()
        if self.held_by_other(execution, now):
            raise LeaseConflictError(execution.id, execution.lease_owner)
        if execution.lease_owner and execution.lease_owner != self.owner_id:
            logger.warning(
                f"Reclaiming expired lease on {execution.id} from {execution.lease_owner}"
            )
        execution.lease_owner = self.owner_id
        execution.lease_expires_at = now + self.ttl

    def renew(self, execution: Execution) -> None:
        execution.lease_owner = self.owner_id
        execution.lease_expires_at = self.clock.now() + self.ttl

    def release(self, execution: Execution) -> None:
        execution.lease_owner = None
        execution.lease_expires_at = None

    def acquire(self, store: ExecutionStore, execution_id: str, attempts: int = 3) -> Execution:
        """Load an execution and persist a claim on it.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
            LeaseConflictError: If another owner holds a live lease
        """
        last_error = None
        for _ in range(attempts):
            execution = store.load(execution_id)
            self.claim(execution)
            try:
                store.save(execution)
                return execution
            except ConcurrentModificationError as e:
                last_error = e
                logger.warning(f"Lease claim on {execution_id} raced with another writer, retrying")
        raise last_error
