"""Playbook and approval policy storage.

Both playbooks and approval policies are versioned configuration records:
saving never overwrites a version, it appends the next one. Executions pin
the playbook version they started with and load exactly that version on
resume.

Storage backends:
- InMemoryPlaybookStore / InMemoryPolicyStore: for tests and development
- FilePlaybookStore / FilePolicyStore: YAML files, one per version
"""

import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .playbook import PlaybookDefinition, PlaybookMetrics
from .policy import ApprovalPolicy

logger = logging.getLogger(__name__)


class PlaybookStore(ABC):
    """Abstract base class for versioned playbook storage."""

    @abstractmethod
    def get(self, playbook_id: str, version: Optional[int] = None) -> Optional[PlaybookDefinition]:
        """Get a playbook version (latest when version is None).

        Args:
            playbook_id: Unique playbook identifier
            version: Specific version to load

        Returns:
            PlaybookDefinition if found, None otherwise
        """
        pass

    @abstractmethod
    def list(self, enabled_only: bool = False) -> List[PlaybookDefinition]:
        """List the latest version of every playbook."""
        pass

    @abstractmethod
    def list_versions(self, playbook_id: str) -> List[int]:
        """List all versions of a playbook, newest first."""
        pass

    @abstractmethod
    def save(self, playbook: PlaybookDefinition) -> int:
        """Save a playbook as a new version.

        The playbook's ``version`` is set to the assigned version.

        Returns:
            The assigned version
        """
        pass

    @abstractmethod
    def record_execution(self, playbook_id: str, success: bool, execution_time_ms: float, at: datetime) -> None:
        """Fold a finished execution into the playbook's metrics."""
        pass

    @abstractmethod
    def get_metrics(self, playbook_id: str) -> PlaybookMetrics:
        """Get execution metrics for a playbook."""
        pass


class PolicyStore(ABC):
    """Abstract base class for versioned approval policy storage."""

    @abstractmethod
    def get(self, policy_id: str, version: Optional[int] = None) -> Optional[ApprovalPolicy]:
        """Get a policy version (latest when version is None)."""
        pass

    @abstractmethod
    def list(self, enabled_only: bool = True) -> List[ApprovalPolicy]:
        """List the latest version of every policy."""
        pass

    @abstractmethod
    def save(self, policy: ApprovalPolicy) -> int:
        """Save a policy as a new version and return the version."""
        pass


class InMemoryPlaybookStore(PlaybookStore):
    """In-memory playbook store for testing and development."""

    def __init__(self, playbooks: Optional[List[PlaybookDefinition]] = None):
        self._versions: Dict[str, Dict[int, dict]] = {}
        self._metrics: Dict[str, PlaybookMetrics] = {}
        for playbook in playbooks or []:
            self.save(playbook)

    def get(self, playbook_id: str, version: Optional[int] = None) -> Optional[PlaybookDefinition]:
        versions = self._versions.get(playbook_id)
        if not versions:
            return None
        if version is None:
            version = max(versions)
        data = versions.get(version)
        return PlaybookDefinition.from_dict(data) if data else None

    def list(self, enabled_only: bool = False) -> List[PlaybookDefinition]:
        playbooks = [self.get(playbook_id) for playbook_id in self._versions]
        if enabled_only:
            playbooks = [p for p in playbooks if p.enabled]
        return playbooks

    def list_versions(self, playbook_id: str) -> List[int]:
        return sorted(self._versions.get(playbook_id, {}), reverse=True)

    def save(self, playbook: PlaybookDefinition) -> int:
        versions = self._versions.setdefault(playbook.id, {})
        if versions:
            playbook.version = max(versions) + 1
        versions[playbook.version] = playbook.to_dict()
        logger.info(f"Saved playbook {playbook.id} version {playbook.version}")
        return playbook.version

    def record_execution(self, playbook_id: str, success: bool, execution_time_ms: float, at: datetime) -> None:
        metrics = self._metrics.setdefault(playbook_id, PlaybookMetrics(playbook_id=playbook_id))
        metrics.record(success, execution_time_ms, at)

    def get_metrics(self, playbook_id: str) -> PlaybookMetrics:
        return self._metrics.get(playbook_id, PlaybookMetrics(playbook_id=playbook_id))


class InMemoryPolicyStore(PolicyStore):
    """In-memory approval policy store for testing and development."""

    def __init__(self, policies: Optional[List[ApprovalPolicy]] = None):
        self._versions: Dict[str, Dict[int, dict]] = {}
        for policy in policies or []:
            self.save(policy)

    def get(self, policy_id: str, version: Optional[int] = None) -> Optional[ApprovalPolicy]:
        versions = self._versions.get(policy_id)
        if not versions:
            return None
        data = versions.get(max(versions) if version is None else version)
        return ApprovalPolicy.from_dict(data) if data else None

    def list(self, enabled_only: bool = True) -> List[ApprovalPolicy]:
        policies = [self.get(policy_id) for policy_id in self._versions]
        if enabled_only:
            policies = [p for p in policies if p.enabled]
        return policies

    def save(self, policy: ApprovalPolicy) -> int:
        versions = self._versions.setdefault(policy.id, {})
        if versions:
            policy.version = max(versions) + 1
        versions[policy.version] = policy.to_dict()
        logger.info(f"Saved approval policy {policy.id} version {policy.version}")
        return policy.version


class _YamlVersionDirectory:
    """One directory per record, one YAML file per version.

    Directory structure:
        {base_path}/
            {record_id}/
                v1.yml
                v2.yml
    """

    def __init__(self, base_path: Path):
        self.base_path = base_path
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _version_path(self, record_id: str, version: int) -> Path:
        return self.base_path / record_id / f"v{version}.yml"

    def versions(self, record_id: str) -> List[int]:
        record_dir = self.base_path / record_id
        if not record_dir.exists():
            return []
        versions = [
            int(f.stem[1:]) for f in record_dir.glob("v*.yml") if f.stem[1:].isdigit()
        ]
        return sorted(versions, reverse=True)

    def record_ids(self) -> List[str]:
        return sorted(d.name for d in self.base_path.iterdir() if d.is_dir())

    def load(self, record_id: str, version: Optional[int] = None) -> Optional[dict]:
        if version is None:
            versions = self.versions(record_id)
            if not versions:
                return None
            version = versions[0]

        file_path = self._version_path(record_id, version)
        if not file_path.exists():
            return None
        try:
            with open(file_path, "r") as f:
                return yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"YAML parse error in {file_path}: {e}")
            return None

    def write(self, record_id: str, version: int, content: str) -> None:
        file_path = self._version_path(record_id, version)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w") as f:
            f.write(content)


class FilePlaybookStore(PlaybookStore):
    """File-based playbook storage using YAML files.

    Directory structure:
        {base_path}/
            playbooks/{playbook_id}/v{version}.yml
            metrics/{playbook_id}.yml
    """

    def __init__(self, base_path: str = "config/playbooks"):
        """Initialize file-based playbook store.

        Args:
            base_path: Base directory for playbook files
        """
        self.base_path = Path(base_path)
        self._playbooks = _YamlVersionDirectory(self.base_path / "playbooks")
        self.metrics_path = self.base_path / "metrics"
        self.metrics_path.mkdir(parents=True, exist_ok=True)

    def get(self, playbook_id: str, version: Optional[int] = None) -> Optional[PlaybookDefinition]:
        data = self._playbooks.load(playbook_id, version)
        if not data:
            return None

        playbook = PlaybookDefinition.from_dict(data)
        is_valid, errors = playbook.validate()
        if not is_valid:
            logger.warning(f"Playbook validation errors in {playbook_id} v{playbook.version}: {errors}")
        return playbook

    def list(self, enabled_only: bool = False) -> List[PlaybookDefinition]:
        playbooks = []
        for playbook_id in self._playbooks.record_ids():
            playbook = self.get(playbook_id)
            if playbook is None:
                continue
            if enabled_only and not playbook.enabled:
                continue
            playbooks.append(playbook)
        return playbooks

    def list_versions(self, playbook_id: str) -> List[int]:
        return self._playbooks.versions(playbook_id)

    def save(self, playbook: PlaybookDefinition) -> int:
        versions = self._playbooks.versions(playbook.id)
        if versions:
            playbook.version = versions[0] + 1
        self._playbooks.write(playbook.id, playbook.version, playbook.to_yaml())
        logger.info(f"Saved playbook {playbook.id} version {playbook.version}")
        return playbook.version

    def _metrics_file(self, playbook_id: str) -> Path:
        return self.metrics_path / f"{playbook_id}.yml"

    def get_metrics(self, playbook_id: str) -> PlaybookMetrics:
        file_path = self._metrics_file(playbook_id)
        if not file_path.exists():
            return PlaybookMetrics(playbook_id=playbook_id)

        with open(file_path, "r") as f:
            data = yaml.safe_load(f) or {}
        last_executed_at = data.get("last_executed_at")
        return PlaybookMetrics(
            playbook_id=playbook_id,
            total_executions=data.get("total_executions", 0),
            successful_executions=data.get("successful_executions", 0),
            failed_executions=data.get("failed_executions", 0),
            average_execution_time_ms=data.get("average_execution_time_ms", 0.0),
            last_executed_at=datetime.fromisoformat(last_executed_at) if last_executed_at else None,
        )

    def record_execution(self, playbook_id: str, success: bool, execution_time_ms: float, at: datetime) -> None:
        metrics = self.get_metrics(playbook_id)
        metrics.record(success, execution_time_ms, at)
        with open(self._metrics_file(playbook_id), "w") as f:
            yaml.safe_dump(metrics.to_dict(), f, default_flow_style=False)


class FilePolicyStore(PolicyStore):
    """File-based approval policy storage using YAML files.

    Directory structure:
        {base_path}/policies/{policy_id}/v{version}.yml
    """

    def __init__(self, base_path: str = "config/playbooks"):
        self.base_path = Path(base_path)
        self._policies = _YamlVersionDirectory(self.base_path / "policies")

    def get(self, policy_id: str, version: Optional[int] = None) -> Optional[ApprovalPolicy]:
        data = self._policies.load(policy_id, version)
        return ApprovalPolicy.from_dict(data) if data else None

    def list(self, enabled_only: bool = True) -> List[ApprovalPolicy]:
        policies = []
        for policy_id in self._policies.record_ids():
            policy = self.get(policy_id)
            if policy is None:
                continue
            if enabled_only and not policy.enabled:
                continue
            policies.append(policy)
        return policies

    def save(self, policy: ApprovalPolicy) -> int:
        versions = self._policies.versions(policy.id)
        if versions:
            policy.version = versions[0] + 1
        self._policies.write(policy.id, policy.version, policy.to_yaml())
        logger.info(f"Saved approval policy {policy.id} version {policy.version}")
        return policy.version


def get_playbook_store(store_type: Optional[str] = None, **kwargs) -> PlaybookStore:
    """Factory function to get a playbook store instance.

    Args:
        store_type: Type of store ("memory" or "file")
        **kwargs: Store-specific configuration

    Returns:
        PlaybookStore instance
    """
    if store_type is None:
        store_type = os.environ.get("PLAYBOOK_STORE_TYPE", "memory")

    if store_type == "file":
        return FilePlaybookStore(
            base_path=kwargs.get("base_path", os.environ.get("PLAYBOOK_STORE_PATH", "config/playbooks"))
        )

    return InMemoryPlaybookStore()


def get_policy_store(store_type: Optional[str] = None, **kwargs) -> PolicyStore:
    """Factory function to get an approval policy store instance."""
    if store_type is None:
        store_type = os.environ.get("PLAYBOOK_STORE_TYPE", "memory")

    if store_type == "file":
        return FilePolicyStore(
            base_path=kwargs.get("base_path", os.environ.get("PLAYBOOK_STORE_PATH", "config/playbooks"))
        )

    return InMemoryPolicyStore()
