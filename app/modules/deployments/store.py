"""Deployment record store contract and the in-process implementation."""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

from app.config import settings
from app.core.exceptions import (
    DeploymentNotFoundError,
    DeploymentPipelineError,
    InvalidTransitionError,
    ValidationError,
)
from app.modules.deployments.models import DeploymentStatus, is_allowed_transition
from app.modules.deployments.namespace import generate_namespace, slugify_project_name
from app.modules.deployments.schemas import DeploymentCreate, DeploymentRecord

logger = logging.getLogger(__name__)

NAMESPACE_ATTEMPTS = 5


class NamespaceConflictError(DeploymentPipelineError):
    def __init__(self, namespace: str):
        super().__init__(f"Namespace already assigned: {namespace}", {"namespace": namespace})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def append_text(existing: str, text: str) -> str:
    """Append text to accumulated log text, one newline-terminated line per entry."""
    if not text:
        return existing
    if existing and not existing.endswith("\n"):
        existing += "\n"
    if not text.endswith("\n"):
        text += "\n"
    return existing + text


def build_record_params(data: DeploymentCreate) -> Dict[str, Any]:
    """Validate a deploy request and fill build defaults."""
    project_name = (data.project_name or "").strip()
    repo_url = (data.repo_url or "").strip()
    if not project_name:
        raise ValidationError("project_name is required")
    if not repo_url:
        raise ValidationError("repo_url is required")
    if not slugify_project_name(project_name):
        raise ValidationError(
            "project_name must contain at least one letter or digit",
            {"project_name": project_name},
        )
    output_dir = (data.output_dir or "").strip().strip("/") or settings.default_output_dir
    if ".." in PurePosixPath(output_dir).parts:
        raise ValidationError("output_dir must stay inside the repository", {"output_dir": output_dir})
    return {
        "project_name": project_name,
        "repo_url": repo_url,
        "branch": (data.branch or "").strip() or settings.default_branch,
        "build_command": (data.build_command or "").strip() or settings.default_build_command,
        "install_command": (data.install_command or "").strip() or settings.default_install_command,
        "output_dir": output_dir,
        "node_version": (data.node_version or "").strip() or settings.default_node_version,
    }


class DeploymentStore(ABC):
    """Durable state for deployments.

    Status changes go through transition(), which enforces the state machine
    pending -> building -> {deployed | failed} (plus pending -> failed when a
    build cannot be launched). Implementations make each transition atomic per
    record. All methods are blocking; async callers use a thread pool.
    """

    def create(self, data: DeploymentCreate, user_id: str) -> DeploymentRecord:
        params = build_record_params(data)
        for _ in range(NAMESPACE_ATTEMPTS):
            namespace = generate_namespace(params["project_name"])
            if self.namespace_exists(namespace):
                logger.warning(f"Namespace collision on {namespace}, regenerating")
                continue
            try:
                record = self._insert({**params, "user_id": user_id, "namespace": namespace})
            except NamespaceConflictError:
                logger.warning(f"Namespace {namespace} taken concurrently, regenerating")
                continue
            logger.info(f"Created deployment {record.id} ({record.namespace}) for user {user_id}")
            return record
        raise DeploymentPipelineError("Could not allocate a unique namespace")

    @abstractmethod
    def _insert(self, values: Dict[str, Any]) -> DeploymentRecord:
        ...

    @abstractmethod
    def get(self, deployment_id: str) -> DeploymentRecord:
        ...

    @abstractmethod
    def transition(
        self,
        deployment_id: str,
        new_status: DeploymentStatus,
        detail: Optional[str] = None,
        public_url: Optional[str] = None,
    ) -> DeploymentRecord:
        ...

    @abstractmethod
    def append_log(self, deployment_id: str, text: str) -> None:
        ...

    @abstractmethod
    def set_executor_handle(self, deployment_id: str, handle: str) -> None:
        ...

    @abstractmethod
    def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[DeploymentRecord]:
        ...

    @abstractmethod
    def namespace_exists(self, namespace: str) -> bool:
        ...


class InMemoryDeploymentStore(DeploymentStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._record_locks: Dict[str, threading.Lock] = {}
        self._records: Dict[str, DeploymentRecord] = {}
        self._namespaces: set = set()

    def _record_lock(self, deployment_id: str) -> threading.Lock:
        with self._lock:
            if deployment_id not in self._records:
                raise DeploymentNotFoundError(deployment_id)
            return self._record_locks[deployment_id]

    def _insert(self, values: Dict[str, Any]) -> DeploymentRecord:
        now = utcnow()
        record = DeploymentRecord(
            id=str(uuid.uuid4()),
            status=DeploymentStatus.PENDING,
            build_logs="",
            created_at=now,
            updated_at=now,
            **values,
        )
        with self._lock:
            if record.namespace in self._namespaces:
                raise NamespaceConflictError(record.namespace)
            self._namespaces.add(record.namespace)
            self._records[record.id] = record
            self._record_locks[record.id] = threading.Lock()
        return record.model_copy()

    def get(self, deployment_id: str) -> DeploymentRecord:
        with self._record_lock(deployment_id):
            return self._records[deployment_id].model_copy()

    def transition(
        self,
        deployment_id: str,
        new_status: DeploymentStatus,
        detail: Optional[str] = None,
        public_url: Optional[str] = None,
    ) -> DeploymentRecord:
        new_status = DeploymentStatus(new_status)
        with self._record_lock(deployment_id):
            record = self._records[deployment_id]
            if record.status == new_status:
                return record.model_copy()
            if not is_allowed_transition(record.status, new_status):
                raise InvalidTransitionError(deployment_id, record.status.value, new_status.value)
            updates: Dict[str, Any] = {"status": new_status, "updated_at": utcnow()}
            if detail:
                updates["build_logs"] = append_text(record.build_logs, detail)
            if public_url:
                updates["public_url"] = public_url
            record = record.model_copy(update=updates)
            self._records[deployment_id] = record
            logger.info(f"Deployment {deployment_id} -> {new_status.value}")
            return record.model_copy()

    def append_log(self, deployment_id: str, text: str) -> None:
        with self._record_lock(deployment_id):
            record = self._records[deployment_id]
            self._records[deployment_id] = record.model_copy(update={
                "build_logs": append_text(record.build_logs, text),
                "updated_at": utcnow(),
            })

    def set_executor_handle(self, deployment_id: str, handle: str) -> None:
        with self._record_lock(deployment_id):
            record = self._records[deployment_id]
            self._records[deployment_id] = record.model_copy(update={
                "executor_handle": handle,
                "updated_at": utcnow(),
            })

    def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[DeploymentRecord]:
        with self._lock:
            records = [r for r in reversed(list(self._records.values())) if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy() for r in records[offset:offset + limit]]

    def namespace_exists(self, namespace: str) -> bool:
        with self._lock:
            return namespace in self._namespaces
