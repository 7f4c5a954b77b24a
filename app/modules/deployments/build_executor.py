"""Build executor contract.

A build executor runs one build job in an isolated, disposable context and
exposes its merged stdout/stderr as lines plus a numeric exit code. Every
launched job must be disposed exactly once, whatever happened to it.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, Optional


@dataclass(frozen=True)
class JobSpec:
    deployment_id: str
    repo_url: str
    branch: str
    build_command: str
    install_command: str
    output_dir: str
    node_version: str
    namespace: str
    env: Dict[str, str] = field(default_factory=dict)

    def to_env(self) -> Dict[str, str]:
        """Backend parameters. User overrides never replace the pipeline's own keys."""
        params = dict(self.env)
        params.update({
            "REPO_URL": self.repo_url,
            "BRANCH": self.branch,
            "BUILD_CMD": self.build_command,
            "INSTALL_CMD": self.install_command,
            "OUTPUT_DIR": self.output_dir,
            "NODE_VERSION": self.node_version,
            "NAMESPACE": self.namespace,
            "DEPLOYMENT_ID": self.deployment_id,
        })
        return params


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    deployment_id: str
    workdir: Path
    output_path: Path


class BuildExecutor(ABC):
    @abstractmethod
    async def launch(self, spec: JobSpec) -> JobHandle:
        """Start a job. Raises ExecutorUnavailableError or LaunchError."""

    @abstractmethod
    def attach_output(self, handle: JobHandle) -> AsyncIterator[str]:
        """Lines of merged output; ends when the job's output stream closes."""

    @abstractmethod
    async def await_completion(self, handle: JobHandle) -> int:
        ...

    @abstractmethod
    async def terminate(self, handle: JobHandle) -> bool:
        """Stop a running job without reclaiming it. Returns False if it was not running."""

    @abstractmethod
    async def dispose(self, handle: JobHandle) -> None:
        ...

    @abstractmethod
    def get_handle(self, job_id: str) -> Optional[JobHandle]:
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Force-dispose jobs that are still registered, reporting each as leaked."""
