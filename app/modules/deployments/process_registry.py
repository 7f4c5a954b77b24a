"""Registry of live build jobs: job_id -> process, for hard cancel and leak reporting."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from app.modules.deployments.build_executor import JobHandle

logger = logging.getLogger(__name__)


@dataclass
class RunningJob:
    handle: JobHandle
    process: asyncio.subprocess.Process
    container_name: Optional[str] = None
    terminated: bool = False


class JobRegistry:
    """Owned by one executor; all access happens on the event loop thread."""

    def __init__(self):
        self._jobs: Dict[str, RunningJob] = {}

    def register(self, job: RunningJob) -> None:
        self._jobs[job.handle.job_id] = job
        logger.debug(f"Registered job {job.handle.job_id} for deployment {job.handle.deployment_id}")

    def unregister(self, job_id: str) -> Optional[RunningJob]:
        job = self._jobs.pop(job_id, None)
        if job is not None:
            logger.debug(f"Unregistered job {job_id}")
        return job

    def get(self, job_id: str) -> Optional[RunningJob]:
        return self._jobs.get(job_id)

    def active(self) -> List[RunningJob]:
        return list(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)
