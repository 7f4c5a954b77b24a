"""Pytest configuration and fixtures."""

import asyncio
import uuid
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.context import PipelineContext, build_context
from app.core.dependencies import get_current_user
from app.core.rate_limit import limiter
from app.main import app
from app.modules.deployments.build_executor import BuildExecutor, JobHandle, JobSpec
from app.modules.deployments.log_broadcaster import LogBroadcaster
from app.modules.deployments.schemas import DeploymentCreate
from app.modules.deployments.store import InMemoryDeploymentStore
from app.modules.storage.memory_storage import InMemoryContentStore
from app.serving import app as serving_app

TEST_USER = {"id": "user-1", "email": "dev@example.com"}
OTHER_USER = {"id": "user-2", "email": "other@example.com"}


class FakeBuildExecutor(BuildExecutor):
    """Scripted executor: emits fixed output, writes fixed files, exits with a fixed code."""

    def __init__(
        self,
        root: Path,
        lines: Optional[List[str]] = None,
        exit_code: int = 0,
        files: Optional[Dict[str, bytes]] = None,
        launch_error: Optional[Exception] = None,
        hang: bool = False,
    ):
        self.root = root
        self.lines = lines if lines is not None else ["=== Building ===", "build complete"]
        self.exit_code = exit_code
        self.files = files if files is not None else {"index.html": b"<h1>hello</h1>"}
        self.launch_error = launch_error
        self.hang = hang
        self.late_lines: List[str] = []
        self.launched: List[JobSpec] = []
        self.disposed: List[str] = []
        self.terminated: List[str] = []
        self._handles: Dict[str, JobHandle] = {}
        self._released: Dict[str, asyncio.Event] = {}

    async def launch(self, spec: JobSpec) -> JobHandle:
        if self.launch_error is not None:
            raise self.launch_error
        job_id = f"job-{uuid.uuid4().hex[:8]}"
        workdir = self.root / job_id
        output_path = workdir / "source" / spec.output_dir
        output_path.mkdir(parents=True)
        for relative, body in self.files.items():
            target = output_path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(body)
        handle = JobHandle(job_id=job_id, deployment_id=spec.deployment_id, workdir=workdir, output_path=output_path)
        self.launched.append(spec)
        self._handles[job_id] = handle
        self._released[job_id] = asyncio.Event()
        return handle

    async def attach_output(self, handle: JobHandle) -> AsyncIterator[str]:
        for line in self.lines:
            await asyncio.sleep(0)
            yield line
        if self.hang:
            await self._released[handle.job_id].wait()
            for line in self.late_lines:
                yield line

    async def await_completion(self, handle: JobHandle) -> int:
        if handle.job_id in self.terminated:
            return -15
        return self.exit_code

    async def terminate(self, handle: JobHandle) -> bool:
        self.terminated.append(handle.job_id)
        self._released[handle.job_id].set()
        return True

    def release(self, deployment_id: str) -> None:
        """Let a hanging job finish normally."""
        for handle in self._handles.values():
            if handle.deployment_id == deployment_id:
                self._released[handle.job_id].set()

    async def dispose(self, handle: JobHandle) -> None:
        self.disposed.append(handle.job_id)
        self._handles.pop(handle.job_id, None)

    def get_handle(self, job_id: str) -> Optional[JobHandle]:
        return self._handles.get(job_id)

    async def shutdown(self) -> None:
        for handle in list(self._handles.values()):
            await self.dispose(handle)


@pytest.fixture
def record_store() -> InMemoryDeploymentStore:
    return InMemoryDeploymentStore()


@pytest.fixture
def content_store() -> InMemoryContentStore:
    return InMemoryContentStore()


@pytest.fixture
def fake_executor(tmp_path: Path) -> FakeBuildExecutor:
    return FakeBuildExecutor(tmp_path / "jobs")


@pytest.fixture
def context(record_store, content_store, fake_executor) -> PipelineContext:
    """Pipeline wired to in-memory stores and the scripted executor."""
    return build_context(
        store=record_store,
        content_store=content_store,
        executor=fake_executor,
        broadcaster=LogBroadcaster(queue_size=100),
        timeout_sec=5,
        flush_interval_sec=0,
    )


@pytest.fixture
def deploy_request() -> DeploymentCreate:
    return DeploymentCreate(project_name="Demo", repo_url="https://github.com/example/demo.git")


@pytest.fixture
async def client(context: PipelineContext) -> AsyncIterator[AsyncClient]:
    """API client authenticated as TEST_USER."""
    limiter.reset()
    app.state.context = context
    app.dependency_overrides[get_current_user] = lambda: TEST_USER

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.context = None


@pytest.fixture
async def site_client(content_store: InMemoryContentStore) -> AsyncIterator[AsyncClient]:
    """Client for the public site server; set the Host header per request."""
    serving_app.state.content_store = content_store
    transport = ASGITransport(app=serving_app)
    async with AsyncClient(transport=transport, base_url="http://deploy.localhost") as ac:
        yield ac
    serving_app.state.content_store = None
