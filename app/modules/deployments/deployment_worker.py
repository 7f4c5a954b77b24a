import asyncio
import logging
import time
from collections import deque
from typing import Dict, List, Optional, Set

from starlette.concurrency import run_in_threadpool

from app.config import settings
from app.core.exceptions import (
    BuildFailure,
    BuildTimeoutError,
    ExecutorUnavailableError,
    InvalidTransitionError,
    LaunchError,
    PublicationError,
)
from app.modules.artifacts.publisher import ArtifactPublisher, public_url_for
from app.modules.deployments.build_executor import BuildExecutor, JobHandle, JobSpec
from app.modules.deployments.log_broadcaster import LogBroadcaster
from app.modules.deployments.models import DeploymentStatus
from app.modules.deployments.schemas import DeploymentRecord
from app.modules.deployments.store import DeploymentStore

logger = logging.getLogger(__name__)


class BuildLogSink:
    """Batches build output into the record's log text and keeps a bounded tail."""

    def __init__(self, store: DeploymentStore, deployment_id: str, flush_interval_sec: float, tail_lines: int):
        self.store = store
        self.deployment_id = deployment_id
        self.flush_interval_sec = flush_interval_sec
        self.buffer: List[str] = []
        self.tail = deque(maxlen=tail_lines)
        self.last_flush = time.monotonic()

    async def add(self, line: str) -> None:
        self.buffer.append(line)
        self.tail.append(line)
        if time.monotonic() - self.last_flush >= self.flush_interval_sec:
            await self.flush()

    async def flush(self) -> None:
        if not self.buffer:
            return
        # Detach the batch first; a cancelled await still lets the thread finish the write.
        batch, self.buffer = self.buffer, []
        self.last_flush = time.monotonic()
        try:
            await run_in_threadpool(self.store.append_log, self.deployment_id, "\n".join(batch))
        except Exception as e:
            logger.error(f"Error updating logs for deployment {self.deployment_id}: {str(e)}")
            self.buffer[:0] = batch

    def tail_text(self) -> str:
        return "\n".join(self.tail)


class DeploymentWorker:
    """Drives one deployment from `pending` to a terminal status.

    launch -> building -> stream output -> wait for exit -> publish -> deployed,
    with every failure on the way recorded as `failed` plus a diagnostic. The
    build job is disposed exactly once on every path, and the deployment's log
    subscribers are released when it reaches a terminal status.
    """

    def __init__(
        self,
        store: DeploymentStore,
        executor: BuildExecutor,
        broadcaster: LogBroadcaster,
        publisher: ArtifactPublisher,
        timeout_sec: Optional[float] = None,
        flush_interval_sec: Optional[float] = None,
        tail_lines: Optional[int] = None,
    ):
        self.store = store
        self.executor = executor
        self.broadcaster = broadcaster
        self.publisher = publisher
        self.timeout_sec = timeout_sec if timeout_sec is not None else settings.build_timeout_sec
        self.flush_interval_sec = flush_interval_sec if flush_interval_sec is not None else settings.log_flush_interval_sec
        self.tail_lines = tail_lines or settings.log_tail_lines
        self._tasks: Dict[str, asyncio.Task] = {}
        self._handles: Dict[str, JobHandle] = {}
        self._cancelled: Set[str] = set()
        self._publishing: Set[str] = set()

    def start(self, record: DeploymentRecord, env: Optional[Dict[str, str]] = None) -> asyncio.Task:
        """Schedule the deployment and return immediately."""
        task = asyncio.create_task(self.run(record.id, env), name=f"deploy-{record.id}")
        self._tasks[record.id] = task
        task.add_done_callback(lambda _t, deployment_id=record.id: self._tasks.pop(deployment_id, None))
        return task

    def is_running(self, deployment_id: str) -> bool:
        return deployment_id in self._tasks

    async def wait(self, deployment_id: str) -> None:
        task = self._tasks.get(deployment_id)
        if task is not None:
            await asyncio.wait({task})

    async def cancel(self, deployment_id: str) -> bool:
        """Best-effort cancel; the run records `failed` with a cancellation diagnostic.

        Returns False once publication has begun, since the run will end `deployed`.
        """
        if deployment_id not in self._tasks:
            return False
        if deployment_id in self._publishing:
            logger.info(f"Deployment {deployment_id} is already publishing; cancellation refused")
            return False
        self._cancelled.add(deployment_id)
        handle = self._handles.get(deployment_id)
        if handle is not None:
            await self.executor.terminate(handle)
        logger.info(f"Cancellation requested for deployment {deployment_id}")
        return True

    async def shutdown(self) -> None:
        for deployment_id in list(self._tasks):
            await self.cancel(deployment_id)
        if self._tasks:
            await asyncio.wait(set(self._tasks.values()), timeout=settings.dispose_grace_sec * 2)
        pending = list(self._tasks.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.executor.shutdown()

    async def run(self, deployment_id: str, env: Optional[Dict[str, str]] = None) -> DeploymentRecord:
        try:
            record = await run_in_threadpool(self.store.get, deployment_id)
            if deployment_id in self._cancelled:
                return await self._fail(deployment_id, "Build cancelled before it started")
            spec = self._job_spec(record, env or {})
            try:
                handle = await self.executor.launch(spec)
            except (ExecutorUnavailableError, LaunchError) as e:
                logger.error(f"Could not launch build for deployment {deployment_id}: {e.message} {e.details}")
                return await self._fail(
                    deployment_id,
                    f"Failed to start build (infrastructure error): {e.message}",
                )
            try:
                return await self._supervise(record, handle)
            finally:
                await self._dispose(handle)
        except asyncio.CancelledError:
            await self._fail(deployment_id, "Deployment interrupted: server shutting down")
            raise
        except Exception as e:
            logger.exception(f"Deployment worker error for {deployment_id}: {str(e)}")
            return await self._fail(deployment_id, "Deployment failed due to an internal error")
        finally:
            self.broadcaster.unsubscribe_all(deployment_id)
            self._cancelled.discard(deployment_id)
            self._publishing.discard(deployment_id)

    def _job_spec(self, record: DeploymentRecord, env: Dict[str, str]) -> JobSpec:
        return JobSpec(
            deployment_id=record.id,
            repo_url=record.repo_url,
            branch=record.branch,
            build_command=record.build_command,
            install_command=record.install_command,
            output_dir=record.output_dir,
            node_version=record.node_version,
            namespace=record.namespace,
            env=env,
        )

    async def _supervise(self, record: DeploymentRecord, handle: JobHandle) -> DeploymentRecord:
        deployment_id = record.id
        self._handles[deployment_id] = handle
        sink = BuildLogSink(self.store, deployment_id, self.flush_interval_sec, self.tail_lines)
        try:
            await run_in_threadpool(self.store.set_executor_handle, deployment_id, handle.job_id)
            await run_in_threadpool(
                self.store.transition,
                deployment_id,
                DeploymentStatus.BUILDING,
                f"Build job {handle.job_id} started",
            )
            if deployment_id in self._cancelled:
                await self.executor.terminate(handle)
            try:
                exit_code = await self._capture(handle, sink)
            except BuildTimeoutError as e:
                await sink.flush()
                return await self._fail(deployment_id, e.message, sink.tail_text())
        finally:
            await sink.flush()
            self._handles.pop(deployment_id, None)

        if exit_code != 0:
            if deployment_id in self._cancelled:
                return await self._fail(deployment_id, "Build cancelled")
            failure = BuildFailure(exit_code, sink.tail_text())
            logger.error(f"Deployment {deployment_id} failed: {failure.message}")
            return await self._fail(deployment_id, failure.message, failure.log_tail)

        if deployment_id in self._cancelled:
            return await self._fail(deployment_id, "Build cancelled")
        self._publishing.add(deployment_id)
        try:
            report = await run_in_threadpool(
                self.publisher.publish, handle.output_path, record.namespace, handle.workdir
            )
        except PublicationError as e:
            logger.error(f"Deployment {deployment_id} publication failed: {e.message}")
            return await self._fail(deployment_id, f"Publication failed: {e.message}")

        public_url = public_url_for(record.namespace)
        message = f"Published {report.file_count} file(s) to {public_url}"
        self.broadcaster.publish(deployment_id, message)
        deployed = await run_in_threadpool(
            self.store.transition,
            deployment_id,
            DeploymentStatus.DEPLOYED,
            message,
            public_url,
        )
        logger.info(f"Deployment {deployment_id} completed successfully: {public_url}")
        return deployed

    async def _capture(self, handle: JobHandle, sink: BuildLogSink) -> int:
        deployment_id = handle.deployment_id

        async def consume() -> int:
            async for line in self.executor.attach_output(handle):
                self.broadcaster.publish(deployment_id, line)
                await sink.add(line)
            return await self.executor.await_completion(handle)

        if not self.timeout_sec:
            return await consume()
        try:
            return await asyncio.wait_for(consume(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            raise BuildTimeoutError(self.timeout_sec)

    async def _fail(self, deployment_id: str, message: str, log_tail: str = "") -> DeploymentRecord:
        detail = message
        if log_tail:
            detail = f"{message}\n--- last {len(log_tail.splitlines())} line(s) of output ---\n{log_tail}"
        self.broadcaster.publish(deployment_id, message)
        try:
            return await run_in_threadpool(
                self.store.transition, deployment_id, DeploymentStatus.FAILED, detail
            )
        except InvalidTransitionError as e:
            logger.warning(f"Could not mark deployment {deployment_id} failed: {e.message}")
        except Exception as e:
            logger.error(f"Failed to update deployment status for {deployment_id}: {str(e)}")
        return await run_in_threadpool(self.store.get, deployment_id)

    async def _dispose(self, handle: JobHandle) -> None:
        try:
            await self.executor.dispose(handle)
        except Exception as e:
            logger.error(f"Failed to dispose build job {handle.job_id}: {str(e)}")
