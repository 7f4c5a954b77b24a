import asyncio
import logging
import os
import re
import shutil
import signal
import tempfile
import uuid
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

from app.config import settings
from app.core.exceptions import DeploymentPipelineError, ExecutorUnavailableError, LaunchError
from app.modules.deployments.build_executor import BuildExecutor, JobHandle, JobSpec
from app.modules.deployments.process_registry import JobRegistry, RunningJob

logger = logging.getLogger(__name__)

SOURCE_DIR = "source"
STREAM_LIMIT = 1024 * 1024  # longest single output line
BACKEND_CHECK_TIMEOUT_SEC = 15

# Host variables a build may see; everything else (store keys, service secrets) stays out.
BUILD_ENV_PASSTHROUGH = ("PATH", "LANG", "LC_ALL", "TZ")
# What the docker CLI itself needs to reach the daemon.
DOCKER_ENV_PASSTHROUGH = ("PATH", "HOME", "DOCKER_HOST", "DOCKER_CONFIG", "DOCKER_CONTEXT", "DOCKER_CERT_PATH", "DOCKER_TLS_VERIFY")
DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

# Job parameters arrive as environment variables (see JobSpec.to_env).
DEFAULT_BUILD_SCRIPT = """\
set -e
echo "=== Cloning $REPO_URL ($BRANCH)"
git clone --depth 1 --branch "$BRANCH" "$REPO_URL" source
cd source
if command -v node >/dev/null 2>&1; then echo "node $(node --version) (requested $NODE_VERSION)"; fi
echo "=== Installing dependencies"
sh -c "$INSTALL_CMD"
echo "=== Building"
sh -c "$BUILD_CMD"
test -d "$OUTPUT_DIR" || { echo "Build output directory $OUTPUT_DIR not found" >&2; exit 1; }
echo "=== Build complete"
"""


def clean_line(raw: bytes) -> str:
    return _ANSI_ESCAPE.sub("", raw.decode("utf-8", errors="replace")).rstrip()


class ProcessBuildExecutor(BuildExecutor):
    """Runs the build script in a throwaway work directory.

    With an image configured, the script runs inside `docker run --rm` with
    memory/CPU limits and the work directory mounted at /workspace; otherwise it
    runs as a local process group. Either way stdout and stderr are merged into
    one stream and the process group is killed on terminate/dispose.
    """

    def __init__(
        self,
        script: str = DEFAULT_BUILD_SCRIPT,
        image: Optional[str] = None,
        shell: Optional[str] = None,
        docker_binary: Optional[str] = None,
        memory_limit: Optional[str] = None,
        cpu_limit: Optional[str] = None,
        workdir_root: Optional[str] = None,
        grace_sec: Optional[float] = None,
    ):
        self.script = script
        self.image = image if image is not None else settings.build_image
        self.shell = shell or settings.build_shell
        self.docker_binary = docker_binary or settings.docker_binary
        self.memory_limit = memory_limit or settings.build_memory_limit
        self.cpu_limit = cpu_limit or settings.build_cpu_limit
        self.workdir_root = workdir_root or settings.build_workdir_root
        self.grace_sec = grace_sec if grace_sec is not None else settings.dispose_grace_sec
        self.registry = JobRegistry()

    @property
    def uses_container(self) -> bool:
        return bool(self.image)

    def _command(self, job_id: str, workdir: Path, env_keys: List[str]) -> List[str]:
        if not self.uses_container:
            return [self.shell, "-c", self.script]
        cmd = [
            self.docker_binary, "run", "--rm",
            "--name", job_id,
            "--memory", self.memory_limit,
            "--cpus", self.cpu_limit,
            "-v", f"{workdir}:/workspace",
            "-w", "/workspace",
        ]
        # Values come from the docker CLI's own environment, not the command line
        for key in env_keys:
            cmd.extend(["-e", key])
        cmd.extend([self.image, "sh", "-c", self.script])
        return cmd

    def _process_env(self, workdir: Path, job_env: Dict[str, str]) -> Dict[str, str]:
        """Environment for the launched process: an allow-list of host variables plus the job's own."""
        names = DOCKER_ENV_PASSTHROUGH if self.uses_container else BUILD_ENV_PASSTHROUGH
        env = {name: os.environ[name] for name in names if name in os.environ}
        env.setdefault("PATH", DEFAULT_PATH)
        if not self.uses_container:
            env["HOME"] = str(workdir)
        env.update(job_env)
        return env

    async def _check_backend(self) -> None:
        if not self.uses_container:
            return
        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_binary, "version", "--format", "{{.Server.Version}}",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            output, _ = await asyncio.wait_for(proc.communicate(), timeout=BACKEND_CHECK_TIMEOUT_SEC)
        except FileNotFoundError:
            raise ExecutorUnavailableError(f"Container runtime not found: {self.docker_binary}")
        except asyncio.TimeoutError:
            proc.kill()
            raise ExecutorUnavailableError("Container runtime did not respond")
        if proc.returncode != 0:
            raise ExecutorUnavailableError(
                "Container runtime unreachable",
                {"diagnostic": clean_line(output or b"")},
            )

    async def launch(self, spec: JobSpec) -> JobHandle:
        await self._check_backend()

        job_id = f"build-{uuid.uuid4().hex[:12]}"
        try:
            workdir = Path(tempfile.mkdtemp(prefix=f"{job_id}-", dir=self.workdir_root))
        except OSError as e:
            raise LaunchError("Could not create build work directory", str(e))
        logger.info(f"Created work directory: {workdir}")

        handle = JobHandle(
            job_id=job_id,
            deployment_id=spec.deployment_id,
            workdir=workdir,
            output_path=workdir / SOURCE_DIR / spec.output_dir,
        )
        job_env = spec.to_env()
        env = self._process_env(workdir, job_env)

        try:
            process = await asyncio.create_subprocess_exec(
                *self._command(job_id, workdir, sorted(job_env)),
                cwd=str(workdir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            self._remove_workdir(workdir)
            raise ExecutorUnavailableError(f"Build backend not found: {e.filename or e}")
        except OSError as e:
            self._remove_workdir(workdir)
            raise LaunchError("Build process failed to start", str(e))

        self.registry.register(RunningJob(
            handle=handle,
            process=process,
            container_name=job_id if self.uses_container else None,
        ))
        logger.info(f"Launched {job_id} for deployment {spec.deployment_id} (pid {process.pid})")
        return handle

    async def attach_output(self, handle: JobHandle) -> AsyncIterator[str]:
        job = self.registry.get(handle.job_id)
        if job is None:
            return
        stream = job.process.stdout
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than STREAM_LIMIT; the reader has already discarded it
                yield "[output line too long, truncated]"
                continue
            if not raw:
                break
            line = clean_line(raw)
            if line.strip():
                yield line

    async def await_completion(self, handle: JobHandle) -> int:
        job = self.registry.get(handle.job_id)
        if job is None:
            raise DeploymentPipelineError(f"Job {handle.job_id} is not running or was disposed")
        return await job.process.wait()

    async def terminate(self, handle: JobHandle) -> bool:
        job = self.registry.get(handle.job_id)
        if job is None or job.process.returncode is not None:
            return False
        job.terminated = True
        await self._kill(job)
        logger.info(f"Terminated {handle.job_id} for deployment {handle.deployment_id}")
        return True

    async def dispose(self, handle: JobHandle) -> None:
        job = self.registry.unregister(handle.job_id)
        if job is None:
            logger.warning(f"dispose() called for unknown or already disposed job {handle.job_id}")
            return
        try:
            if job.process.returncode is None:
                await self._kill(job)
            if job.container_name:
                await self._docker("rm", "-f", job.container_name)
        finally:
            await asyncio.to_thread(self._remove_workdir, handle.workdir)

    def get_handle(self, job_id: str) -> Optional[JobHandle]:
        job = self.registry.get(job_id)
        return job.handle if job else None

    async def shutdown(self) -> None:
        for job in self.registry.active():
            logger.error(
                f"Build job {job.handle.job_id} for deployment {job.handle.deployment_id} "
                f"was never disposed; reclaiming it"
            )
            await self.dispose(job.handle)

    async def _kill(self, job: RunningJob) -> None:
        if job.container_name:
            await self._docker("kill", job.container_name)
        pid = job.process.pid
        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(job.process.wait(), timeout=self.grace_sec)
        except asyncio.TimeoutError:
            logger.warning(f"Job {job.handle.job_id} ignored SIGTERM, sending SIGKILL")
            try:
                os.killpg(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await job.process.wait()

    async def _docker(self, *args: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_binary, *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(proc.wait(), timeout=BACKEND_CHECK_TIMEOUT_SEC)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"docker {' '.join(args)} failed: {e}")

    @staticmethod
    def _remove_workdir(workdir: Path) -> None:
        try:
            shutil.rmtree(workdir)
            logger.info(f"Cleaned up work directory: {workdir}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to cleanup work directory {workdir}: {str(e)}")
