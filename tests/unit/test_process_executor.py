"""Unit tests for the local process build executor."""

import os
from pathlib import Path

import pytest

from app.core.exceptions import ExecutorUnavailableError
from app.modules.deployments.build_executor import JobSpec
from app.modules.deployments.process_executor import ProcessBuildExecutor, clean_line

pytestmark = pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="requires /bin/sh")


def make_spec(**overrides) -> JobSpec:
    values = dict(
        deployment_id="dep-1",
        repo_url="https://github.com/example/demo.git",
        branch="main",
        build_command="npm run build",
        install_command="npm install",
        output_dir="dist",
        node_version="20",
        namespace="demo-abc123",
    )
    values.update(overrides)
    return JobSpec(**values)


def make_executor(tmp_path: Path, script: str, **kwargs) -> ProcessBuildExecutor:
    return ProcessBuildExecutor(
        script=script, image="", shell="/bin/sh", workdir_root=str(tmp_path), grace_sec=2, **kwargs
    )


async def run_to_completion(executor: ProcessBuildExecutor, spec: JobSpec):
    handle = await executor.launch(spec)
    lines = [line async for line in executor.attach_output(handle)]
    exit_code = await executor.await_completion(handle)
    return handle, lines, exit_code


class TestProcessBuildExecutor:
    """Tests for ProcessBuildExecutor."""

    @pytest.mark.asyncio
    async def test_merged_output_and_exit_code(self, tmp_path: Path):
        executor = make_executor(
            tmp_path, "echo hello; printf '\\033[31mred\\033[0m\\n'; echo; echo oops >&2; exit 3"
        )

        handle, lines, exit_code = await run_to_completion(executor, make_spec())
        await executor.dispose(handle)

        assert lines == ["hello", "red", "oops"]
        assert exit_code == 3

    @pytest.mark.asyncio
    async def test_job_parameters_are_in_environment(self, tmp_path: Path):
        executor = make_executor(tmp_path, 'echo "$REPO_URL $BRANCH $DEPLOYMENT_ID"; echo "custom=$CUSTOM"')
        spec = make_spec(env={"CUSTOM": "yes", "REPO_URL": "https://evil.example/repo.git"})

        handle, lines, exit_code = await run_to_completion(executor, spec)
        await executor.dispose(handle)

        assert lines == ["https://github.com/example/demo.git main dep-1", "custom=yes"]
        assert exit_code == 0

    @pytest.mark.asyncio
    async def test_server_secrets_are_not_passed_to_build(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "server-s3-secret")
        monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-role-jwt")
        executor = make_executor(
            tmp_path, 'echo "key=$AWS_SECRET_ACCESS_KEY"; echo "role=$SUPABASE_SERVICE_ROLE_KEY"; env'
        )

        handle, lines, exit_code = await run_to_completion(executor, make_spec())
        await executor.dispose(handle)

        assert exit_code == 0
        assert lines[:2] == ["key=", "role="]
        assert not any("server-s3-secret" in line or "service-role-jwt" in line for line in lines)

    @pytest.mark.asyncio
    async def test_build_home_is_work_directory(self, tmp_path: Path):
        executor = make_executor(tmp_path, 'echo "home=$HOME"; test -n "$PATH" && echo path-set')

        handle, lines, _ = await run_to_completion(executor, make_spec())
        await executor.dispose(handle)

        assert lines == [f"home={handle.workdir}", "path-set"]

    def test_container_env_keeps_docker_settings_only(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("DOCKER_HOST", "unix:///run/docker.sock")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "server-s3-secret")
        executor = ProcessBuildExecutor(image="node:20-alpine", workdir_root=str(tmp_path))

        env = executor._process_env(tmp_path, {"REPO_URL": "https://github.com/example/demo.git"})

        assert env["DOCKER_HOST"] == "unix:///run/docker.sock"
        assert env["REPO_URL"] == "https://github.com/example/demo.git"
        assert "AWS_SECRET_ACCESS_KEY" not in env

    @pytest.mark.asyncio
    async def test_output_path_and_workdir_cleanup(self, tmp_path: Path):
        executor = make_executor(tmp_path, 'mkdir -p "source/$OUTPUT_DIR" && echo hi > "source/$OUTPUT_DIR/index.html"')

        handle, _, exit_code = await run_to_completion(executor, make_spec(output_dir="build"))

        assert exit_code == 0
        assert (handle.output_path / "index.html").read_text() == "hi\n"
        assert handle.output_path == handle.workdir / "source" / "build"

        await executor.dispose(handle)

        assert not handle.workdir.exists()
        assert executor.get_handle(handle.job_id) is None

    @pytest.mark.asyncio
    async def test_dispose_kills_running_job(self, tmp_path: Path):
        executor = make_executor(tmp_path, "sleep 30")
        handle = await executor.launch(make_spec())
        process = executor.registry.get(handle.job_id).process

        await executor.dispose(handle)

        assert process.returncode is not None
        assert len(executor.registry) == 0
        assert not handle.workdir.exists()

    @pytest.mark.asyncio
    async def test_dispose_twice_is_harmless(self, tmp_path: Path):
        executor = make_executor(tmp_path, "true")
        handle, _, _ = await run_to_completion(executor, make_spec())

        await executor.dispose(handle)
        await executor.dispose(handle)

        assert len(executor.registry) == 0

    @pytest.mark.asyncio
    async def test_terminate_stops_job(self, tmp_path: Path):
        executor = make_executor(tmp_path, "echo started; sleep 30")
        handle = await executor.launch(make_spec())

        assert await executor.terminate(handle) is True
        lines = [line async for line in executor.attach_output(handle)]
        exit_code = await executor.await_completion(handle)
        await executor.dispose(handle)

        assert exit_code != 0
        assert lines in (["started"], [])
        assert await executor.terminate(handle) is False

    @pytest.mark.asyncio
    async def test_missing_shell_is_unavailable(self, tmp_path: Path):
        executor = ProcessBuildExecutor(script="true", image="", shell="/nonexistent/sh", workdir_root=str(tmp_path))

        with pytest.raises(ExecutorUnavailableError):
            await executor.launch(make_spec())

        assert list(tmp_path.iterdir()) == []
        assert len(executor.registry) == 0

    @pytest.mark.asyncio
    async def test_missing_container_runtime_is_unavailable(self, tmp_path: Path):
        executor = ProcessBuildExecutor(
            script="true", image="node:20", docker_binary="/nonexistent/docker", workdir_root=str(tmp_path)
        )

        with pytest.raises(ExecutorUnavailableError):
            await executor.launch(make_spec())

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_shutdown_reclaims_leaked_jobs(self, tmp_path: Path):
        executor = make_executor(tmp_path, "sleep 30")
        handles = [await executor.launch(make_spec(deployment_id=f"dep-{i}")) for i in range(2)]

        await executor.shutdown()

        assert len(executor.registry) == 0
        assert all(not h.workdir.exists() for h in handles)

    def test_container_command(self, tmp_path: Path):
        executor = ProcessBuildExecutor(script="echo hi", image="node:20", memory_limit="1g", cpu_limit="0.5")

        cmd = executor._command("build-1", tmp_path, ["BRANCH", "REPO_URL"])

        assert cmd[:3] == ["docker", "run", "--rm"]
        assert ["--memory", "1g"] == cmd[cmd.index("--memory"):cmd.index("--memory") + 2]
        assert ["-e", "BRANCH", "-e", "REPO_URL"] == cmd[cmd.index("-e"):cmd.index("-e") + 4]
        assert cmd[-4:] == ["node:20", "sh", "-c", "echo hi"]


def test_clean_line_strips_ansi_and_trailing_whitespace():
    assert clean_line(b"\x1b[1;32mok\x1b[0m  \r\n") == "ok"
    assert clean_line(b"caf\xc3\xa9\n") == "café"
