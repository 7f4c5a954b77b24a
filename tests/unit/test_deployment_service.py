"""Unit tests for the Supabase-backed deployment store."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from app.core.exceptions import DeploymentNotFoundError, DeploymentPipelineError, InvalidTransitionError
from app.modules.deployments.models import DeploymentStatus
from app.modules.deployments.service import MAX_TRANSITION_ATTEMPTS, DeploymentService


def make_row(**overrides) -> dict:
    row = {
        "id": "dep-1",
        "user_id": "user-1",
        "project_name": "Demo",
        "repo_url": "https://github.com/example/demo.git",
        "branch": "main",
        "build_command": "npm run build",
        "install_command": "npm install",
        "output_dir": "dist",
        "node_version": "lts/*",
        "namespace": "demo-abc123",
        "status": "pending",
        "public_url": None,
        "build_logs": "",
        "executor_handle": None,
        "created_at": "2024-01-01T00:00:00+00:00",
        "updated_at": "2024-01-01T00:00:00+00:00",
    }
    row.update(overrides)
    return row


@pytest.fixture
def supabase() -> MagicMock:
    return MagicMock()


@pytest.fixture
def service(supabase: MagicMock) -> DeploymentService:
    return DeploymentService(supabase)


def select_by_id(supabase: MagicMock) -> MagicMock:
    return supabase.table.return_value.select.return_value.eq.return_value.maybe_single.return_value.execute


def conditional_update(supabase: MagicMock) -> MagicMock:
    return supabase.table.return_value.update.return_value.eq.return_value.eq.return_value.execute


class TestDeploymentService:
    """Tests for DeploymentService."""

    def test_get_missing_raises(self, service: DeploymentService, supabase: MagicMock):
        select_by_id(supabase).return_value = None

        with pytest.raises(DeploymentNotFoundError):
            service.get("dep-1")

    def test_transition_is_conditional_on_current_status(self, service: DeploymentService, supabase: MagicMock):
        select_by_id(supabase).return_value = SimpleNamespace(data=make_row())
        conditional_update(supabase).return_value = SimpleNamespace(
            data=[make_row(status="building", build_logs="Build job b-1 started\n")]
        )

        record = service.transition("dep-1", DeploymentStatus.BUILDING, "Build job b-1 started")

        assert record.status == DeploymentStatus.BUILDING
        update = supabase.table.return_value.update
        assert update.call_args.args[0]["status"] == "building"
        assert update.call_args.args[0]["build_logs"] == "Build job b-1 started\n"
        update.return_value.eq.return_value.eq.assert_called_with("status", "pending")

    def test_transition_retries_lost_race(self, service: DeploymentService, supabase: MagicMock):
        select_by_id(supabase).return_value = SimpleNamespace(data=make_row(status="building"))
        conditional_update(supabase).side_effect = [
            SimpleNamespace(data=[]),
            SimpleNamespace(data=[make_row(status="failed")]),
        ]

        record = service.transition("dep-1", DeploymentStatus.FAILED, "boom")

        assert record.status == DeploymentStatus.FAILED
        assert conditional_update(supabase).call_count == 2

    def test_transition_gives_up_after_repeated_races(self, service: DeploymentService, supabase: MagicMock):
        select_by_id(supabase).return_value = SimpleNamespace(data=make_row(status="building"))
        conditional_update(supabase).return_value = SimpleNamespace(data=[])

        with pytest.raises(DeploymentPipelineError):
            service.transition("dep-1", DeploymentStatus.FAILED)

        assert conditional_update(supabase).call_count == MAX_TRANSITION_ATTEMPTS

    def test_illegal_transition_does_not_write(self, service: DeploymentService, supabase: MagicMock):
        select_by_id(supabase).return_value = SimpleNamespace(data=make_row(status="deployed"))

        with pytest.raises(InvalidTransitionError):
            service.transition("dep-1", DeploymentStatus.FAILED)

        supabase.table.return_value.update.assert_not_called()

    def test_create_regenerates_namespace_on_unique_violation(
        self, service: DeploymentService, supabase: MagicMock, deploy_request
    ):
        supabase.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value = (
            SimpleNamespace(data=[])
        )
        supabase.table.return_value.insert.return_value.execute.side_effect = [
            Exception('duplicate key value violates unique constraint "deployments_namespace_key" (23505)'),
            SimpleNamespace(data=[make_row()]),
        ]

        record = service.create(deploy_request, "user-1")

        assert record.id == "dep-1"
        inserts = supabase.table.return_value.insert.call_args_list
        assert len(inserts) == 2
        assert inserts[0].args[0]["namespace"] != inserts[1].args[0]["namespace"]
        assert inserts[1].args[0]["status"] == "pending"

    def test_list_for_user_pages_newest_first(self, service: DeploymentService, supabase: MagicMock):
        query = supabase.table.return_value.select.return_value.eq.return_value.order.return_value
        query.range.return_value.execute.return_value = SimpleNamespace(data=[make_row(), make_row(id="dep-2")])

        records = service.list_for_user("user-1", limit=10, offset=20)

        assert [r.id for r in records] == ["dep-1", "dep-2"]
        supabase.table.return_value.select.return_value.eq.return_value.order.assert_called_with("created_at", desc=True)
        query.range.assert_called_with(20, 29)
