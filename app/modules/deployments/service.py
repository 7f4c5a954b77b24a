from supabase import Client
from app.core.exceptions import DeploymentNotFoundError, DeploymentPipelineError, InvalidTransitionError
from app.modules.deployments.models import DeploymentStatus, is_allowed_transition
from app.modules.deployments.schemas import DeploymentRecord
from app.modules.deployments.store import DeploymentStore, NamespaceConflictError, append_text, utcnow
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

TABLE = "deployments"
MAX_TRANSITION_ATTEMPTS = 5


class DeploymentService(DeploymentStore):
    """Deployment records in the Supabase `deployments` table (see models.py)."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _insert(self, values: Dict[str, Any]) -> DeploymentRecord:
        now = utcnow().isoformat()
        try:
            result = self.supabase.table(TABLE).insert({
                **values,
                "status": DeploymentStatus.PENDING.value,
                "build_logs": "",
                "created_at": now,
                "updated_at": now,
            }).execute()
        except Exception as e:
            # unique_violation on deployments.namespace
            if "23505" in str(e) or "duplicate key" in str(e).lower():
                raise NamespaceConflictError(values["namespace"])
            logger.error(f"Error creating deployment: {str(e)}")
            raise
        if not result.data:
            raise DeploymentPipelineError("Failed to create deployment")
        return DeploymentRecord(**result.data[0])

    def get(self, deployment_id: str) -> DeploymentRecord:
        """Get deployment by ID"""
        result = self.supabase.table(TABLE)\
            .select("*")\
            .eq("id", deployment_id)\
            .maybe_single()\
            .execute()
        if not result or not result.data:
            raise DeploymentNotFoundError(deployment_id)
        return DeploymentRecord(**result.data)

    def transition(
        self,
        deployment_id: str,
        new_status: DeploymentStatus,
        detail: Optional[str] = None,
        public_url: Optional[str] = None,
    ) -> DeploymentRecord:
        """Compare-and-set on the current status; a lost race re-reads and re-validates."""
        new_status = DeploymentStatus(new_status)
        for _ in range(MAX_TRANSITION_ATTEMPTS):
            current = self.get(deployment_id)
            if current.status == new_status:
                return current
            if not is_allowed_transition(current.status, new_status):
                raise InvalidTransitionError(deployment_id, current.status.value, new_status.value)

            update_data = {"status": new_status.value, "updated_at": utcnow().isoformat()}
            if detail:
                update_data["build_logs"] = append_text(current.build_logs, detail)
            if public_url:
                update_data["public_url"] = public_url

            result = self.supabase.table(TABLE)\
                .update(update_data)\
                .eq("id", deployment_id)\
                .eq("status", current.status.value)\
                .execute()
            if result.data:
                logger.info(f"Deployment {deployment_id} -> {new_status.value}")
                return DeploymentRecord(**result.data[0])
            logger.debug(f"Lost status race on deployment {deployment_id}, retrying")
        raise DeploymentPipelineError(
            f"Could not transition deployment {deployment_id} to {new_status.value}: concurrent updates"
        )

    def append_log(self, deployment_id: str, text: str) -> None:
        # Only the deployment worker appends, so read-then-write does not race with itself
        current = self.get(deployment_id)
        self.supabase.table(TABLE)\
            .update({
                "build_logs": append_text(current.build_logs, text),
                "updated_at": utcnow().isoformat(),
            })\
            .eq("id", deployment_id)\
            .execute()

    def set_executor_handle(self, deployment_id: str, handle: str) -> None:
        self.supabase.table(TABLE)\
            .update({"executor_handle": handle, "updated_at": utcnow().isoformat()})\
            .eq("id", deployment_id)\
            .execute()

    def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[DeploymentRecord]:
        """List a user's deployments, newest first"""
        result = self.supabase.table(TABLE)\
            .select("*")\
            .eq("user_id", user_id)\
            .order("created_at", desc=True)\
            .range(offset, offset + limit - 1)\
            .execute()
        return [DeploymentRecord(**row) for row in result.data or []]

    def namespace_exists(self, namespace: str) -> bool:
        result = self.supabase.table(TABLE)\
            .select("id")\
            .eq("namespace", namespace)\
            .limit(1)\
            .execute()
        return bool(result.data)
