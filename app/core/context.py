"""Process-wide pipeline wiring, stored on `app.state.context`."""
import logging
from dataclasses import dataclass
from typing import Optional

from app.config import settings
from app.modules.artifacts.publisher import ArtifactPublisher
from app.modules.deployments.build_executor import BuildExecutor
from app.modules.deployments.deployment_worker import DeploymentWorker
from app.modules.deployments.log_broadcaster import LogBroadcaster
from app.modules.deployments.process_executor import ProcessBuildExecutor
from app.modules.deployments.store import DeploymentStore, InMemoryDeploymentStore
from app.modules.storage.base import ContentStore
from app.modules.storage.memory_storage import InMemoryContentStore

logger = logging.getLogger(__name__)

_content_store: Optional[ContentStore] = None


@dataclass
class PipelineContext:
    store: DeploymentStore
    content_store: ContentStore
    executor: BuildExecutor
    broadcaster: LogBroadcaster
    publisher: ArtifactPublisher
    worker: DeploymentWorker


def build_record_store() -> DeploymentStore:
    if settings.record_store == "supabase":
        from app.database.supabase_client import SupabaseClients
        from app.modules.deployments.service import DeploymentService
        return DeploymentService(SupabaseClients.records_client())
    logger.warning("Using in-memory deployment records; they are lost on restart")
    return InMemoryDeploymentStore()


def get_content_store() -> ContentStore:
    """Shared by the API and serving apps when they run in the same process."""
    global _content_store
    if _content_store is None:
        if settings.content_store == "s3":
            from app.modules.storage.s3_storage import S3ContentStore
            _content_store = S3ContentStore()
        else:
            logger.warning("Using in-memory content store; published sites are lost on restart")
            _content_store = InMemoryContentStore()
    return _content_store


def build_context(
    store: Optional[DeploymentStore] = None,
    content_store: Optional[ContentStore] = None,
    executor: Optional[BuildExecutor] = None,
    broadcaster: Optional[LogBroadcaster] = None,
    **worker_options,
) -> PipelineContext:
    store = store or build_record_store()
    content_store = content_store or get_content_store()
    executor = executor or ProcessBuildExecutor()
    broadcaster = broadcaster or LogBroadcaster()
    publisher = ArtifactPublisher(content_store)
    worker = DeploymentWorker(store, executor, broadcaster, publisher, **worker_options)
    return PipelineContext(
        store=store,
        content_store=content_store,
        executor=executor,
        broadcaster=broadcaster,
        publisher=publisher,
        worker=worker,
    )
