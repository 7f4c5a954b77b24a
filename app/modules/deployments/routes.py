from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool
from app.config import settings
from app.core.context import PipelineContext
from app.core.dependencies import get_context, get_current_user
from app.core.exceptions import DeploymentNotFoundError, InvalidTransitionError, ValidationError
from app.core.rate_limit import limiter
from app.modules.deployments.models import DeploymentStatus
from app.modules.deployments.schemas import (
    DeploymentCreate,
    DeploymentCreatedResponse,
    DeploymentLogsResponse,
    DeploymentRecord,
    DeploymentResponse,
    DeploymentSummary,
)
from typing import Dict, List
import json
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deployments", tags=["deployments"])

SSE_KEEPALIVE_SEC = 15.0


async def _get_owned_deployment(context: PipelineContext, deployment_id: str, user_data: Dict) -> DeploymentRecord:
    """Deployments are only visible to their owner; anything else is a 404."""
    try:
        record = await run_in_threadpool(context.store.get, deployment_id)
    except DeploymentNotFoundError:
        raise HTTPException(status_code=404, detail="Deployment not found")
    if record.user_id != user_data["id"]:
        raise HTTPException(status_code=404, detail="Deployment not found")
    return record


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@router.post("", response_model=DeploymentCreatedResponse, status_code=201)
@limiter.limit(settings.deploy_rate_limit)
async def create_deployment(
    request: Request,
    deployment_data: DeploymentCreate,
    user_data: Dict = Depends(get_current_user),
    context: PipelineContext = Depends(get_context)
):
    """Create a deployment record and start its build in the background."""
    try:
        record = await run_in_threadpool(context.store.create, deployment_data, user_data["id"])
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    context.worker.start(record, deployment_data.env)
    return DeploymentCreatedResponse(id=record.id, namespace=record.namespace, status=record.status)


@router.get("", response_model=List[DeploymentSummary])
async def list_deployments(
    limit: int = 20,
    offset: int = 0,
    user_data: Dict = Depends(get_current_user),
    context: PipelineContext = Depends(get_context)
):
    """List the current user's deployments, newest first"""
    limit = max(1, min(limit, 100))
    records = await run_in_threadpool(context.store.list_for_user, user_data["id"], limit, max(offset, 0))
    return [DeploymentSummary(**r.model_dump(include=set(DeploymentSummary.model_fields))) for r in records]


@router.get("/{deployment_id}", response_model=DeploymentResponse)
async def get_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user),
    context: PipelineContext = Depends(get_context)
):
    """Status, public URL and accumulated build log"""
    record = await _get_owned_deployment(context, deployment_id, user_data)
    return DeploymentResponse.from_record(record)


@router.get("/{deployment_id}/logs", response_model=DeploymentLogsResponse)
async def get_deployment_logs(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user),
    context: PipelineContext = Depends(get_context)
):
    """
    Poll for deployment logs.
    Coarser fallback for the live stream; returns persisted logs and deployment status.
    """
    record = await _get_owned_deployment(context, deployment_id, user_data)
    return DeploymentLogsResponse(
        deployment_id=record.id,
        logs=record.build_logs.splitlines(),
        status=record.status,
        has_more=not record.status.is_terminal,
    )


@router.get("/{deployment_id}/logs/stream")
async def stream_deployment_logs(
    deployment_id: str,
    request: Request,
    user_data: Dict = Depends(get_current_user),
    context: PipelineContext = Depends(get_context)
):
    """
    Live build output as Server-Sent Events.
    `backfill` carries the log text persisted so far, `log` one line each, `status` the final state.
    Closing the connection leaves the broadcast group.
    """
    await _get_owned_deployment(context, deployment_id, user_data)
    # Join before reading the backfill so no line falls between the two
    subscription = context.broadcaster.subscribe(deployment_id)
    record = await run_in_threadpool(context.store.get, deployment_id)
    if record.status.is_terminal:
        subscription.close()

    async def event_stream():
        try:
            yield _sse("backfill", {"logs": record.build_logs, "status": record.status.value})
            if not record.status.is_terminal:
                while True:
                    if await request.is_disconnected():
                        return
                    line = await subscription.get(timeout=SSE_KEEPALIVE_SEC)
                    if line is not None:
                        yield _sse("log", line.to_dict())
                    elif subscription.ended:
                        break
                    else:
                        yield ": keep-alive\n\n"
            final = await run_in_threadpool(context.store.get, deployment_id)
            yield _sse("status", {"status": final.status.value, "public_url": final.public_url})
        finally:
            subscription.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/{deployment_id}/cancel", response_model=DeploymentResponse)
async def cancel_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user),
    context: PipelineContext = Depends(get_context)
):
    """Cancel a pending or building deployment. Terminates the build; the deployment ends as failed."""
    record = await _get_owned_deployment(context, deployment_id, user_data)
    if record.status.is_terminal:
        raise HTTPException(status_code=400, detail="Deployment cannot be cancelled")
    if not await context.worker.cancel(deployment_id):
        if context.worker.is_running(deployment_id):
            raise HTTPException(status_code=409, detail="Deployment is already publishing and can no longer be cancelled")
        # No build running in this process (e.g. after a restart); close the record directly
        try:
            record = await run_in_threadpool(
                context.store.transition, deployment_id, DeploymentStatus.FAILED, "Build cancelled"
            )
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=e.message)
        return DeploymentResponse.from_record(record)
    record = await run_in_threadpool(context.store.get, deployment_id)
    return DeploymentResponse.from_record(record)
