from fastapi import APIRouter, Request, Response
from starlette.concurrency import run_in_threadpool
from app.modules.serving.resolver import resolve
import logging

logger = logging.getLogger(__name__)

router = APIRouter(tags=["serving"])

# Registered for every common verb so non-GET/HEAD requests get 405 from the resolver
ROUTED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@router.api_route("/{full_path:path}", methods=ROUTED_METHODS, include_in_schema=False)
async def serve_site(request: Request, full_path: str):
    """Serve a published file for `{namespace}.{serving domain}/{path}`"""
    try:
        resolution = await run_in_threadpool(
            resolve,
            request.method,
            request.headers.get("host", ""),
            request.url.path,
            request.headers,
            request.app.state.content_store,
        )
    except Exception as e:
        logger.exception(f"Error serving {request.method} {request.url.path}: {e}")
        return Response("Internal Server Error", status_code=500, media_type="text/plain")
    return Response(content=resolution.body, status_code=resolution.status_code, headers=resolution.headers)
