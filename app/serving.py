"""
Public site server. Runs separately from the API:

    uvicorn app.serving:app
"""
import logging
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from app.config import settings
from app.core.context import get_content_store
from app.core.middleware import SecurityHeadersMiddleware
from app.modules.serving import routes as serving_routes

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=f"{settings.app_name}-serving",
    debug=settings.debug,
    redirect_slashes=False,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    # Visitors never see error detail
    logger.exception("Unhandled exception: %s", exc)
    return PlainTextResponse("Internal Server Error", status_code=500)


app.add_middleware(SecurityHeadersMiddleware)

app.include_router(serving_routes.router)


@app.on_event("startup")
async def startup_event():
    if getattr(app.state, "content_store", None) is None:
        app.state.content_store = get_content_store()
    logger.info(f"Serving sites under *.{settings.serving_domain} from the {settings.content_store} content store")
