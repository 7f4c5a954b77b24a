import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.config import settings
from app.core.context import build_context
from app.core.exceptions import DeploymentNotFoundError, DeploymentPipelineError, ValidationError
from app.core.middleware import SecurityHeadersMiddleware
from app.core.rate_limit import limiter
from app.modules.deployments import routes as deployments_routes

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    redirect_slashes=False,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(DeploymentPipelineError)
async def pipeline_exception_handler(request: Request, exc: DeploymentPipelineError):
    if isinstance(exc, ValidationError):
        return JSONResponse(status_code=400, content={"detail": exc.message})
    if isinstance(exc, DeploymentNotFoundError):
        return JSONResponse(status_code=404, content={"detail": "Deployment not found"})
    logger.error(f"Unhandled pipeline error: {exc.message} {exc.details}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    if settings.is_production:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include module routes
app.include_router(deployments_routes.router, prefix="/api/v1")


@app.on_event("startup")
async def startup_event():
    logger.info("Application startup")
    if getattr(app.state, "context", None) is None:
        app.state.context = build_context()
    logger.info(
        f"Record store: {settings.record_store}, content store: {settings.content_store}, "
        f"builds: {'container ' + settings.build_image if settings.build_image else 'local process'}"
    )


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutdown")
    context = getattr(app.state, "context", None)
    if context is not None:
        await context.worker.shutdown()


@app.get("/")
async def root():
    return {"message": f"Welcome to {settings.app_name}", "status": "healthy"}


@app.get("/health")
@limiter.exempt
async def health():
    return {"status": "healthy"}


@app.get("/ready")
@limiter.exempt
async def ready():
    """Readiness probe: the pipeline context is wired."""
    if getattr(app.state, "context", None) is None:
        return JSONResponse(status_code=503, content={"status": "starting"})
    return {"status": "ready"}
