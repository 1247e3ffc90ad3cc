"""Pipeline Engine API.

Runs the five-stage generation pipeline over interchangeable providers:
- Streams run progress as server-sent events
- Cancels runs on request or client disconnect
- Rate-limits run starts per client
- Keeps a history of finished runs
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src import __version__
from src.api.routes import pipeline, providers
from src.executor.runtime import get_dispatcher, get_history_store, get_run_registry
from src.llm.factory import MODE_ROUTING

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    dispatcher = get_dispatcher()
    available = [name for name, a in dispatcher.adapters.items() if a.is_available()]
    if available:
        logger.info(f"Providers available: {', '.join(available)}")
    else:
        logger.warning("No provider API keys configured; every run will fail with AuthError")

    history = get_history_store()
    logger.info(f"Loaded run history: {history.summary()['total_runs']} runs")

    logger.info("Pipeline Engine API ready")
    yield
    # Shutdown
    registry = get_run_registry()
    for run in registry.active_runs():
        registry.request_cancel(run["run_id"])
    logger.info("Shutting down Pipeline Engine API")


# Create FastAPI app
app = FastAPI(
    title="Pipeline Engine API",
    description="""
## Resilient Pipeline Execution

Runs a five-stage generation pipeline with provider fallback, retries,
per-stage timeouts and cancellation.

### Key Endpoints

- `POST /v1/pipeline/runs` - Start a run (SSE progress stream)
- `POST /v1/pipeline/cancel` - Cancel a run
- `GET /v1/pipeline/runs/active` - In-flight runs
- `GET /v1/pipeline/history` - Finished runs
- `GET /v1/providers` - Provider availability
""",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Run-Id", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)

# Include routers with /v1 prefix
app.include_router(pipeline.router, prefix="/v1")
app.include_router(providers.router, prefix="/v1")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Pipeline Engine API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "pipeline": "/v1/pipeline",
            "providers": "/v1/providers",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    dispatcher = get_dispatcher()
    return {
        "status": "healthy",
        "providers_available": sum(1 for a in dispatcher.adapters.values() if a.is_available()),
        "active_runs": len(get_run_registry()),
        "modes": [mode.value for mode in MODE_ROUTING],
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
    )
