from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slidebatch import __version__
from slidebatch.config import settings
from slidebatch.middleware import add_error_handling_middleware
from slidebatch.services.processors import default_processor_registry
import logging

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

# Create FastAPI app instance
app = FastAPI(
    title=settings.app_name,
    description="Batch job orchestrator with chunked, rate-limited task processing",
    version=settings.app_version,
    debug=settings.debug
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add error handling middleware
add_error_handling_middleware(app)

# Processors available to jobs submitted over HTTP, keyed by job type
app.state.processors = default_processor_registry()

# Include routers
from slidebatch.routes import batch, health, info, websocket
from slidebatch.services.orchestrator import init_orchestrator, shutdown_orchestrator

app.include_router(health.router, prefix=settings.api_v1_prefix)
app.include_router(info.router, prefix=settings.api_v1_prefix)
app.include_router(batch.router, prefix=settings.api_v1_prefix)
app.include_router(websocket.router)

# Orchestrator lifecycle
@app.on_event("startup")
async def _startup():
    await init_orchestrator()


@app.on_event("shutdown")
async def _shutdown():
    await shutdown_orchestrator()

@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": settings.app_name, "version": __version__}

def run():
    """Serve the app with uvicorn using host and port from settings"""
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())

if __name__ == "__main__":
    run()
