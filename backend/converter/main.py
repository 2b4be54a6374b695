"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from converter.api.routes import router
from converter.config import CORS_ORIGINS, logger as config_logger
from converter.jobs.orchestrator import get_orchestrator, shutdown_orchestrator

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_orchestrator()
    config_logger.info("Converter API started")
    yield
    shutdown_orchestrator(wait=False)
    config_logger.info("Converter API shutting down")


app = FastAPI(
    title="Image Converter API",
    description="Convert images to WebP/AVIF, one at a time or as background bulk jobs delivered as a zip.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from converter.config import HOST, PORT
    uvicorn.run("converter.main:app", host=HOST, port=PORT, reload=True)
