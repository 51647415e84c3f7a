#!/usr/bin/env python3
"""
Landed Cost Duty API - calculator, audit history and health routers.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from core.config import settings
from api.middleware.logging import LoggingMiddleware
from api.routers import calculator, health

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.project_name,
    version=settings.version,
    description="Deterministic landed-cost duty calculations with an auditable calculation trail"
)

app.add_middleware(LoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

app.include_router(health.router, prefix=settings.api_v1_prefix)
app.include_router(calculator.router, prefix=settings.api_v1_prefix)
logger.info("Health and calculator routers included with API prefix")


@app.get("/healthz")
async def root_health_check():
    """Root-level health endpoint for external monitors."""
    return await health.health_check()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
