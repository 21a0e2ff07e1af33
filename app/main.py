"""
FastAPI application entry point.
Configures routes, middleware, and lifecycle events.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import init_db, close_db
from app.errors import FunnelFlowError
from app.logging_config import configure_logging
from app.redis import RedisClient

# Import routers - MUST BE AT TOP LEVEL
from app.api.admin import router as admin_router
from app.api.analytics import router as analytics_router
from app.api.chat import router as chat_router
from app.api.funnels import router as funnels_router
from app.api.livechat import router as livechat_router
from app.api.resources import router as resources_router
from app.api.webhooks.whop import router as whop_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifecycle manager."""
    # Startup
    configure_logging()
    logging.info("Starting up FunnelFlow...")

    if settings.is_development:
        await init_db()

    await RedisClient.is_available()

    yield

    # Shutdown
    await RedisClient.close()
    await close_db()
    logging.info("Shutting down...")


app = FastAPI(
    title="FunnelFlow",
    description="AI funnel builder and live chat for Whop creators",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)


@app.exception_handler(FunnelFlowError)
async def funnelflow_exception_handler(request: Request, exc: FunnelFlowError):
    logging.info(f"{type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "message": exc.message},
    )


# Global Exception Handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logging.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal Server Error"},
    )


# CORS middleware
origins = [
    "https://whop.com",
]
if settings.is_development:
    origins.append("*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "env": settings.app_env,
    }


app.include_router(funnels_router, prefix="/funnels", tags=["funnels"])
app.include_router(resources_router, prefix="/resources", tags=["resources"])
app.include_router(livechat_router, prefix="/livechat", tags=["livechat"])
app.include_router(chat_router, prefix="/chat", tags=["chat"])
app.include_router(analytics_router, prefix="/analytics", tags=["analytics"])

# Register webhook routes
app.include_router(
    whop_router,
    prefix="/webhooks",
    tags=["webhooks"],
)

# Register admin routes
app.include_router(
    admin_router,
    prefix="/admin",
    tags=["admin"],
)
