"""Main FastAPI application"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime
import logging

from market_chat.config import settings
from market_chat.core.exceptions import ChatServiceError
from market_chat.database import connect_to_mongo, close_mongo_connection, database
from market_chat.realtime.bus import RedisBus
from market_chat.realtime.gateway import gateway
from market_chat.services.chat_store import ChatStore
from market_chat.api.v1 import chats, realtime

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events"""
    # Startup
    logger.info("Starting up Market Chat API...")
    await connect_to_mongo()
    await ChatStore(database.db).ensure_indexes()

    if settings.redis_url:
        gateway.use_bus(RedisBus(settings.redis_url, channel=settings.redis_channel))
        logger.info("Realtime broadcasts relayed through Redis")
    await gateway.start()
    logger.info("Application ready!")

    yield

    # Shutdown
    logger.info("Shutting down Market Chat API...")
    await gateway.stop()
    await close_mongo_connection()
    logger.info("Shutdown complete!")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="""
    Order and support chat between customers and staff.

    ## Features

    * **Chats**: order-linked and general chat threads with paginated history
    * **Attachments**: up to three files of 5 MB per message
    * **Realtime**: WebSocket at `/ws/chat` for new messages, typing and read receipts

    ## Authentication

    Every endpoint requires a JWT bearer token:
    ```
    Authorization: Bearer <your_jwt_token>
    ```
    """,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoints
@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint to verify the API is running.
    """
    return {
        "success": True,
        "status": "healthy",
        "version": "1.0.0",
        "app": settings.app_name,
        "connections": len(gateway.connections),
    }


@app.get("/liveness", tags=["Health"])
async def liveness_probe():
    """
    Kubernetes liveness probe endpoint.
    """
    return {
        "status": "alive",
        "timestamp": datetime.utcnow().isoformat()
    }


@app.get("/readiness", tags=["Health"])
async def readiness_probe():
    """
    Kubernetes readiness probe endpoint.
    Checks database connectivity.
    """
    try:
        if database.db is not None:
            await database.db.command("ping")
            return {
                "status": "ready",
                "database": "connected",
                "timestamp": datetime.utcnow().isoformat()
            }
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "database": "not connected",
                "timestamp": datetime.utcnow().isoformat()
            },
        )
    except Exception as e:
        logger.error(f"Readiness check failed: {str(e)}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "error": "database unavailable",
                "timestamp": datetime.utcnow().isoformat()
            },
        )


# Include routers
app.include_router(
    chats.router,
    prefix="/api/chats",
    tags=["Chats"]
)

app.include_router(
    realtime.router,
    tags=["Realtime"]
)


# Error handlers
@app.exception_handler(ChatServiceError)
async def chat_service_error_handler(request: Request, exc: ChatServiceError):
    """Map the chat error taxonomy to HTTP responses"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.code,
            "detail": exc.message
        }
    )


@app.exception_handler(404)
async def not_found_handler(request, exc):
    """Custom 404 handler"""
    return JSONResponse(
        status_code=404,
        content={
            "success": False,
            "error": "Not Found",
            "detail": getattr(exc, "detail", None) or "The requested resource was not found"
        }
    )


@app.exception_handler(500)
async def internal_error_handler(request, exc):
    """Custom 500 handler"""
    logger.error(f"Internal server error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": "An unexpected error occurred. Please try again later."
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "market_chat.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="info"
    )
