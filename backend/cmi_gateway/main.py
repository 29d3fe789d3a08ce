"""
CMI Gateway - FastAPI Application

Payment callback service for the CMI hosted payment page: creates pending
transactions, verifies signed server-to-server callbacks, records exactly one
terminal outcome per transaction and forwards it downstream.
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from .config import settings
from .exceptions import GatewayError
from .db import initialize_redis, close_redis
from .services.callback_processor import CallbackProcessor
from .services.outcome_forwarder import OutcomeForwarder
from .services.transaction_store import TransactionStore
from .api.payments import router as payments_router

VERSION = "0.1.0"

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Connect to Redis, build store, forwarder and processor
    - Shutdown: Wait for in-flight forwarding, close Redis
    """
    logger.info("Starting CMI gateway server...")
    logger.info(
        f"CMI store key: {'SET' if settings.cmi_store_key else 'NOT SET'}, "
        f"client id: {'SET' if settings.cmi_client_id else 'NOT SET'}, "
        f"forwarding: {'SET' if settings.forward_endpoint_url else 'NOT SET'}"
    )

    try:
        redis_client = await initialize_redis()
    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        raise

    store = TransactionStore(redis_client, settings.transaction_ttl_seconds)
    forwarder = OutcomeForwarder()
    app.state.store = store
    app.state.processor = CallbackProcessor(store, forwarder)

    logger.info("Server startup complete")

    yield

    logger.info("Shutting down CMI gateway server...")

    try:
        await app.state.processor.drain()
        logger.info("Pending outcome notifications flushed")
    except Exception as e:
        logger.error(f"Error while flushing outcome notifications: {e}")

    await close_redis(redis_client)


# Initialize FastAPI application
app = FastAPI(
    title="CMI Gateway API",
    description="CMI payment creation and callback verification",
    version=VERSION,
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept", "Authorization"],
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    """
    Handle gateway errors with standardized response format.

    Status code comes from the exception class (400, 404, 503, ...).
    """
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"Gateway error: {exc.error_code} - {exc.message}", extra={"details": exc.details})

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies (e.g. non-numeric amount)."""
    logger.warning(f"Request validation error: {exc.errors()}")

    return JSONResponse(
        status_code=400,
        content={
            "error_code": "cmi:request:invalid",
            "message": "Invalid request body",
            "details": {"errors": jsonable_errors(exc)}
        }
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Input validation failures not caught by Pydantic."""
    logger.warning(f"Validation error: {str(exc)}")

    return JSONResponse(
        status_code=400,
        content={
            "error_code": "cmi:request:invalid",
            "message": str(exc),
            "details": {}
        }
    )


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    """
    Catch-all handler for unexpected errors.

    Logs full exception for debugging but returns generic message to client.
    """
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error_code": "internal_error",
            "message": "An unexpected error occurred",
            "details": {}
        }
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


# Health check endpoint
@app.get("/health")
@app.get("/api/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Server status and version information
    """
    return {
        "status": "OK",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# Include API routers
app.include_router(payments_router, prefix="/api/payments", tags=["Payments"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "cmi_gateway.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower()
    )
