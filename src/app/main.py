"""FastAPI application for the booking payment page."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from ..core.api import close_api_client
from ..core.config import get_settings
from ..core.logging import setup_logging, get_logger
from .payment import close_flows, router as payment_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging()
    logger = get_logger(__name__)
    settings = get_settings()

    logger.info(
        "Booking payment service starting",
        environment=settings.environment.value,
        api_base_url=settings.api_base_url,
        ledger_dir=str(settings.ledger_dir),
    )

    yield

    await close_flows()
    await close_api_client()
    logger.info("Booking payment service shutting down")


app = FastAPI(
    title="Booking Payment Service",
    description="3-D Secure card payment and reconciliation for boat and tour bookings",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(payment_router)


@app.get("/")
async def root():
    """Service information."""
    settings = get_settings()
    return JSONResponse({
        "service": "Booking Payment Service",
        "status": "running",
        "environment": settings.environment.value,
        "version": "1.0.0"
    })


@app.get("/health")
async def health():
    """Kubernetes-style health check."""
    return JSONResponse({"status": "healthy"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.app.main:app",
        host="0.0.0.0",
        port=8080,
    )
