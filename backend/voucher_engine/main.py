from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from voucher_engine.core.config import settings
from voucher_engine.core.database import connect_to_mongo, close_mongo_connection
from voucher_engine.config.payout_config import PAYOUT_MODE
from voucher_engine.api.routes import vouchers, refunds

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Voucher validation, redemption and refund-voucher conversion API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    logger.info("Starting up voucher engine...")
    await connect_to_mongo()
    logger.info(f"Voucher engine started (payout mode: {PAYOUT_MODE})")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up services on shutdown."""
    logger.info("Shutting down voucher engine...")
    await close_mongo_connection()


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "voucher-engine",
        "version": "1.0.0"
    }


# Include routers
app.include_router(vouchers.router, prefix=f"{settings.API_V1_PREFIX}/vouchers", tags=["Vouchers"])
app.include_router(refunds.router, prefix=f"{settings.API_V1_PREFIX}/refunds", tags=["Refunds"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
