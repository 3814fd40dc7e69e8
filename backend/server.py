from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import admin_billing, company, payment_simulation, subscription, webhooks
from services.billing_errors import BillingError
from services.admin_harness import test_endpoints_enabled
from services.stripe_service import stripe_service
from utils.errors import error_detail, status_for

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Billing API")
    await database.connect()

    # Stripe config: log mode (test/live/demo) from key prefix (no secret keys)
    if not stripe_service.is_configured():
        logger.warning("DEMO_MODE_FALLBACK STRIPE_SECRET_KEY / STRIPE_API_KEY is not set; subscriptions run in demo mode")
    else:
        stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
        stripe_mode = "test" if stripe_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)

    if test_endpoints_enabled():
        logger.warning("Payment simulation endpoints are enabled (/api/test/*)")

    yield

    # Shutdown
    logger.info("Shutting down Billing API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Billing API",
    description="Subscription lifecycle, payments and access gating",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(subscription.router)
app.include_router(company.router)
app.include_router(admin_billing.router)
app.include_router(payment_simulation.router)
app.include_router(webhooks.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "stripe_configured": stripe_service.is_configured(),
    }

# Request validation errors are contract violations: 400 with the failing fields
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=400,
        content={
            "detail": jsonable_encoder(errors),
            "error_code": "VALIDATION_ERROR",
            "request_id": request_id,
        },
    )


# Billing errors that escaped a route
@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": error_detail(exc.error_code, exc.message, str(uuid.uuid4()))},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
