from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
from database import database
from routes import webhooks, billing, properties
from services.analytics import AnalyticsSink
from services.event_ledger import StripeEventLedger
from services.plan_registry import plan_registry
from services.profile_store import ProfileStore
from services.stripe_service import BillingSettings, StripeGateway
from services.stripe_webhook_service import StripeWebhookService
from utils.rate_limiter import RateLimiter

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


def build_services(app: FastAPI, db, settings: BillingSettings) -> None:
    """Construct the injected services and hang them on app.state."""
    gateway = StripeGateway(settings)
    gateway.init()

    analytics = AnalyticsSink()
    analytics.init(db)

    profile_store = ProfileStore(db)
    app.state.stripe_gateway = gateway
    app.state.analytics = analytics
    app.state.profile_store = profile_store
    app.state.rate_limiter = RateLimiter()
    app.state.webhook_service = StripeWebhookService(
        gateway=gateway,
        profiles=profile_store,
        analytics=analytics,
        ledger=StripeEventLedger(db),
        registry=plan_registry,
        timeout_seconds=settings.webhook_timeout_seconds,
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Patrimo Billing API")
    await database.connect()
    build_services(app, database.get_db(), BillingSettings.from_env())

    yield

    # Shutdown
    logger.info("Shutting down Patrimo Billing API")
    await app.state.analytics.shutdown()
    await app.state.stripe_gateway.shutdown()
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Patrimo Billing API",
    description="Subscription billing and plan limits for Patrimo",
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
app.include_router(webhooks.router)
app.include_router(billing.router)
app.include_router(properties.router)

@app.get("/api/health")
async def health_check():
    return {"status": "healthy"}

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    logger.warning(
        "Request validation failed path=%s errors=%s",
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body"}
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8001")),
    )
