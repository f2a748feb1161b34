"""
Meal Saver Billing Backend - FastAPI Application

Main entry point for the backend API.
Provides the Stripe and Clerk webhooks and the subscription endpoints.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    MealSaverError,
    ValidationError,
    NotFoundError,
    DuplicateError,
    BillingProviderError,
    WebhookVerificationError,
    SubscriptionCancellationError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"Meal Saver Backend starting in {settings.environment} mode...")
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set, Stripe webhooks will be rejected")
    if not settings.clerk_webhook_secret:
        logger.warning("CLERK_WEBHOOK_SECRET not set, Clerk webhooks will be rejected")

    yield

    # Shutdown
    logger.info("Meal Saver Backend shutting down...")


app = FastAPI(
    title="Meal Saver Billing",
    description="Subscription, checkout and user lifecycle backend for Meal Saver",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(DuplicateError)
async def duplicate_error_handler(request: Request, exc: DuplicateError):
    """Handle unique constraint conflicts."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(BillingProviderError)
async def billing_provider_error_handler(request: Request, exc: BillingProviderError):
    """Stripe rejected the call; pass its message through."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(WebhookVerificationError)
async def webhook_verification_error_handler(request: Request, exc: WebhookVerificationError):
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(SubscriptionCancellationError)
async def cancellation_error_handler(request: Request, exc: SubscriptionCancellationError):
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


@app.exception_handler(MealSaverError)
async def general_error_handler(request: Request, exc: MealSaverError):
    """Handle all other application errors."""
    logger.error(f"Unhandled application error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "meal-saver-billing"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Meal Saver Billing API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import subscriptions, webhooks  # noqa: E402

app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
