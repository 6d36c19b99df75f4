from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from config import get_settings
from dependencies import build_billing_services
from routes import payments, webhooks
from services.billing_errors import BillingError

import os
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    # Startup
    logger.info("Starting Wise Sales Billing API")

    if os.environ.get("PYTEST_RUNNING"):
        # Tests install their own app.state.billing
        yield
        return

    await database.connect()

    if not settings.mercadopago_access_token:
        logger.error("MERCADOPAGO_ACCESS_TOKEN is not set. Subscriptions and webhooks will fail.")
    else:
        logger.info("MERCADOPAGO_MODE = %s (from access token prefix)", settings.mercadopago_mode)

    app.state.billing = build_billing_services(database.get_db(), settings)

    yield

    # Shutdown
    await app.state.billing.aclose()
    await database.close()
    logger.info("Wise Sales Billing API stopped")


app = FastAPI(
    title="Wise Sales Billing API",
    description="Subscription and payment lifecycle for Wise Sales subscribers",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payments.router)
app.include_router(webhooks.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": get_settings().environment
    }


# Billing errors carry their own status code and user-facing message
@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "%s on %s %s: %s%s",
        type(exc).__name__,
        request.method,
        request.url.path,
        exc.message,
        f" ({exc.detail})" if exc.detail else "",
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "retryable": exc.retryable},
    )


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
        status_code=422,
        content={
            "error": "Dados inválidos",
            "detail": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors],
            "request_id": request_id,
        },
    )


# Global exception handler
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
        port=8001,
        reload=get_settings().environment == "development"
    )
