from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import auth, estates, collaborators, invites, documents, invoices, notes, tasks, activity, billing, webhooks, health
from services.entitlements import EntitlementError

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
    # Tests patch database.get_db and never need a live MongoDB
    if os.environ.get("PYTEST_RUNNING"):
        yield
        return

    # Startup
    logger.info("Starting Estate Admin API")
    await database.connect()

    # Stripe config: log mode (test/live) from key prefix and whether the Pro price is set (no secret keys)
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_SECRET_KEY is not set. Checkout and billing portal will fail.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")
    if not (os.environ.get("STRIPE_WEBHOOK_SECRET") or "").strip():
        logger.error("STRIPE_WEBHOOK_SECRET is not set. Stripe webhooks will be rejected with 500.")
    logger.info(
        "Stripe price IDs pro_monthly=%s",
        (os.environ.get("STRIPE_PRICE_PRO_MONTHLY") or "(missing)"),
    )

    yield

    # Shutdown
    logger.info("Shutting down Estate Admin API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Estate Admin API",
    description="Estate and probate administration with collaborator access and Stripe billing",
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
app.include_router(auth.router)
app.include_router(estates.router)
app.include_router(collaborators.router)
app.include_router(invites.router)
app.include_router(documents.router)
app.include_router(invoices.router)
app.include_router(notes.router)
app.include_router(tasks.router)
app.include_router(activity.router)
app.include_router(billing.router)
app.include_router(webhooks.router)  # Stripe webhooks
app.include_router(health.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Estate Admin",
        "version": "1.0.0",
        "status": "operational"
    }


# Version/build stamp for deployment verification (commit SHA set by CI/CD, e.g. GIT_COMMIT_SHA)
@app.get("/api/version")
async def version_info():
    return {
        "commit_sha": os.getenv("GIT_COMMIT_SHA", os.getenv("BUILD_SHA", "unknown")),
        "environment": os.getenv("ENVIRONMENT", "development"),
    }


# Plan/feature gates raised anywhere below a route become 402 Payment Required
@app.exception_handler(EntitlementError)
async def entitlement_exception_handler(request: Request, exc: EntitlementError):
    return JSONResponse(status_code=402, content=exc.to_dict())


# Validation error handler: log request_id + full errors (loc path)
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
        content={"detail": jsonable_errors(errors), "request_id": request_id},
    )


def jsonable_errors(errors):
    # ctx may hold exception instances that are not JSON serializable
    return [{k: v for k, v in e.items() if k != "ctx"} for e in errors]


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
