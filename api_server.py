#!/usr/bin/env python3

"""
API server for the debt tracker. Provides endpoints for liability provider
connections, account sync and the debt dashboard.
"""

import os
import logging
import contextlib

from dotenv import load_dotenv

from decouple import config
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from utils.liabilities.abstract_provider import ProviderError

# Configure logging (ensure this is done early)
logger = logging.getLogger("debt-tracker-api-server")
logger.setLevel(logging.INFO)
logging_handler = logging.StreamHandler()
logging_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
logger.addHandler(logging_handler)

# Only load .env file in local development; deployed environments inject variables.
if os.getenv("ENVIRONMENT", "development").lower() == "development":
    load_dotenv(override=True)
    logger.info("Loaded environment variables from .env file for local development.")
else:
    logger.info("Skipping .env file loading. Assuming environment variables are managed externally.")

# Track startup errors
startup_errors = []


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("LIFESPAN: Starting API server...")

    app.state.PLAID_ENV = config("PLAID_ENV", default="sandbox")
    app.state.METHOD_ENV = config("METHOD_ENV", default="dev")

    try:
        from utils.liabilities.provider_manager import get_provider_manager
        manager = get_provider_manager()
        for provider in manager.get_available_providers():
            if not provider['available']:
                logger.warning(f"Provider {provider['source']} is registered but not configured")
    except Exception as e:
        logger.error(f"Failed to initialize provider manager: {e}")
        startup_errors.append(f"Provider manager initialization failed: {str(e)}")

    logger.info(f"API server startup process complete with {len(startup_errors)} errors/warnings.")

    yield

    logger.info("Shutting down API server...")


# Create FastAPI app with lifespan
app = FastAPI(
    title="Debt Tracker API",
    description="API for aggregating liabilities from Plaid, Method, demo data and manual entry.",
    version="1.0.0",
    lifespan=lifespan
)

# Register modular route modules
from routes.provider_routes import router as provider_router
from routes.debt_account_routes import router as debt_account_router
app.include_router(provider_router)
app.include_router(debt_account_router)

# Add CORS middleware with restricted origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        os.getenv("FRONTEND_URL", "http://localhost:3000"),
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    """Render provider errors that escape a route without leaking internals."""
    logger.error(f"Unhandled provider error on {request.url.path}: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "startup_errors": len(startup_errors)}


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting API server for local development...")
    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=int(os.getenv("BIND_PORT", 8000)),
        reload=True,
        log_level="info"
    )
