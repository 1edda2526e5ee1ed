from contextlib import asynccontextmanager
import logging
import os
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv
from src.api.v1 import router as v1_endpoint
from src.scheduler import scheduler_enabled, start_order_scheduler, stop_order_scheduler
from src.utils.errors import OrderFlowError
from src.utils.logger import HealthCheckFilter, api_logger, scheduler_logger
from src.utils.rate_limit import limiter_from_env


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Load environment variables
    load_dotenv()
    env = (os.environ.get("ENV") or os.environ.get("APP_ENV") or "development").lower()
    api_logger.info(f"Starting Hemline API ({env})")

    app.state.rate_limiter = limiter_from_env()
    logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())

    # Startup
    started = scheduler_enabled()
    if started:
        scheduler_logger.info("Starting order scheduler...")
        start_order_scheduler()
    else:
        scheduler_logger.info("Order scheduler disabled (SCHEDULER_ENABLED=false)")
    yield
    # Shutdown
    if started:
        scheduler_logger.info("Stopping order scheduler...")
        stop_order_scheduler()


app = FastAPI(
    title="API",
    description="Hemline Market API",
    version="1.0.0",
    lifespan=lifespan,
)

origins = [os.environ.get("SITE_URL") or "https://hemlinemarket.com"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------------
# Error envelope: {"error": ..., "code": ...}
# -------------------------
@app.exception_handler(OrderFlowError)
async def order_flow_error_handler(request: Request, exc: OrderFlowError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "code": exc.code},
        headers=exc.headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={
            "error": f"{field}: {message}" if field else message,
            "code": "validation_error",
        },
    )


app.include_router(v1_endpoint, prefix="/api/v1", tags=["API Version 1"])


@app.get("/", tags=["Root"])
def read_root():
    return {"status": "ok", "message": "Welcome to the Hemline Market API"}


@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint for monitoring"""
    return {"status": "healthy", "message": "Hemline API is running", "version": "1.0.0"}


try:
    app.openapi()
    api_logger.info("OpenAPI schema generated successfully")
except Exception as e:
    api_logger.exception("Failed to generate OpenAPI schema: %s", e)

# To run this application for development:
# uvicorn main:app --reload
