import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_sync_svc.config import get_log_level
from billing_sync_svc.exceptions import BillingError
from billing_sync_svc.models.base import init_db
from billing_sync_svc.routers import account_router, subscription_router

logging.basicConfig(level=get_log_level())


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Billing Sync Service", lifespan=lifespan)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logging.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        field = errors[0].get("loc", ["body"])[-1]
        message = f"{field}: {errors[0].get('msg')}"
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


# Subscription routes under '/api/subscriptions', account lifecycle under '/api/account'
app.include_router(subscription_router.router, prefix="/api/subscriptions")
app.include_router(account_router.router, prefix="/api/account")
