import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from config import CORS_ORIGINS, DATABASE_NAME, DATABASE_URL, PORT, setup_logging
from errors import (
    AuthenticationError,
    BusinessRuleError,
    DatabaseUnavailableError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ShopError,
)
from routers import admin, auth, cart, categories, delivery, orders, payments, products, promotions, statistics, users

log = logging.getLogger("shop.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except Exception:
            log.exception("Could not create indexes")
    else:
        log.warning("DATABASE_URL is not set, every data endpoint will answer 503")
    yield


# App setup
app = FastAPI(title="Pharmacy Storefront API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (auth, users, categories, products, promotions, cart, orders, payments, delivery, admin, statistics):
    app.include_router(module.router)


# Error mapping
ERROR_STATUS_CODES = {
    InvalidInputError: 400,
    BusinessRuleError: 400,
    NotFoundError: 404,
    AuthenticationError: 401,
    PermissionDeniedError: 403,
    RateLimitError: 429,
    DatabaseUnavailableError: 503,
}


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


def status_for(exc: ShopError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    """Map ShopError subclasses to the matching HTTP status."""
    status_code = status_for(exc)
    if status_code == 400:
        log.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return error_response(status_code, exc.message, **exc.extra)


def _field_errors(errors) -> list:
    fields = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        fields.append({"field": ".".join(loc), "message": err.get("msg", "")})
    return fields


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(400, "Validation failed", errors=_field_errors(exc.errors()))


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return error_response(400, "Validation failed", errors=_field_errors(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error")


# Health and helpers
@app.get("/")
def root():
    return {"message": "Pharmacy storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "running",
        "database": "not available",
        "database_url": "set" if DATABASE_URL else "not set",
        "database_name": DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "connected"
        response["connection_status"] = "Connected"
    except Exception as e:
        log.warning("Database check failed: %s", e)
        response["database"] = f"connected but error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
