# school_library/main.py
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status as fastapi_status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from school_library.api.deps import get_clock, get_policy, get_unit_of_work
from school_library.api.v1.api import api_router_v1
from school_library.core.config import setup_logging
from school_library.core.exceptions import ConcurrencyConflictError, LibraryError
from school_library.core.rate_limiter import get_rate_limiter, rate_limit_exception_handler
from school_library.db.database import close_db, init_db
from school_library.middleware.logging import RequestLoggingMiddleware
from school_library.repositories.base import UnitOfWork
from school_library.scheduler.jobs import build_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Application startup...")
    uow = await init_db()
    logger.info("Database initialized.")

    scheduler = build_scheduler(uow, get_clock(), get_policy())
    scheduler.start()
    logger.info(f"Scheduler started with timezone: {scheduler.timezone}")
    yield
    logger.info("Application shutdown...")
    if scheduler.running:
        scheduler.shutdown()
    await close_db()


app = FastAPI(
    title="School Library Circulation API",
    description="Catalog, members, borrowing ledger and overdue fines for school libraries.",
    version="1.0.0",
    lifespan=lifespan
)

# --- Error Handling ---
app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)


@app.exception_handler(LibraryError)
async def library_exception_handler(request: Request, exc: LibraryError):
    logger.warning(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.detail}")
    content = {"detail": exc.detail}
    if isinstance(exc, ConcurrencyConflictError):
        content["retryable"] = True
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    logger.warning(f"Validation Error: {exc.errors()}")
    return JSONResponse(
        status_code=fastapi_status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Validation Error", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP Exception: Status={exc.status_code}, Detail={exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.opt(exception=exc).error(f"Unhandled Exception: {exc}")
    return JSONResponse(status_code=fastapi_status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "An internal server error occurred."})

# --- Middleware ---
app.add_middleware(RequestLoggingMiddleware)
app.state.limiter = get_rate_limiter()
app.add_middleware(GZipMiddleware, minimum_size=500)

app.include_router(api_router_v1)


@app.get("/")
async def read_root():
    return {"message": "Welcome to the School Library Circulation API!"}


@app.get("/health/db")
async def health_db(uow: UnitOfWork = Depends(get_unit_of_work)):
    try:
        await uow.ping()
    except Exception as e:
        logger.error(f"Storage ping failed: {e}")
        raise HTTPException(status_code=503, detail="Database connection failed.")
    return {"status": "success", "message": "Database connection is healthy."}
