"""
backend/betmenow/main.py

Purpose:
    FastAPI application bootstrap: database lifecycle, middleware and router
    wiring, and the mapping of service/driver exceptions to HTTP responses.

Dependencies:
    - betmenow.database
    - betmenow.services.bet_errors
"""

import logging
from contextlib import asynccontextmanager

from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    OperationFailure,
    PyMongoError,
)

from betmenow.config import settings
import betmenow.database as _db
from betmenow.database import close_db, connect_db
from betmenow.middleware.logging import StructuredLoggingMiddleware, setup_logging
from betmenow.services.bet_errors import BetError

logger = logging.getLogger("betmenow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await connect_db()
    logger.info("Connected to MongoDB database '%s'", settings.MONGO_DB)
    yield
    await close_db()


app = FastAPI(
    title="BetMeNow",
    description="Friendly peer-to-peer bets between friends",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)
app.add_middleware(StructuredLoggingMiddleware)

from betmenow.routers.auth import router as auth_router
from betmenow.routers.bets import router as bets_router
from betmenow.routers.leaderboard import router as leaderboard_router
from betmenow.routers.user import router as user_router

app.include_router(auth_router)
app.include_router(user_router)
app.include_router(bets_router)
app.include_router(leaderboard_router)


@app.exception_handler(BetError)
async def bet_error_handler(request: Request, exc: BetError):
    level = logging.ERROR if exc.retryable else logging.INFO
    logger.log(
        level, "%s on %s %s: %s",
        type(exc).__name__, request.method, request.url.path, exc.detail,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(InvalidId)
async def invalid_object_id_handler(request: Request, exc: InvalidId):
    return JSONResponse(status_code=400, content={"detail": "Invalid ID."})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Flatten validation errors to field/message pairs."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(part) for part in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={"detail": "Duplicate entry."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    # ServerSelectionTimeoutError is a ConnectionFailure
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content={"detail": "Service temporarily unavailable.", "retryable": True},
    )


@app.exception_handler(OperationFailure)
async def db_operation_handler(request: Request, exc: OperationFailure):
    logger.error("Database operation error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning("ValueError on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": "Invalid input."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except PyMongoError:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
    }
