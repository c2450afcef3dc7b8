"""HTTP API for the library lending backend.

All requests and responses use JSON. Authenticated endpoints expect an
``Authorization: Bearer <token>`` header carrying a token issued by
``/register`` or ``/login``. Every error response has the shape
``{"error": "<message>"}``.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import AuthService
from .borrowing import BorrowingService
from .catalog import CatalogService
from .config import Settings, configure_logging, settings
from .database import Database
from .errors import ForbiddenError, LibraryError, RateLimitedError, ValidationError
from .models import SQLITE_MAX_INT, User, to_iso, utcnow
from .rate_limit import SlidingWindowRateLimiter
from .schemas import BorrowRequest, LoginRequest, RegisterRequest, ReturnRequest, format_validation_errors

logger = logging.getLogger(__name__)

router = APIRouter()

# --- Security ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> User:
    """Dependency resolving the bearer token to an active user."""
    token = credentials.credentials if credentials else None
    return request.app.state.auth_service.authenticate(token)


def limit_registrations(request: Request) -> None:
    request.app.state.register_limiter(request)


def limit_logins(request: Request) -> None:
    request.app.state.login_limiter(request)


def _parse_id(raw: str, label: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {label} ID")
    if value < 1 or value > SQLITE_MAX_INT:
        raise ValidationError(f"Invalid {label} ID")
    return value


# --- Health check ---
@router.get("/health")
def health(request: Request):
    """Liveness probe; also reports whether the database answers."""
    db_ok = request.app.state.db.ping()
    return {
        "status": "OK",
        "message": "Library App Backend is running",
        "timestamp": to_iso(utcnow()),
        "database": "connected" if db_ok else "unavailable",
    }


# --- Authentication ---
@router.post("/register", status_code=201, dependencies=[Depends(limit_registrations)])
def register(payload: RegisterRequest, request: Request):
    return request.app.state.auth_service.register(payload)


@router.post("/login", dependencies=[Depends(limit_logins)])
def login(payload: LoginRequest, request: Request):
    return request.app.state.auth_service.login(payload)


@router.get("/profile")
def profile(request: Request, user: User = Depends(get_current_user)):
    return {"user": request.app.state.auth_service.get_profile(user.id)}


# --- Catalog ---
@router.get("/books")
def list_books(
    request: Request,
    page: int = Query(1, ge=1, le=SQLITE_MAX_INT, description="Page number"),
    limit: Optional[int] = Query(None, ge=1, description="Books per page"),
    category: Optional[str] = Query(None, description="Category name filter"),
    author: Optional[str] = Query(None, description="Author name filter"),
    search: Optional[str] = Query(None, description="Matches title, author or description"),
):
    result = request.app.state.catalog.list_books(
        page, limit, category=category, author=author, search=search
    )
    return {"books": [book.to_dict() for book in result.items], "pagination": result.pagination()}


@router.get("/books/{book_id}")
def get_book(book_id: str, request: Request):
    return request.app.state.catalog.get_book(_parse_id(book_id, "book"))


# --- Borrowing ---
@router.post("/borrow", status_code=201)
def borrow(payload: BorrowRequest, request: Request, user: User = Depends(get_current_user)):
    if payload.user_id != user.id and not user.is_staff:
        raise ForbiddenError("You can only borrow books for yourself")
    return request.app.state.borrowing.borrow(payload.user_id, payload.book_id, payload.due_date)


@router.post("/return")
def return_book(payload: ReturnRequest, request: Request, user: User = Depends(get_current_user)):
    borrowing: BorrowingService = request.app.state.borrowing
    record = borrowing.get_record(payload.borrow_id)
    if record is not None and record.user_id != user.id and not user.is_staff:
        raise ForbiddenError("You can only return your own books")
    return borrowing.return_book(payload.borrow_id)


@router.get("/my-borrows/{user_id}")
def my_borrows(
    user_id: str,
    request: Request,
    status: str = Query("all", description="all | active | returned | overdue"),
    page: int = Query(1, ge=1, le=SQLITE_MAX_INT),
    limit: Optional[int] = Query(None, ge=1),
    user: User = Depends(get_current_user),
):
    target = _parse_id(user_id, "user")
    if target != user.id and not user.is_staff:
        raise ForbiddenError()
    result = request.app.state.borrowing.list_user_borrows(target, status=status, page=page, limit=limit)
    return {"borrowRecords": result.items, "pagination": result.pagination()}


# --- Error handling ---
def _error(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


async def handle_library_error(request: Request, exc: LibraryError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.message, headers)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(400, format_validation_errors(exc.errors()))


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        return _error(404, "Route not found")
    return _error(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Internal server error")


# --- Application factory ---
def create_app(app_settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """Build the API around an explicit settings object and database handle.

    The database is connected (and its schema ensured) when the application
    starts, and closed at shutdown if the application opened it.
    """
    app_settings = app_settings or settings
    configure_logging(app_settings.log_level)
    db = database or Database(app_settings.database_path, pool_size=app_settings.database_pool_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        opened_here = not db.is_connected
        db.connect()
        db.create_tables()
        try:
            yield
        finally:
            if opened_here:
                db.close()

    app = FastAPI(title=app_settings.app_name, version=app_settings.app_version, lifespan=lifespan)

    app.state.settings = app_settings
    app.state.db = db
    app.state.auth_service = AuthService(db, app_settings)
    app.state.catalog = CatalogService(db, app_settings)
    app.state.borrowing = BorrowingService(db, app_settings)
    app.state.register_limiter = SlidingWindowRateLimiter(
        app_settings.register_rate_limit,
        app_settings.register_rate_window,
        message="Too many accounts created from this IP, please try again after an hour.",
        trust_proxy=app_settings.trust_proxy,
    )
    app.state.login_limiter = SlidingWindowRateLimiter(
        app_settings.login_rate_limit,
        app_settings.login_rate_window,
        message="Too many login attempts from this IP, please try again after 15 minutes.",
        trust_proxy=app_settings.trust_proxy,
    )

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[app_settings.frontend_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept", "Authorization"],
    )

    # --- Body size limit and request logging ---
    @app.middleware("http")
    async def limit_body_and_log(request: Request, call_next):
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > app_settings.max_body_size:
            logger.warning("Rejected %s %s: body of %s bytes", request.method, request.url.path, length)
            return _error(413, "Request body too large")
        if not length and "chunked" in request.headers.get("transfer-encoding", "").lower():
            logger.warning("Rejected %s %s: chunked body without Content-Length", request.method, request.url.path)
            return _error(411, "Content-Length required")

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    app.add_exception_handler(LibraryError, handle_library_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(router)
    return app


app = create_app()
