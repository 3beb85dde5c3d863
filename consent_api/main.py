import logging
from contextlib import asynccontextmanager
from typing import Annotated, Callable

from fastapi import Depends, FastAPI, Header, HTTPException, Path, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from consent_api import contacts, message_log, preferences
from consent_api.config import settings
from consent_api.errors import ErrorKind, Result, status_for_error
from consent_api.logging_utils import setup_logging, RequestLoggingMiddleware, log_request_data
from consent_api.metrics import get_metrics, get_metrics_content_type
from consent_api.schemas import (
    CONTACT_ID_PATTERN,
    ContactCreateRequest,
    ContactCreateResponse,
    ContactLookupResponse,
    ContactRef,
    ContactResponse,
    ErrorResponse,
    HealthResponse,
    MessageLogRequest,
    MessageLogResponse,
    PreferenceResponse,
    ResetResponse,
    SuccessResponse,
)
from consent_api.storage import engine, init_db, check_db_health, get_db
from consent_api.utils import verify_api_key


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables
    - Shutdown: close pooled connections
    """
    init_db()
    if settings.PREFERENCE_POLICY == "strict" and not settings.EAGER_PREFERENCE:
        logger.warning("Strict preference policy without eager creation: new contacts have no preference row")
    yield
    engine.dispose()


app = FastAPI(
    title="Contact Consent API",
    description="Contacts, message logs and opt-in/opt-out preferences for an outbound messaging channel",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error or invalid contact reference"},
    401: {"model": ErrorResponse, "description": "Missing or invalid API key"},
    500: {"model": ErrorResponse, "description": "Store unavailable"},
}


def error_response(result: Result) -> JSONResponse:
    """Render a failed Result; the status is a function of its kind only."""
    return JSONResponse(
        status_code=status_for_error(result.error),
        content={"error": result.error.value, "detail": result.message},
    )


def require_api_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """Shared-secret check guarding every /api route."""
    if not verify_api_key(x_api_key, settings.API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid api key"
        )


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed input is a client error, answered before any store access."""
    log_request_data(request, result=ErrorKind.VALIDATION_ERROR.value)
    return JSONResponse(
        status_code=status_for_error(ErrorKind.VALIDATION_ERROR),
        content={
            "error": ErrorKind.VALIDATION_ERROR.value,
            "detail": jsonable_encoder(exc.errors(), exclude={"ctx", "url"}),
        },
    )


_HTTP_ERROR_KINDS = {
    401: ("unauthorized", None),
    404: ("not_found", "Route not found"),
    405: ("method_not_allowed", None),
}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    kind, detail = _HTTP_ERROR_KINDS.get(exc.status_code, ("http_error", None))
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": kind, "detail": detail or exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "detail": "Internal server error"},
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health", response_model=HealthResponse, response_model_exclude_none=True)
async def health() -> HealthResponse:
    return HealthResponse(status="OK", message="Server is up and running")


@app.get("/health/live", response_model=HealthResponse, response_model_exclude_none=True)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse, response_model_exclude_none=True)
def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. API_KEY is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.API_KEY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="API_KEY not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Contact Routes
# =============================================================================

@app.post(
    "/api/contacts",
    response_model=ContactCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={200: {"model": ContactCreateResponse, "description": "Phone number already registered"}, **ERROR_RESPONSES},
    dependencies=[Depends(require_api_key)],
)
def create_contact(
    payload: ContactCreateRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    """
    Register a phone number, or return the contact that already owns it.

    - 201 with existed=false when a new contact was created
    - 200 with existed=true for a repeated (or concurrently raced) number
    """
    result = contacts.register(
        db,
        payload.phone_number,
        eager_preference=settings.EAGER_PREFERENCE,
        id_length=settings.ID_LENGTH,
    )
    if not result.ok:
        log_request_data(request, result=result.error.value)
        return error_response(result)

    registration = result.value
    if registration.existed:
        response.status_code = status.HTTP_200_OK

    log_request_data(
        request,
        contact_id=registration.contact_id,
        existed=registration.existed,
        result="existed" if registration.existed else "created",
    )
    return ContactCreateResponse(id=registration.contact_id, existed=registration.existed)


@app.get(
    "/api/contacts/{phone_number}",
    response_model=ContactLookupResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown phone number"}, **ERROR_RESPONSES},
    dependencies=[Depends(require_api_key)],
)
def get_contact(
    phone_number: Annotated[str, Path(min_length=5, max_length=20)],
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Look up a contact by phone number.

    An unknown number answers {"data": null} or 404 depending on
    CONTACT_NOT_FOUND_MODE.
    """
    result = contacts.lookup(db, phone_number)
    if result.ok:
        return ContactLookupResponse(data=ContactResponse.model_validate(result.value))

    log_request_data(request, result=result.error.value)
    if result.error is ErrorKind.NOT_FOUND and settings.CONTACT_NOT_FOUND_MODE == "empty":
        return ContactLookupResponse(data=None)
    return error_response(result)


# =============================================================================
# Message Log Routes
# =============================================================================

@app.post(
    "/api/messages",
    response_model=MessageLogResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_api_key)],
)
def log_message(
    payload: MessageLogRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Append an inbound message and its optional reply to a contact's log."""
    result = message_log.append(
        db,
        payload.contact_id,
        payload.message_in,
        payload.message_out,
        id_length=settings.ID_LENGTH,
    )
    log_request_data(request, contact_id=payload.contact_id, result=result.error.value if result.error else "created")
    if not result.ok:
        return error_response(result)
    return MessageLogResponse(id=result.value)


# =============================================================================
# Preference Routes
# =============================================================================

def _run_transition(
    transition: Callable[..., Result],
    payload: ContactRef,
    request: Request,
    db: Session,
):
    result = transition(
        db,
        payload.contact_id,
        policy=settings.PREFERENCE_POLICY,
        id_length=settings.ID_LENGTH,
    )
    log_request_data(request, contact_id=payload.contact_id, result=result.error.value if result.error else "ok")
    if not result.ok:
        return error_response(result)
    return SuccessResponse()


TRANSITION_RESPONSES = {404: {"model": ErrorResponse, "description": "No preference row (strict policy)"}, **ERROR_RESPONSES}


@app.post(
    "/api/preferences/opt-in",
    response_model=SuccessResponse,
    responses=TRANSITION_RESPONSES,
    dependencies=[Depends(require_api_key)],
)
def opt_in(payload: ContactRef, request: Request, db: Session = Depends(get_db)):
    """Mark a contact as opted-in and stamp opted_in_at."""
    return _run_transition(preferences.opt_in, payload, request, db)


@app.post(
    "/api/preferences/opt-out",
    response_model=SuccessResponse,
    responses=TRANSITION_RESPONSES,
    dependencies=[Depends(require_api_key)],
)
def opt_out(payload: ContactRef, request: Request, db: Session = Depends(get_db)):
    """Mark a contact as opted-out and stamp opted_out_at."""
    return _run_transition(preferences.opt_out, payload, request, db)


@app.post(
    "/api/preferences/intro-sent",
    response_model=SuccessResponse,
    responses=TRANSITION_RESPONSES,
    dependencies=[Depends(require_api_key)],
)
def intro_sent(payload: ContactRef, request: Request, db: Session = Depends(get_db)):
    """Flag that today's introductory message went out to a contact."""
    return _run_transition(preferences.mark_intro_sent, payload, request, db)


@app.post(
    "/api/preferences/reset-daily",
    response_model=ResetResponse,
    responses={500: ERROR_RESPONSES[500], 401: ERROR_RESPONSES[401]},
    dependencies=[Depends(require_api_key)],
)
def reset_daily(request: Request, db: Session = Depends(get_db)):
    """
    Clear intro_sent_today across preferences in a single statement.

    Scope and opt-state handling follow RESET_SCOPE and RESET_OPT_STATE.
    """
    result = preferences.reset_daily_flags(
        db,
        scope=settings.RESET_SCOPE,
        reset_opt_state=settings.RESET_OPT_STATE,
    )
    if not result.ok:
        log_request_data(request, result=result.error.value)
        return error_response(result)

    log_request_data(request, affected_count=result.value, result="ok")
    return ResetResponse(affected_count=result.value)


@app.get(
    "/api/preferences/{contact_id}",
    response_model=PreferenceResponse,
    responses={404: {"model": ErrorResponse, "description": "Preferences not found"}, **ERROR_RESPONSES},
    dependencies=[Depends(require_api_key)],
)
def get_preferences(
    contact_id: Annotated[str, Path(min_length=1, max_length=32, pattern=CONTACT_ID_PATTERN)],
    request: Request,
    db: Session = Depends(get_db),
):
    """Return the stored preference record of a contact."""
    result = preferences.get(db, contact_id)
    if not result.ok:
        log_request_data(request, contact_id=contact_id, result=result.error.value)
        return error_response(result)
    return PreferenceResponse.model_validate(result.value)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
