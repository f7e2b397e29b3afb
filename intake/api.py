"""FastAPI app with intake, admin read and health endpoints.

The engine and the file store are built once per application in
``create_app()`` and handed to handlers through dependencies.
"""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any

import pydantic
from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models
from .config import Settings, get_settings
from .db import create_engine_from_settings, create_session_maker, create_tables, get_session
from .logging_config import setup_logging
from .pipelines import intake, queries
from .pipelines.intake import SubmissionValidationError
from .pipelines.queries import NotFound
from .pipelines.repository import PersistenceError
from .schemas import (
    AuditEntryOut,
    ContactIn,
    ContactOut,
    ContactSubmitResponse,
    DataResponse,
    DocumentSubmitResponse,
    ErrorResponse,
    FeedbackIn,
    FeedbackOut,
    FeedbackSubmitResponse,
    HealthResponse,
    RegistrationIn,
    RegistrationOut,
    RegistrationSubmitResponse,
    SubmissionOut,
    SubmissionSummaryOut,
)
from .storage import FileStore, FileTooLarge, IncomingFile, InvalidFile, InvalidPath

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


def get_file_store(request: Request) -> FileStore:
    return request.app.state.file_store


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


async def _read_upload(upload: StarletteUploadFile | None, field_name: str, max_bytes: int) -> IncomingFile | None:
    """Read an upload, stopping one byte past the ceiling so oversize is detectable."""
    if upload is None or not upload.filename:
        return None
    try:
        content = await upload.read(max_bytes + 1)
    finally:
        await upload.close()
    return IncomingFile(
        field_name=field_name,
        filename=upload.filename,
        content_type=upload.content_type,
        content=content,
    )


async def _read_payload(
    request: Request,
    *,
    file_fields: tuple[str, ...] = (),
    max_bytes: int = 0,
) -> tuple[dict[str, Any], dict[str, IncomingFile]]:
    """Read a JSON, urlencoded or multipart body into plain fields and files.

    Only the upload fields named in ``file_fields`` are read; other files are
    ignored.
    """
    content_type = request.headers.get("content-type", "")

    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        try:
            fields: dict[str, Any] = {}
            files: dict[str, IncomingFile] = {}
            for key, value in form.multi_items():
                if isinstance(value, StarletteUploadFile):
                    if key in file_fields and key not in files:
                        incoming = await _read_upload(value, key, max_bytes)
                        if incoming is not None:
                            files[key] = incoming
                else:
                    fields.setdefault(key, value)
        finally:
            await form.close()
        return fields, files

    raw = await request.body()
    if not raw.strip():
        return {}, {}
    try:
        body = json.loads(raw)
    except ValueError as e:
        raise SubmissionValidationError("Invalid request body") from e
    if not isinstance(body, dict):
        raise SubmissionValidationError("Invalid request body")
    return body, {}


def _parse(model: type[pydantic.BaseModel], fields: dict[str, Any]):
    try:
        return model.model_validate(fields)
    except pydantic.ValidationError as e:
        raise SubmissionValidationError("Invalid request body") from e


router = APIRouter(prefix="/api")


# ============================================
# Document upload
# ============================================


@router.post("/document-upload/submit", response_model=DocumentSubmitResponse)
@router.post("/submit", response_model=DocumentSubmitResponse, deprecated=True)
async def submit_documents(
    request: Request,
    name: str | None = Form(None),
    sail_p_no: str | None = Form(None, alias="sailPNo"),
    email: str | None = Form(None),
    aadhar_card: UploadFile | None = File(None, alias="aadharCard"),
    pan_card: UploadFile | None = File(None, alias="panCard"),
    bank_passbook: UploadFile | None = File(None, alias="bankPassbook"),
    passport_photo: UploadFile | None = File(None, alias="passportPhoto"),
    session: AsyncSession = Depends(get_session),
    store: FileStore = Depends(get_file_store),
) -> DocumentSubmitResponse:
    """Upload the four verification documents of one applicant."""
    max_bytes = store.settings.document_max_bytes
    uploads = {
        "aadharCard": aadhar_card,
        "panCard": pan_card,
        "bankPassbook": bank_passbook,
        "passportPhoto": passport_photo,
    }
    files = {field: await _read_upload(upload, field, max_bytes) for field, upload in uploads.items()}

    submission_id = await intake.submit_documents(
        session,
        store,
        name=name,
        sail_p_no=sail_p_no,
        email=email,
        files=files,
        ip_address=_client_ip(request),
    )
    return DocumentSubmitResponse(message="Documents uploaded successfully", submission_id=submission_id)


@router.get("/document-upload/submissions", response_model=DataResponse[list[SubmissionOut]])
@router.get("/submissions", response_model=DataResponse[list[SubmissionOut]])
async def list_submissions(session: AsyncSession = Depends(get_session)):
    rows = await queries.list_all(session, models.Submission)
    return DataResponse[list[SubmissionOut]](data=[SubmissionOut.model_validate(r) for r in rows])


@router.get("/document-upload/summary", response_model=DataResponse[list[SubmissionSummaryOut]])
async def submissions_summary(session: AsyncSession = Depends(get_session)):
    """Submissions overview with the number of audit entries per submission."""
    rows = await queries.summarize_submissions(session)
    return DataResponse[list[SubmissionSummaryOut]](
        data=[SubmissionSummaryOut.model_validate(r) for r in rows]
    )


@router.get("/submissions/{submission_id}", response_model=DataResponse[SubmissionOut])
@router.get("/document-upload/submissions/{submission_id}", response_model=DataResponse[SubmissionOut])
async def get_submission(submission_id: int, session: AsyncSession = Depends(get_session)):
    submission = await queries.get_by_id(session, models.Submission, submission_id)
    return DataResponse[SubmissionOut](data=SubmissionOut.model_validate(submission))


@router.get("/submissions/{submission_id}/audit", response_model=DataResponse[list[AuditEntryOut]])
async def get_submission_audit(submission_id: int, session: AsyncSession = Depends(get_session)):
    entries = await queries.get_audit_trail(session, submission_id)
    return DataResponse[list[AuditEntryOut]](data=[AuditEntryOut.model_validate(e) for e in entries])


@router.get("/search", response_model=DataResponse[list[SubmissionOut]])
async def search_submissions(
    name: str | None = Query(None),
    sail_p_no: str | None = Query(None, alias="sailPNo"),
    status_filter: models.SubmissionStatus | None = Query(None, alias="status"),
    date_from: date | None = Query(None, alias="fromDate"),
    date_to: date | None = Query(None, alias="toDate"),
    session: AsyncSession = Depends(get_session),
):
    """Search document submissions; every given filter must match."""
    rows = await queries.search_submissions(
        session,
        name=name,
        sail_p_no=sail_p_no,
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
    )
    return DataResponse[list[SubmissionOut]](data=[SubmissionOut.model_validate(r) for r in rows])


# ============================================
# Feedback, contact, registration
# ============================================


@router.post("/feedback/submit", response_model=FeedbackSubmitResponse)
async def submit_feedback(
    request: Request,
    session: AsyncSession = Depends(get_session),
    store: FileStore = Depends(get_file_store),
) -> FeedbackSubmitResponse:
    """Accept feedback as JSON or as a form, optionally with an attachment."""
    fields, files = await _read_payload(
        request,
        file_fields=(intake.FEEDBACK_ATTACHMENT_FIELD,),
        max_bytes=store.settings.feedback_max_bytes,
    )
    payload = _parse(FeedbackIn, fields)
    feedback_id = await intake.submit_feedback(
        session,
        store,
        name=payload.name,
        email=payload.email,
        message=payload.message,
        attachment=files.get(intake.FEEDBACK_ATTACHMENT_FIELD),
    )
    return FeedbackSubmitResponse(message="Feedback submitted successfully", feedback_id=feedback_id)


@router.get("/feedback/submissions", response_model=DataResponse[list[FeedbackOut]])
async def list_feedback(session: AsyncSession = Depends(get_session)):
    rows = await queries.list_all(session, models.Feedback)
    return DataResponse[list[FeedbackOut]](data=[FeedbackOut.model_validate(r) for r in rows])


@router.post("/contact/submit", response_model=ContactSubmitResponse)
async def submit_contact(request: Request, session: AsyncSession = Depends(get_session)) -> ContactSubmitResponse:
    fields, _ = await _read_payload(request)
    payload = _parse(ContactIn, fields)
    contact_id = await intake.submit_contact(
        session,
        name=payload.name,
        email=payload.email,
        subject=payload.subject,
        message=payload.message,
    )
    return ContactSubmitResponse(message="Contact form submitted successfully", contact_id=contact_id)


@router.get("/contact/submissions", response_model=DataResponse[list[ContactOut]])
async def list_contact(session: AsyncSession = Depends(get_session)):
    rows = await queries.list_all(session, models.ContactMessage)
    return DataResponse[list[ContactOut]](data=[ContactOut.model_validate(r) for r in rows])


@router.post("/registration/submit", response_model=RegistrationSubmitResponse)
async def submit_registration(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> RegistrationSubmitResponse:
    fields, _ = await _read_payload(request)
    payload = _parse(RegistrationIn, fields)
    registration_id = await intake.submit_registration(
        session,
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        event_name=payload.event_name,
    )
    return RegistrationSubmitResponse(
        message="Registration submitted successfully",
        registration_id=registration_id,
    )


@router.get("/registration/submissions", response_model=DataResponse[list[RegistrationOut]])
async def list_registrations(session: AsyncSession = Depends(get_session)):
    rows = await queries.list_all(session, models.Registration)
    return DataResponse[list[RegistrationOut]](data=[RegistrationOut.model_validate(r) for r in rows])


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="OK", timestamp=datetime.now(timezone.utc))


# ============================================
# Exception handlers
# ============================================


def _error(status_code: int, error: str, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, message=message).model_dump(exclude_none=True),
        headers=headers,
    )


async def validation_error_handler(request: Request, exc: SubmissionValidationError):
    logger.info(f"Rejected {request.url.path}: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "validation_error", exc.message)


async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info(f"Invalid request parameters for {request.url.path}: {exc.errors()}")
    return _error(status.HTTP_400_BAD_REQUEST, "validation_error", "Invalid request parameters")


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Routing and body-parsing errors raised by the framework."""
    logger.info(f"HTTP {exc.status_code} on {request.method} {request.url.path}: {exc.detail}")
    return _error(exc.status_code, "http_error", str(exc.detail), headers=getattr(exc, "headers", None))


async def invalid_file_handler(request: Request, exc: InvalidFile):
    if isinstance(exc, FileTooLarge):
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "file_too_large", str(exc))
    return _error(status.HTTP_400_BAD_REQUEST, "invalid_file", str(exc))


async def not_found_handler(request: Request, exc: NotFound):
    return _error(status.HTTP_404_NOT_FOUND, "not_found", str(exc))


async def persistence_error_handler(request: Request, exc: PersistenceError):
    """Handle storage faults without echoing driver detail to the client."""
    logger.error(f"Persistence error on {request.url.path}: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "persistence_error", f"Error {exc.action}")


async def invalid_path_handler(request: Request, exc: InvalidPath):
    logger.error(f"Storage path error on {request.url.path}: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "storage_error", "Error storing uploaded files")


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.url.path}: {exc}", exc_info=exc)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "Internal server error")


# ============================================
# Application
# ============================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    app_settings: Settings = app.state.settings
    setup_logging(app_settings.logging)
    logger.info(f"{app_settings.app_name} v{app_settings.version} starting up")

    app.state.file_store.ensure_root()
    if app_settings.db.create_tables_on_startup:
        try:
            await create_tables(app.state.engine)
            logger.info("Database tables ready")
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Database initialization error: {e}", exc_info=True)

    yield

    # Shutdown
    logger.info("Application shutting down")
    await app.state.engine.dispose()


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Build the application with its own engine, pool and file store."""
    app_settings = app_settings or get_settings()

    app = FastAPI(
        title=app_settings.app_name,
        version=app_settings.version,
        description="Form intake backend: document verification, feedback, contact and registration",
        lifespan=lifespan,
    )

    engine = create_engine_from_settings(app_settings.db)
    app.state.settings = app_settings
    app.state.engine = engine
    app.state.session_maker = create_session_maker(engine)
    app.state.file_store = FileStore(app_settings.uploads)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SubmissionValidationError, validation_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(InvalidFile, invalid_file_handler)
    app.add_exception_handler(NotFound, not_found_handler)
    app.add_exception_handler(PersistenceError, persistence_error_handler)
    app.add_exception_handler(InvalidPath, invalid_path_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "app": app_settings.app_name,
            "version": app_settings.version,
            "endpoints": {
                "health": "/api/health",
                "document_upload": "/api/document-upload/submit",
                "document_submissions": "/api/document-upload/submissions",
                "search": "/api/search",
                "feedback": "/api/feedback/submit",
                "contact": "/api/contact/submit",
                "registration": "/api/registration/submit",
                "uploads": f"/{app_settings.uploads.url_prefix}",
                "docs": "/docs",
            },
        }

    app.mount(
        f"/{app_settings.uploads.url_prefix}",
        StaticFiles(directory=app.state.file_store.root, check_dir=False),
        name="uploads",
    )

    return app


app = create_app()
