"""Intake orchestration for the four forms.

Each submission goes through the same steps:
1. Check required fields (and required files) before touching disk
2. Validate every uploaded file (type, size, content) in a worker thread
3. Stage and place files through a FileStore batch
4. Insert the row

A failure at any step leaves neither a row nor files behind.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from ..storage import FileStore, IncomingFile
from . import repository

logger = logging.getLogger(__name__)

DOCUMENT_CATEGORY = "document-upload"
FEEDBACK_CATEGORY = "feedback-form"

# Form field name -> submissions column
DOCUMENT_FILE_FIELDS = {
    "aadharCard": "aadhar_card_path",
    "panCard": "pan_card_path",
    "bankPassbook": "bank_passbook_path",
    "passportPhoto": "passport_photo_path",
}
FEEDBACK_ATTACHMENT_FIELD = "attachment"


class SubmissionValidationError(Exception):
    """Raised when a submission lacks required fields or files."""

    def __init__(self, message: str, missing: list[str] | None = None):
        self.message = message
        self.missing = missing or []
        super().__init__(message if not self.missing else f"{message}: {', '.join(self.missing)}")


def _is_blank(value: str | None) -> bool:
    return value is None or not value.strip()


def _missing_fields(**values: str | None) -> list[str]:
    return [field for field, value in values.items() if _is_blank(value)]


def _require(**values: str | None) -> None:
    missing = _missing_fields(**values)
    if missing:
        raise SubmissionValidationError("Missing required fields", missing)


async def submit_documents(
    session: AsyncSession,
    store: FileStore,
    *,
    name: str | None,
    sail_p_no: str | None,
    email: str | None,
    files: Mapping[str, IncomingFile | None],
    ip_address: str | None,
) -> int:
    """Accept a document verification submission.

    Args:
        session: Database session
        store: Upload file store
        name: Applicant name (required)
        sail_p_no: Employee number (optional)
        email: Contact email (optional)
        files: Uploads keyed by form field name; all four document fields required
        ip_address: Client network address

    Returns:
        The generated submission id

    Raises:
        SubmissionValidationError: If the name or any of the four files is missing
        InvalidFile: If a file has a disallowed type, is too large or unreadable
        PersistenceError: If the insert fails
    """
    missing = _missing_fields(name=name)
    missing += [field for field in DOCUMENT_FILE_FIELDS if files.get(field) is None]
    if missing:
        raise SubmissionValidationError("Missing required fields or files", missing)

    max_bytes = store.settings.document_max_bytes
    checked = {
        field: await asyncio.to_thread(store.check, files[field], max_bytes=max_bytes)
        for field in DOCUMENT_FILE_FIELDS
    }

    with store.batch(DOCUMENT_CATEGORY) as batch:
        paths = {
            column: await asyncio.to_thread(batch.add, checked[field])
            for field, column in DOCUMENT_FILE_FIELDS.items()
        }
        # Files must be in place before the row that points at them exists
        batch.commit()
        submission_id = await repository.insert_document_submission(
            session,
            name=name,
            sail_p_no=sail_p_no,
            email=email,
            ip_address=ip_address,
            **paths,
        )

    logger.info(f"Accepted document submission {submission_id} for {name!r}")
    return submission_id


async def submit_feedback(
    session: AsyncSession,
    store: FileStore,
    *,
    name: str | None,
    email: str | None,
    message: str | None,
    attachment: IncomingFile | None = None,
) -> int:
    """Accept a feedback submission with an optional attachment."""
    _require(name=name, email=email, message=message)

    if attachment is None:
        feedback_id = await repository.insert_feedback(session, name=name, email=email, message=message)
    else:
        checked = await asyncio.to_thread(
            store.check, attachment, max_bytes=store.settings.feedback_max_bytes
        )
        with store.batch(FEEDBACK_CATEGORY) as batch:
            attachment_path = await asyncio.to_thread(batch.add, checked)
            batch.commit()
            feedback_id = await repository.insert_feedback(
                session,
                name=name,
                email=email,
                message=message,
                attachment_path=attachment_path,
            )

    logger.info(f"Accepted feedback {feedback_id}")
    return feedback_id


async def submit_contact(
    session: AsyncSession,
    *,
    name: str | None,
    email: str | None,
    message: str | None,
    subject: str | None = None,
) -> int:
    _require(name=name, email=email, message=message)
    contact_id = await repository.insert_contact(
        session, name=name, email=email, subject=subject, message=message
    )
    logger.info(f"Accepted contact message {contact_id}")
    return contact_id


async def submit_registration(
    session: AsyncSession,
    *,
    name: str | None,
    email: str | None,
    phone: str | None = None,
    event_name: str | None = None,
) -> int:
    _require(name=name, email=email)
    registration_id = await repository.insert_registration(
        session, name=name, email=email, phone=phone, event_name=event_name
    )
    logger.info(f"Accepted registration {registration_id} for event {event_name!r}")
    return registration_id
