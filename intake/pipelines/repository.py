"""Submission Repository: one insert per form.

Callers validate required fields first; these functions assume they are
present. Optional values that were not provided arrive as ``None`` and are
stored as NULL.
"""

from __future__ import annotations

import logging
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=models.Base)


class PersistenceError(Exception):
    """Raised when the database rejects or loses a write or read.

    ``action`` is a short label ("submitting feedback") that can be shown to
    the client; the underlying fault stays in the logs.
    """

    def __init__(self, action: str, detail: str | None = None):
        self.action = action
        self.detail = detail
        super().__init__(f"Error {action}" + (f": {detail}" if detail else ""))


async def _insert(session: AsyncSession, record: RecordT, *, action: str) -> int:
    try:
        session.add(record)
        await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database error while {action}: {e}", exc_info=True)
        await session.rollback()
        raise PersistenceError(action, str(e)) from e
    return record.id


async def insert_document_submission(
    session: AsyncSession,
    *,
    name: str,
    aadhar_card_path: str,
    pan_card_path: str,
    bank_passbook_path: str,
    passport_photo_path: str,
    sail_p_no: str | None = None,
    email: str | None = None,
    ip_address: str | None = None,
) -> int:
    """Insert a document verification submission and return its id."""

    submission = models.Submission(
        name=name,
        sail_p_no=sail_p_no,
        aadhar_card_path=aadhar_card_path,
        pan_card_path=pan_card_path,
        bank_passbook_path=bank_passbook_path,
        passport_photo_path=passport_photo_path,
        email=email,
        ip_address=ip_address,
    )
    return await _insert(session, submission, action="uploading documents")


async def insert_feedback(
    session: AsyncSession,
    *,
    name: str,
    email: str,
    message: str,
    attachment_path: str | None = None,
) -> int:
    feedback = models.Feedback(
        name=name,
        email=email,
        message=message,
        attachment_path=attachment_path,
    )
    return await _insert(session, feedback, action="submitting feedback")


async def insert_contact(
    session: AsyncSession,
    *,
    name: str,
    email: str,
    message: str,
    subject: str | None = None,
) -> int:
    contact = models.ContactMessage(name=name, email=email, subject=subject, message=message)
    return await _insert(session, contact, action="submitting contact form")


async def insert_registration(
    session: AsyncSession,
    *,
    name: str,
    email: str,
    phone: str | None = None,
    event_name: str | None = None,
) -> int:
    registration = models.Registration(name=name, email=email, phone=phone, event_name=event_name)
    return await _insert(session, registration, action="submitting registration")
