"""Query Service: read-only access for the admin view.

No pagination: every listing returns the whole table, newest first. That is
fine for the expected volume but will not scale.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Sequence, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from .repository import PersistenceError

logger = logging.getLogger(__name__)

RecordT = TypeVar(
    "RecordT",
    models.Submission,
    models.Feedback,
    models.ContactMessage,
    models.Registration,
)

# Human-readable labels used in messages
RECORD_LABELS: dict[type, tuple[str, str]] = {
    models.Submission: ("Submission", "submissions"),
    models.Feedback: ("Feedback", "feedback"),
    models.ContactMessage: ("Contact message", "contact messages"),
    models.Registration: ("Registration", "registrations"),
}

LIKE_ESCAPE = "\\"


class NotFound(Exception):
    """Raised when a lookup by id finds no row."""

    def __init__(self, label: str, record_id: int):
        self.label = label
        self.record_id = record_id
        super().__init__(f"{label} not found")


@dataclass
class SubmissionSummary:
    """One row of the submissions overview."""
    id: int
    name: str
    sail_p_no: str | None
    submission_date: datetime
    status: models.SubmissionStatus
    email: str | None
    audit_count: int


def _newest_first(stmt: Select, model: type) -> Select:
    return stmt.order_by(model.submission_date.desc(), model.id.desc())


def _contains_pattern(value: str) -> str:
    escaped = (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
    return f"%{escaped}%"


async def _fetch_all(session: AsyncSession, stmt: Select, *, action: str) -> list:
    try:
        result = await session.execute(stmt)
    except SQLAlchemyError as e:
        logger.error(f"Database error while {action}: {e}", exc_info=True)
        raise PersistenceError(action, str(e)) from e
    return list(result.scalars().all())


async def list_all(session: AsyncSession, model: type[RecordT]) -> list[RecordT]:
    """Return every row of a form table, newest submission first."""
    _, plural = RECORD_LABELS[model]
    stmt = _newest_first(select(model), model)
    return await _fetch_all(session, stmt, action=f"fetching {plural}")


async def get_by_id(session: AsyncSession, model: type[RecordT], record_id: int) -> RecordT:
    """Return one row by primary key.

    Raises:
        NotFound: If no row has this id
        PersistenceError: On database failure
    """
    label, _ = RECORD_LABELS[model]
    try:
        record = await session.get(model, record_id)
    except SQLAlchemyError as e:
        logger.error(f"Database error while fetching {label.lower()} {record_id}: {e}", exc_info=True)
        raise PersistenceError(f"fetching {label.lower()}", str(e)) from e

    if record is None:
        raise NotFound(label, record_id)
    return record


async def search_submissions(
    session: AsyncSession,
    *,
    name: str | None = None,
    sail_p_no: str | None = None,
    status: models.SubmissionStatus | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[models.Submission]:
    """Filter document submissions.

    Every filter that is given narrows the result; empty strings count as not
    given. ``name`` and ``sail_p_no`` match as case-insensitive substrings,
    ``date_from``/``date_to`` are inclusive calendar days.
    """
    stmt = select(models.Submission)

    if name:
        stmt = stmt.where(models.Submission.name.ilike(_contains_pattern(name), escape=LIKE_ESCAPE))
    if sail_p_no:
        stmt = stmt.where(
            models.Submission.sail_p_no.ilike(_contains_pattern(sail_p_no), escape=LIKE_ESCAPE)
        )
    if status is not None:
        stmt = stmt.where(models.Submission.status == status)
    if date_from is not None:
        stmt = stmt.where(models.Submission.submission_date >= datetime.combine(date_from, time.min))
    if date_to is not None:
        upper = datetime.combine(date_to + timedelta(days=1), time.min)
        stmt = stmt.where(models.Submission.submission_date < upper)

    stmt = _newest_first(stmt, models.Submission)
    return await _fetch_all(session, stmt, action="searching submissions")


async def get_audit_trail(session: AsyncSession, submission_id: int) -> list[models.AuditLogEntry]:
    """Return the audit entries of a submission, most recent first.

    Raises:
        NotFound: If the submission does not exist
    """
    await get_by_id(session, models.Submission, submission_id)

    stmt = (
        select(models.AuditLogEntry)
        .where(models.AuditLogEntry.submission_id == submission_id)
        .order_by(models.AuditLogEntry.changed_at.desc(), models.AuditLogEntry.id.desc())
    )
    return await _fetch_all(session, stmt, action="fetching audit trail")


async def summarize_submissions(session: AsyncSession) -> Sequence[SubmissionSummary]:
    """Overview of all submissions with the number of audit entries each."""
    audit_count = func.count(models.AuditLogEntry.id).label("audit_count")
    stmt = (
        select(
            models.Submission.id,
            models.Submission.name,
            models.Submission.sail_p_no,
            models.Submission.submission_date,
            models.Submission.status,
            models.Submission.email,
            audit_count,
        )
        .outerjoin(models.AuditLogEntry, models.AuditLogEntry.submission_id == models.Submission.id)
        .group_by(models.Submission.id)
    )
    stmt = _newest_first(stmt, models.Submission)

    try:
        result = await session.execute(stmt)
    except SQLAlchemyError as e:
        logger.error(f"Database error while summarizing submissions: {e}", exc_info=True)
        raise PersistenceError("fetching submissions summary", str(e)) from e

    return [SubmissionSummary(**row._mapping) for row in result.all()]
