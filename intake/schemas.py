"""Pydantic request and response models for the HTTP API.

Responses share one envelope: ``{success, message?, data?, error?}``.
Submit responses also carry the generated id under a form-specific key
(``submissionId``, ``feedbackId``, ...).
"""
from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .models import SubmissionStatus

T = TypeVar("T")


# Request bodies. Every field is optional here; required-field checks happen
# in the intake pipeline so they produce the same 400 envelope for JSON and
# form posts alike.
class FormPayload(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        str_max_length=65535,
        coerce_numbers_to_str=True,
    )


class FeedbackIn(FormPayload):
    name: str | None = None
    email: str | None = None
    message: str | None = None


class ContactIn(FormPayload):
    name: str | None = None
    email: str | None = None
    subject: str | None = None
    message: str | None = None


class RegistrationIn(FormPayload):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    event_name: str | None = Field(default=None, alias="eventName")


# Envelope
class Envelope(BaseModel):
    success: bool = True
    message: str | None = None


class ErrorResponse(Envelope):
    """Error response."""
    success: bool = False
    error: str | None = None


class DataResponse(BaseModel, Generic[T]):
    success: bool = True
    data: T


class DocumentSubmitResponse(Envelope):
    submission_id: int = Field(serialization_alias="submissionId")


class FeedbackSubmitResponse(Envelope):
    feedback_id: int = Field(serialization_alias="feedbackId")


class ContactSubmitResponse(Envelope):
    contact_id: int = Field(serialization_alias="contactId")


class RegistrationSubmitResponse(Envelope):
    registration_id: int = Field(serialization_alias="registrationId")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime


# Records
class RecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    submission_date: datetime


class SubmissionOut(RecordOut):
    sail_p_no: str | None = None
    aadhar_card_path: str
    pan_card_path: str
    bank_passbook_path: str
    passport_photo_path: str
    email: str | None = None
    ip_address: str | None = None
    status: SubmissionStatus
    notes: str | None = None
    updated_at: datetime


class SubmissionSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    sail_p_no: str | None = None
    submission_date: datetime
    status: SubmissionStatus
    email: str | None = None
    audit_count: int


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    submission_id: int
    action: str
    old_value: str | None = None
    new_value: str | None = None
    changed_by: str | None = None
    changed_at: datetime


class FeedbackOut(RecordOut):
    email: str
    message: str
    attachment_path: str | None = None


class ContactOut(RecordOut):
    email: str
    subject: str | None = None
    message: str


class RegistrationOut(RecordOut):
    email: str
    phone: str | None = None
    event_name: str | None = None
