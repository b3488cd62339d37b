"""Pydantic schemas for leave requests.

A leave request is the business record that owns a batch of attachments.
It is created SUBMITTED and moves to CANCELLED when the student withdraws it
or when the attachment upload saga rolls it back.
"""
import time
from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..uploads.schemas import BatchOutcome, BatchResult, UploadPolicy

LEAVE_REQUEST_REF_TYPE = "LEAVE_REQUEST"

# Mirrors the seeded LEAVE_ATTACHMENT storage config
LEAVE_ATTACHMENT_POLICY = UploadPolicy(
    bucket_purpose="LEAVE_ATTACHMENT",
    max_file_size=5 * 1024 * 1024,
    allowed_extensions={"pdf", "jpg", "jpeg", "png"},
    allowed_mime_types={"application/pdf", "image/jpeg", "image/png"},
)


class LeaveStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    CANCELLED = "CANCELLED"


class LeaveRequestCreate(BaseModel):
    """Request body for submitting a leave request."""
    model_config = ConfigDict(populate_by_name=True)

    leave_type_id: int = Field(..., alias="leaveTypeId", ge=1)
    start_date: date = Field(..., alias="startDate")
    end_date: date = Field(..., alias="endDate")
    reason: str = Field(..., min_length=1, max_length=1000)

    @model_validator(mode="after")
    def _check_dates(self) -> "LeaveRequestCreate":
        if self.end_date < self.start_date:
            raise ValueError("endDate must not be earlier than startDate")
        if not self.reason.strip():
            raise ValueError("reason must not be blank")
        return self

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days + 1


class LeaveRequest(BaseModel):
    """Stored leave request returned by the API."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    leave_type_id: int = Field(..., alias="leaveTypeId")
    start_date: date = Field(..., alias="startDate")
    end_date: date = Field(..., alias="endDate")
    days: int
    reason: str
    status: LeaveStatus = LeaveStatus.SUBMITTED
    created_at: float = Field(default_factory=time.time, alias="createdAt")
    cancelled_at: Optional[float] = Field(None, alias="cancelledAt")


class LeaveSubmission(BaseModel):
    """Result of submitting a leave request together with its attachments."""
    leave_request_id: int
    result: BatchResult

    @property
    def kept(self) -> bool:
        """True when every attachment landed (or there were none)."""
        return self.result.outcome in (BatchOutcome.EMPTY, BatchOutcome.ALL_SUCCEEDED)
