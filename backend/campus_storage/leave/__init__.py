"""Leave requests: the business record that owns uploaded attachments."""

from .schemas import (
    LEAVE_ATTACHMENT_POLICY,
    LEAVE_REQUEST_REF_TYPE,
    LeaveRequest,
    LeaveRequestCreate,
    LeaveStatus,
    LeaveSubmission,
)
from .service import LeaveRequestService
from .submission import submit_leave_with_attachments
from .router import router

__all__ = [
    "LEAVE_ATTACHMENT_POLICY",
    "LEAVE_REQUEST_REF_TYPE",
    "LeaveRequest",
    "LeaveRequestCreate",
    "LeaveRequestService",
    "LeaveStatus",
    "LeaveSubmission",
    "router",
    "submit_leave_with_attachments",
]
