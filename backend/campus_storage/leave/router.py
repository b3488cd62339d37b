"""Leave request endpoints.

Endpoints:
    POST /api/leave/request: Submit a leave request
    GET  /api/leave/{leave_request_id}: Fetch a leave request
    POST /api/leave/{leave_request_id}/cancel: Cancel it and drop its attachments
"""
import logging

from fastapi import APIRouter, Request

from ..storage.router import error_response
from ..storage.service import StorageServiceError
from .schemas import LeaveRequestCreate
from .service import LeaveRequestService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/leave", tags=["leave"])


def _service() -> LeaveRequestService:
    return LeaveRequestService.get_instance()


@router.post("/request", status_code=201)
async def submit_leave_request(body: LeaveRequestCreate) -> dict:
    """Create a SUBMITTED leave request. The response carries its ``id``."""
    leave = _service().create(body)
    return leave.model_dump(by_alias=True, mode="json")


@router.get("/{leave_request_id}")
async def get_leave_request(request: Request, leave_request_id: int):
    leave = _service().get(leave_request_id)
    if leave is None:
        return error_response(request, StorageServiceError(
            "NOT_FOUND", f"Leave request {leave_request_id} not found", status_code=404
        ))
    return leave.model_dump(by_alias=True, mode="json")


@router.post("/{leave_request_id}/cancel")
async def cancel_leave_request(request: Request, leave_request_id: int):
    try:
        leave = _service().cancel(leave_request_id)
    except StorageServiceError as exc:
        logger.info("Cancel of leave request %s rejected: %s", leave_request_id, exc.code)
        return error_response(request, exc)
    return leave.model_dump(by_alias=True, mode="json")
