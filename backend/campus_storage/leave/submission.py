"""Leave submission with attachments.

The student leave form first saves the leave request, then uploads its
attachments against ``LEAVE_REQUEST/<id>``. If any attachment fails, the
saga cancels the request so no half-documented request is left behind.
"""
import logging
from typing import Any, Dict, List, Optional, Union

from ..uploads.client import StorageApiClient
from ..uploads.errors import ApiError
from ..uploads.saga import SagaCoordinator
from ..uploads.schemas import BusinessRecordRef, UploadItem
from .schemas import LeaveRequestCreate, LeaveSubmission

logger = logging.getLogger(__name__)


def _saved_id(saved: Dict[str, Any]) -> int:
    # Older backends answer with leaveRequestId instead of id
    value = saved.get("id") or saved.get("leaveRequestId")
    if value is None:
        raise ApiError("Leave request was saved but the response has no id")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ApiError(f"Leave request id is not numeric: {value!r}") from exc


async def submit_leave_with_attachments(
    client: StorageApiClient,
    coordinator: SagaCoordinator,
    payload: Union[LeaveRequestCreate, Dict[str, Any]],
    items: Optional[List[UploadItem]] = None,
) -> LeaveSubmission:
    """Submit a leave request and upload its attachments.

    Args:
        client: API client for the leave and storage endpoints.
        coordinator: Saga coordinator that runs the attachment batch.
        payload: Leave request body.
        items: Attachments; defaults to the coordinator's queued items.

    Raises:
        ApiError: the leave request itself could not be saved. No upload is
            attempted in that case.
        BatchInProgressError: the coordinator is already running a batch.
    """
    if isinstance(payload, LeaveRequestCreate):
        body = payload.model_dump(by_alias=True, mode="json")
    else:
        body = LeaveRequestCreate.model_validate(payload).model_dump(by_alias=True, mode="json")

    saved = await client.create_leave_request(body)
    leave_request_id = _saved_id(saved)
    logger.info("Leave request %s saved, uploading attachments", leave_request_id)

    settings = client.upload_settings
    record = BusinessRecordRef(
        business_ref_type=settings.business_ref_type,
        business_ref_id=leave_request_id,
        bucket_purpose=settings.bucket_purpose,
    )
    if items is None:
        result = await coordinator.run_pending(record)
    else:
        result = await coordinator.run_batch(items, record)
    return LeaveSubmission(leave_request_id=leave_request_id, result=result)
