"""End-to-end saga runs against the sandbox app over httpx.ASGITransport."""

import pytest

from campus_storage.config import ApiSettings, UploadSettings
from campus_storage.leave.schemas import LEAVE_ATTACHMENT_POLICY, LeaveRequestCreate
from campus_storage.leave.service import LeaveRequestService
from campus_storage.leave.submission import submit_leave_with_attachments
from campus_storage.uploads import saga as saga_module
from campus_storage.uploads.client import StorageApiClient
from campus_storage.uploads.errors import ApiError
from campus_storage.uploads.saga import SagaCoordinator
from campus_storage.uploads.schemas import BatchOutcome, BusinessRecordRef, UploadItem, UploadStatus

SANDBOX_URL = "http://sandbox"

LEAVE = LeaveRequestCreate(
    leave_type_id=1,
    start_date="2026-05-11",
    end_date="2026-05-12",
    reason="Medical appointment",
)


class DoubleConfirmClient(StorageApiClient):
    """Confirms every upload twice, as a retried request would."""

    async def confirm(self, file_object_id, size_bytes, mime_type=""):
        await super().confirm(file_object_id, size_bytes, mime_type)
        return await super().confirm(file_object_id, size_bytes, mime_type)


@pytest.fixture(autouse=True)
def clear_in_flight():
    saga_module._IN_FLIGHT.clear()
    yield
    saga_module._IN_FLIGHT.clear()


def _pdf(name="note.pdf", size=64):
    return UploadItem.from_bytes(name, b"%PDF" + b"0" * (size - 4), "application/pdf")


def _png(name="scan.png"):
    return UploadItem.from_bytes(name, b"\x89PNG" + b"1" * 20, "image/png")


class TestLeaveSubmission:
    """Submitting a leave request with attachments end to end."""

    @pytest.mark.asyncio
    async def test_all_attachments_land(self, sandbox, sandbox_http):
        async with sandbox_http() as http:
            api = StorageApiClient(ApiSettings(base_url=SANDBOX_URL, chunk_size=16), UploadSettings(), http=http)
            coordinator = SagaCoordinator(api, fetch_policy=True)
            coordinator.add_items([_pdf(), _png()])
            submission = await submit_leave_with_attachments(api, coordinator, LEAVE)

        assert submission.kept
        result = submission.result
        assert result.outcome == BatchOutcome.ALL_SUCCEEDED
        assert result.succeeded == 2
        assert sorted(f.original_filename for f in result.committed_files) == ["note.pdf", "scan.png"]
        assert all(it.status == UploadStatus.DONE for it in coordinator.items)
        assert all(isinstance(it.file_object_id, int) for it in coordinator.items)

        files = sandbox.list_business_files("LEAVE_REQUEST", str(submission.leave_request_id))
        assert len(files) == 2
        leave = LeaveRequestService.get_instance().get(submission.leave_request_id)
        assert leave.status.value == "SUBMITTED"

    @pytest.mark.asyncio
    async def test_no_attachments(self, sandbox_http):
        async with sandbox_http() as http:
            api = StorageApiClient(ApiSettings(base_url=SANDBOX_URL), http=http)
            submission = await submit_leave_with_attachments(api, SagaCoordinator(api), LEAVE.model_dump())
        assert submission.result.outcome == BatchOutcome.EMPTY
        leave = LeaveRequestService.get_instance().get(submission.leave_request_id)
        assert leave.status.value == "SUBMITTED"

    @pytest.mark.asyncio
    async def test_server_rejection_rolls_back(self, sandbox, sandbox_http):
        """Without a client policy the server rejects the .exe and the leave is cancelled."""
        async with sandbox_http() as http:
            api = StorageApiClient(ApiSettings(base_url=SANDBOX_URL), http=http)
            coordinator = SagaCoordinator(api, fetch_policy=False)
            items = [_pdf(), UploadItem.from_bytes("tool.exe", b"MZ", "application/x-msdownload")]
            submission = await submit_leave_with_attachments(api, coordinator, LEAVE, items)

        assert not submission.kept
        assert submission.result.outcome == BatchOutcome.ROLLED_BACK
        assert (submission.result.succeeded, submission.result.failed) == (1, 1)
        assert items[0].status == UploadStatus.DONE
        assert items[1].error_kind == "session_create"
        assert "not allowed" in items[1].error_message

        leave = LeaveRequestService.get_instance().get(submission.leave_request_id)
        assert leave.status.value == "CANCELLED"
        assert sandbox.list_business_files("LEAVE_REQUEST", str(submission.leave_request_id)) == []

    @pytest.mark.asyncio
    async def test_client_policy_rejects_before_network(self, sandbox, sandbox_http):
        async with sandbox_http() as http:
            api = StorageApiClient(ApiSettings(base_url=SANDBOX_URL), http=http)
            coordinator = SagaCoordinator(api, policy=LEAVE_ATTACHMENT_POLICY)
            big = _pdf("big.pdf", size=6 * 1024 * 1024)
            submission = await submit_leave_with_attachments(api, coordinator, LEAVE, [big])

        assert big.error_kind == "validation"
        assert big.file_object_id is None
        assert submission.result.outcome == BatchOutcome.ROLLED_BACK
        assert sandbox.get_file(1) is None

    @pytest.mark.asyncio
    async def test_leave_failure_skips_uploads(self, sandbox_http):
        """If the leave request cannot be saved no upload is attempted."""
        async with sandbox_http() as http:
            api = StorageApiClient(
                ApiSettings(base_url=SANDBOX_URL),
                UploadSettings(leave_request_path="/api/leave/missing-endpoint"),
                http=http,
            )
            coordinator = SagaCoordinator(api)
            items = [_pdf()]
            with pytest.raises(ApiError):
                await submit_leave_with_attachments(api, coordinator, LEAVE, items)
        assert items[0].status == UploadStatus.PENDING


class TestSagaAgainstSandbox:
    """Saga edge cases exercised against the real endpoints."""

    @pytest.mark.asyncio
    async def test_double_confirm_is_reconciled(self, sandbox, sandbox_http):
        """A second confirm answers INVALID_STATE; the listing proves the file landed."""
        leave_id = LeaveRequestService.get_instance().create(LEAVE).id
        async with sandbox_http() as http:
            api = DoubleConfirmClient(ApiSettings(base_url=SANDBOX_URL), http=http)
            coordinator = SagaCoordinator(api)
            items = [_pdf()]
            record = BusinessRecordRef(
                business_ref_type="LEAVE_REQUEST",
                business_ref_id=leave_id,
                bucket_purpose="LEAVE_ATTACHMENT",
            )
            result = await coordinator.run_batch(items, record)

        assert items[0].status == UploadStatus.DONE
        assert result.outcome == BatchOutcome.ALL_SUCCEEDED

    @pytest.mark.asyncio
    async def test_rollback_failure_reported(self, sandbox, sandbox_http):
        """Cancelling an already cancelled leave fails; the batch says so."""
        leave_service = LeaveRequestService.get_instance()
        leave_id = leave_service.create(LEAVE).id
        leave_service.cancel(leave_id)
        async with sandbox_http() as http:
            api = StorageApiClient(ApiSettings(base_url=SANDBOX_URL), http=http)
            coordinator = SagaCoordinator(api)
            record = BusinessRecordRef(
                business_ref_type="LEAVE_REQUEST",
                business_ref_id=leave_id,
                bucket_purpose="LEAVE_ATTACHMENT",
            )
            result = await coordinator.run_batch([UploadItem.from_bytes("x.exe", b"MZ")], record)

        assert result.outcome == BatchOutcome.ROLLBACK_FAILED
        assert "already cancelled" in result.compensation_error
