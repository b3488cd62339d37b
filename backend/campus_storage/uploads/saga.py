"""Presigned upload saga.

The SagaCoordinator drives every UploadItem of a batch through

    validate -> create session -> PUT bytes -> confirm

one item at a time, in list order. A failure marks only that item ``error``;
the loop moves on. Once every item has settled, a batch with failures gets
exactly one compensating cancel of its business record; a fully successful
batch gets one listing of committed files so the UI can refresh.

Concurrency:
    One asyncio event loop, one network call in flight. ``abort()`` cancels
    that call, marks the current item ``error`` and leaves the remaining
    items ``pending`` (abandoned). An aborted PUT is never confirmed.

    ``run_batch`` refuses to start while another batch for the same business
    record is running, in this or any other coordinator.
"""
import asyncio
import logging
from typing import Awaitable, List, Optional, Set, TypeVar

from .client import StorageApiClient
from .errors import (
    ApiError,
    BatchInProgressError,
    CompensationError,
    FatalConfirmError,
    InterruptedUploadError,
    ReconcilableConfirmError,
    SessionCreateError,
    TransferAbortedError,
    TransferError,
    UploadError,
    ValidationError,
)
from .policy import validate
from .progress import ProgressStore
from .schemas import (
    BatchOutcome,
    BatchResult,
    BusinessRecordRef,
    CommittedFile,
    UploadItem,
    UploadPolicy,
    UploadStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Business records with a batch in flight, shared by all coordinators
_IN_FLIGHT: Set[str] = set()


def batch_message(outcome: BatchOutcome, succeeded: int, not_done: int, total: int) -> str:
    """User-facing summary; one distinct text per outcome."""
    if outcome == BatchOutcome.EMPTY:
        return "No attachments to upload"
    if outcome == BatchOutcome.ALL_SUCCEEDED:
        return f"All {succeeded} attachments uploaded"
    if outcome == BatchOutcome.ROLLED_BACK:
        return f"{not_done} of {total} attachments failed, submission rolled back"
    return f"{not_done} of {total} attachments failed and rollback failed, manual cleanup required"


class SagaCoordinator:
    """Owns an upload batch and runs the create/put/confirm saga over it.

    Args:
        client: API client for the storage backend.
        progress: Store that receives every phase transition. A fresh one is
            created when omitted.
        policy: Upload policy checked before any network call for an item.
        fetch_policy: When no policy is given, look the bucket purpose up in
            the backend's storage configs at the start of each batch. On by
            default; pass False to leave all checks to the server.
    """

    def __init__(
        self,
        client: StorageApiClient,
        progress: Optional[ProgressStore] = None,
        policy: Optional[UploadPolicy] = None,
        fetch_policy: bool = True,
    ):
        self._client = client
        self.progress = progress or ProgressStore()
        self._policy = policy
        self._fetch_policy = fetch_policy
        self._items: List[UploadItem] = []
        self._running: Optional[BusinessRecordRef] = None
        self._current_op: Optional[asyncio.Task] = None
        self._abort_requested = False

    # ------------------------------------------------------------------
    # Item list
    # ------------------------------------------------------------------

    @property
    def items(self) -> List[UploadItem]:
        return list(self._items)

    @property
    def is_running(self) -> bool:
        return self._running is not None

    def add_items(self, items: List[UploadItem]) -> None:
        """Queue files for the next batch."""
        if self.is_running:
            raise BatchInProgressError("Cannot add files while a batch is running")
        self._items.extend(items)

    def remove_item(self, index: int) -> UploadItem:
        if self.is_running:
            raise BatchInProgressError("Cannot remove files while a batch is running")
        return self._items.pop(index)

    def clear(self) -> None:
        if self.is_running:
            raise BatchInProgressError("Cannot clear files while a batch is running")
        self._items = []

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def run_pending(self, record: BusinessRecordRef) -> BatchResult:
        """Run a batch over the coordinator's own item list."""
        return await self.run_batch(self._items, record)

    async def run_batch(self, items: List[UploadItem], record: BusinessRecordRef) -> BatchResult:
        """Upload ``items`` for ``record``; compensate if any of them fails.

        Items already ``done`` or ``error`` are skipped and reported as
        ``previously_done`` / ``previously_failed``; ``succeeded + failed``
        covers exactly the items processed by this call.

        Raises:
            BatchInProgressError: a batch for ``record`` (or any batch of this
                coordinator) is already running. The call is not queued.
        """
        if self.is_running:
            raise BatchInProgressError(
                f"Coordinator is already uploading for {self._running.key}"
            )
        if record.key in _IN_FLIGHT:
            raise BatchInProgressError(f"Upload batch already running for {record.key}")

        _IN_FLIGHT.add(record.key)
        self._running = record
        self._abort_requested = False
        if items is not self._items:
            self._items = list(items)
        self.progress.open_batch(self._items)
        try:
            return await self._run(self._items, record)
        finally:
            _IN_FLIGHT.discard(record.key)
            self._running = None
            self._current_op = None
            self.progress.close_batch()

    def abort(self) -> bool:
        """Cancel the call in flight and abandon the rest of the batch.

        Returns False when no batch is running.
        """
        if not self.is_running:
            return False
        self._abort_requested = True
        if self._current_op is not None and not self._current_op.done():
            self._current_op.cancel()
        logger.info("Abort requested for %s", self._running.key)
        return True

    async def _run(self, items: List[UploadItem], record: BusinessRecordRef) -> BatchResult:
        if not items:
            logger.info("No attachments for %s", record.key)
            return BatchResult(
                outcome=BatchOutcome.EMPTY,
                message=batch_message(BatchOutcome.EMPTY, 0, 0, 0),
            )

        previously_done = sum(1 for it in items if it.status == UploadStatus.DONE)
        previously_failed = sum(1 for it in items if it.status == UploadStatus.ERROR)
        policy = None
        if previously_done + previously_failed < len(items):
            policy = await self._resolve_policy(record)

        succeeded = failed = abandoned = 0
        for index, item in enumerate(items):
            if item.is_terminal:
                continue
            if self._abort_requested:
                abandoned += 1
                continue
            await self._process(index, item, record, policy)
            if item.status == UploadStatus.DONE:
                succeeded += 1
            else:
                failed += 1

        result = BatchResult(
            succeeded=succeeded,
            failed=failed,
            abandoned=abandoned,
            previously_done=previously_done,
            previously_failed=previously_failed,
        )
        logger.info(
            "Batch for %s settled: succeeded=%d failed=%d abandoned=%d",
            record.key, succeeded, failed, abandoned,
        )

        if failed + abandoned + previously_failed > 0:
            await self._compensate(record, result)
        else:
            result.outcome = BatchOutcome.ALL_SUCCEEDED
            result.committed_files = await self._refresh(record)

        result.message = batch_message(
            result.outcome,
            succeeded + previously_done,
            failed + abandoned + previously_failed,
            len(items),
        )
        return result

    async def _resolve_policy(self, record: BusinessRecordRef) -> Optional[UploadPolicy]:
        if self._policy is not None or not self._fetch_policy:
            return self._policy
        try:
            policy = await self._client.get_policy(record.bucket_purpose)
        except ApiError as exc:
            logger.warning(
                "Could not load storage config for %s, relying on server checks: %s",
                record.bucket_purpose, exc.message,
            )
            return None
        if policy is None:
            logger.warning("No enabled storage config for %s", record.bucket_purpose)
        return policy

    # ------------------------------------------------------------------
    # One item
    # ------------------------------------------------------------------

    def _publish(self, index: int, item: UploadItem) -> None:
        self.progress.publish(index, item)

    def _fail(self, index: int, item: UploadItem, error: UploadError) -> None:
        item.fail(error)
        logger.warning(
            "Upload failed: file=%s kind=%s error=%s", item.original_filename, error.kind, error.message
        )
        self._publish(index, item)

    async def _guard(self, operation: Awaitable[T]) -> T:
        """Await a network call as the abortable operation in flight."""
        task = asyncio.ensure_future(operation)
        self._current_op = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._abort_requested and task.cancelled():
                raise TransferAbortedError("Upload aborted by user")
            raise
        finally:
            self._current_op = None

    async def _process(
        self,
        index: int,
        item: UploadItem,
        record: BusinessRecordRef,
        policy: Optional[UploadPolicy],
    ) -> None:
        try:
            await self._process_steps(index, item, record, policy)
        except Exception as exc:
            # Anything outside the taxonomy fails this item only; the batch goes on
            logger.exception("Unexpected error uploading %s", item.original_filename)
            if not item.is_terminal:
                self._fail(index, item, UploadError(f"Unexpected error: {exc}"))

    async def _process_steps(
        self,
        index: int,
        item: UploadItem,
        record: BusinessRecordRef,
        policy: Optional[UploadPolicy],
    ) -> None:
        if item.status != UploadStatus.PENDING:
            self._fail(index, item, InterruptedUploadError(
                f"Upload was interrupted while {item.status.value}"
            ))
            return

        if policy is not None:
            verdict = validate(item, policy)
            if not verdict.ok:
                self._fail(index, item, ValidationError(verdict.message, verdict.rejection.value))
                return

        # Create
        item.transition(UploadStatus.CREATING)
        item.progress_percent = 0
        item.error_message = None
        item.error_kind = None
        self._publish(index, item)
        try:
            session = await self._guard(self._client.create_session(
                record.bucket_purpose,
                item.original_filename,
                record.business_ref_type,
                record.business_ref_id,
                item.size_bytes,
            ))
        except (SessionCreateError, TransferAbortedError) as exc:
            self._fail(index, item, exc)
            return
        item.assign_file_object_id(session.file_object_id)
        if self._abort_requested:
            self._fail(index, item, TransferAbortedError("Upload aborted by user"))
            return

        # Put
        item.transition(UploadStatus.UPLOADING)
        self._publish(index, item)

        def on_progress(percent: int) -> None:
            if percent > item.progress_percent:
                item.progress_percent = percent
                self._publish(index, item)

        try:
            await self._guard(self._client.put_object(
                item.file_handle,
                session.presigned_url,
                item.size_bytes,
                item.mime_type,
                on_progress,
            ))
        except TransferError as exc:
            self._fail(index, item, exc)
            return
        if self._abort_requested:
            self._fail(index, item, TransferAbortedError("Upload aborted by user"))
            return

        # Confirm
        item.transition(UploadStatus.CONFIRMING)
        self._publish(index, item)
        try:
            await self._guard(self._client.confirm(
                item.file_object_id, item.size_bytes, item.mime_type
            ))
        except ReconcilableConfirmError as exc:
            try:
                reconciled = await self._reconcile(item, record, exc)
            except TransferAbortedError as abort_exc:
                self._fail(index, item, abort_exc)
                return
            if not reconciled:
                self._fail(index, item, exc)
                return
        except (FatalConfirmError, TransferAbortedError) as exc:
            self._fail(index, item, exc)
            return

        item.progress_percent = 100
        item.transition(UploadStatus.DONE)
        self._publish(index, item)
        logger.info(
            "Uploaded %s as fileObjectId=%s for %s",
            item.original_filename, item.file_object_id, record.key,
        )

    async def _reconcile(
        self, item: UploadItem, record: BusinessRecordRef, error: ReconcilableConfirmError
    ) -> bool:
        """Decide an ambiguous confirm by checking the committed file list."""
        logger.info(
            "Confirm for fileObjectId=%s was ambiguous (%s), reconciling",
            item.file_object_id, error.message,
        )
        try:
            files = await self._guard(self._client.list_business_files(
                record.business_ref_type, record.business_ref_id, record.bucket_purpose
            ))
        except ApiError as exc:
            logger.warning("Reconciliation listing failed for %s: %s", record.key, exc.message)
            return False
        wanted = str(item.file_object_id)
        return any(str(f.id) == wanted and f.is_committed for f in files)

    # ------------------------------------------------------------------
    # Batch end
    # ------------------------------------------------------------------

    async def _compensate(self, record: BusinessRecordRef, result: BatchResult) -> None:
        """Single best-effort cancel of the business record; never retried."""
        try:
            await self._client.cancel_business_record(
                record.business_ref_type, record.business_ref_id
            )
        except CompensationError as exc:
            logger.error(
                "Rollback of %s failed, manual cleanup required: %s", record.key, exc.message
            )
            result.outcome = BatchOutcome.ROLLBACK_FAILED
            result.compensation_error = exc.message
            return
        result.outcome = BatchOutcome.ROLLED_BACK

    async def _refresh(self, record: BusinessRecordRef) -> List[CommittedFile]:
        try:
            return await self._client.list_business_files(
                record.business_ref_type, record.business_ref_id, record.bucket_purpose
            )
        except ApiError as exc:
            logger.warning("Attachment list refresh failed for %s: %s", record.key, exc.message)
            return []
