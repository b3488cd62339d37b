"""Presigned upload saga.

Usage:
    from campus_storage.uploads import SagaCoordinator, StorageApiClient, UploadItem

    async with StorageApiClient.from_config() as api:
        coordinator = SagaCoordinator(api, policy=policy)
        result = await coordinator.run_batch(items, record)
"""
from .client import StorageApiClient
from .errors import (
    ApiError,
    BatchInProgressError,
    CompensationError,
    ConfirmError,
    FatalConfirmError,
    InterruptedUploadError,
    InvalidTransitionError,
    ReconcilableConfirmError,
    SessionCreateError,
    TransferAbortedError,
    TransferError,
    UploadError,
    ValidationError,
)
from .policy import ValidationRejection, ValidationResult, parse_max_size, validate
from .progress import ProgressStore
from .saga import SagaCoordinator
from .schemas import (
    BatchOutcome,
    BatchResult,
    BusinessRecordRef,
    CommittedFile,
    ProgressSnapshot,
    UploadItem,
    UploadPolicy,
    UploadSession,
    UploadStatus,
)

__all__ = [
    "ApiError",
    "BatchInProgressError",
    "BatchOutcome",
    "BatchResult",
    "BusinessRecordRef",
    "CommittedFile",
    "CompensationError",
    "ConfirmError",
    "FatalConfirmError",
    "InterruptedUploadError",
    "InvalidTransitionError",
    "ProgressSnapshot",
    "ProgressStore",
    "ReconcilableConfirmError",
    "SagaCoordinator",
    "SessionCreateError",
    "StorageApiClient",
    "TransferAbortedError",
    "TransferError",
    "UploadError",
    "UploadItem",
    "UploadPolicy",
    "UploadSession",
    "UploadStatus",
    "ValidationError",
    "ValidationRejection",
    "ValidationResult",
    "parse_max_size",
    "validate",
]
