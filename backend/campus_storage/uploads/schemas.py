"""Pydantic schemas for the presigned upload flow.

This module defines the data models shared by the validator, the API client,
the saga coordinator and the progress store:
- UploadPolicy: storage config of a bucket purpose (size/extension/MIME rules)
- UploadItem: one candidate file and its lifecycle state
- UploadSession: short-lived presigned URL plus pending metadata record id
- CommittedFile: a finalized file record as listed by the backend
- BusinessRecordRef: the business entity that owns the attachments
- BatchResult: outcome of one SagaCoordinator.run_batch call

Wire names follow the backend's camelCase DTOs; Python attributes are
snake_case and both are accepted on input.
"""
import mimetypes
import time
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Set, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidTransitionError, UploadError

FileObjectId = Union[int, str]


class UploadStatus(str, Enum):
    """Lifecycle of an UploadItem.

    PENDING -> CREATING -> UPLOADING -> CONFIRMING -> DONE, with ERROR
    reachable from every non-terminal state. DONE and ERROR are terminal.
    """
    PENDING = "pending"
    CREATING = "creating"
    UPLOADING = "uploading"
    CONFIRMING = "confirming"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.DONE, UploadStatus.ERROR)


_ALLOWED_TRANSITIONS = {
    UploadStatus.PENDING: {UploadStatus.CREATING, UploadStatus.ERROR},
    UploadStatus.CREATING: {UploadStatus.UPLOADING, UploadStatus.ERROR},
    UploadStatus.UPLOADING: {UploadStatus.CONFIRMING, UploadStatus.ERROR},
    UploadStatus.CONFIRMING: {UploadStatus.DONE, UploadStatus.ERROR},
    UploadStatus.DONE: set(),
    UploadStatus.ERROR: set(),
}


class UploadPolicy(BaseModel):
    """Storage config for one bucket purpose, as served by /storage-configs."""
    model_config = ConfigDict(populate_by_name=True)

    bucket_purpose: str = Field(..., alias="bucketPurpose")
    max_file_size: Optional[int] = Field(None, alias="maxFileSize", description="Bytes")
    allowed_extensions: Set[str] = Field(default_factory=set, alias="allowedExtensions")
    allowed_mime_types: Set[str] = Field(default_factory=set, alias="allowedMimeTypes")
    enabled: bool = True

    @field_validator("allowed_extensions", mode="before")
    @classmethod
    def _normalise_extensions(cls, v: Any) -> Any:
        if v is None:
            return set()
        return {str(e).strip().lstrip(".").lower() for e in v if str(e).strip()}

    @field_validator("allowed_mime_types", mode="before")
    @classmethod
    def _normalise_mimes(cls, v: Any) -> Any:
        if v is None:
            return set()
        return {str(m).strip().lower() for m in v if str(m).strip()}


class UploadItem(BaseModel):
    """One candidate file in a batch.

    ``file_object_id`` is assigned at most once, by a successful session
    creation, and must be present before confirm is attempted.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    file_handle: Any = Field(..., exclude=True, repr=False)
    original_filename: str
    size_bytes: int = Field(..., ge=0)
    mime_type: str = ""
    status: UploadStatus = UploadStatus.PENDING
    progress_percent: int = Field(0, ge=0, le=100)
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    file_object_id: Optional[FileObjectId] = None

    @classmethod
    def from_path(cls, path: Union[str, Path], mime_type: Optional[str] = None) -> "UploadItem":
        """Build an item for a file on disk, guessing its MIME type."""
        p = Path(path)
        if mime_type is None:
            mime_type = mimetypes.guess_type(p.name)[0] or ""
        return cls(
            file_handle=p,
            original_filename=p.name,
            size_bytes=p.stat().st_size,
            mime_type=mime_type,
        )

    @classmethod
    def from_bytes(cls, filename: str, content: bytes, mime_type: str = "") -> "UploadItem":
        return cls(
            file_handle=content,
            original_filename=filename,
            size_bytes=len(content),
            mime_type=mime_type,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: UploadStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"{self.original_filename}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def assign_file_object_id(self, file_object_id: FileObjectId) -> None:
        if self.file_object_id is not None:
            raise InvalidTransitionError(
                f"{self.original_filename}: fileObjectId already assigned ({self.file_object_id})"
            )
        self.file_object_id = file_object_id

    def fail(self, error: UploadError) -> None:
        """Move to ERROR, recording the error kind and message."""
        self.transition(UploadStatus.ERROR)
        self.error_kind = error.kind
        self.error_message = error.message


class UploadSession(BaseModel):
    """Presigned session; consumed by the PUT and the confirm, never stored."""
    model_config = ConfigDict(populate_by_name=True)

    file_object_id: FileObjectId = Field(..., alias="fileObjectId")
    presigned_url: str = Field(
        ...,
        validation_alias=AliasChoices("presignedUrl", "presignUrl", "presigned_url"),
    )
    expire_seconds: Optional[int] = Field(None, alias="expireSeconds")


class CommittedFile(BaseModel):
    """File record as listed for a business entity (FileObjectDTO)."""
    model_config = ConfigDict(populate_by_name=True)

    id: FileObjectId
    original_filename: str = Field("", alias="originalFilename")
    size_bytes: int = Field(0, alias="sizeBytes")
    mime_type: Optional[str] = Field(None, alias="mimeType")
    status: str = "ACTIVE"
    created_at: Optional[Union[float, str]] = Field(None, alias="createdAt")

    @property
    def is_committed(self) -> bool:
        return self.status.upper() not in ("PENDING", "UPLOADING", "DELETED", "CANCELLED")


class BusinessRecordRef(BaseModel):
    """The business entity (e.g. a leave request) owning a batch of files."""
    model_config = ConfigDict(frozen=True)

    business_ref_type: str
    business_ref_id: FileObjectId
    bucket_purpose: str

    @property
    def key(self) -> str:
        return f"{self.business_ref_type}/{self.business_ref_id}"


class BatchOutcome(str, Enum):
    EMPTY = "empty"
    ALL_SUCCEEDED = "all_succeeded"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


class BatchResult(BaseModel):
    """Outcome of one run_batch call, computed after the last item settles."""
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0
    previously_done: int = 0
    previously_failed: int = 0
    outcome: BatchOutcome = BatchOutcome.EMPTY
    message: str = ""
    compensation_error: Optional[str] = None
    committed_files: List[CommittedFile] = Field(default_factory=list)
    finished_at: float = Field(default_factory=time.time)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.abandoned

    @property
    def rolled_back(self) -> bool:
        return self.outcome == BatchOutcome.ROLLED_BACK


class ProgressSnapshot(BaseModel):
    """Observable state of one item, as published by the coordinator."""
    index: int
    original_filename: str
    status: UploadStatus
    progress_percent: int = 0
    error_message: Optional[str] = None

    @classmethod
    def of(cls, index: int, item: UploadItem) -> "ProgressSnapshot":
        return cls(
            index=index,
            original_filename=item.original_filename,
            status=item.status,
            progress_percent=item.progress_percent,
            error_message=item.error_message,
        )


class DownloadInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    download_url: str = Field(..., alias="downloadUrl")
    expire_seconds: Optional[int] = Field(None, alias="expireSeconds")


class PurposeInfo(BaseModel):
    code: str
    label: str = ""
    description: Optional[str] = None
    module: Optional[str] = None
    recommended: bool = False
