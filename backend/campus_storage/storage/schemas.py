"""Pydantic schemas for the object-storage sandbox backend.

These are the wire DTOs of the storage API (camelCase on the wire):
- StorageConfig: per bucket purpose upload rules
- FileObject: metadata record of one uploaded object
- CreateUploadRequest / CreateUploadResponse: presigned session minting
- ConfirmUploadRequest: finalizing an upload
- ApiErrorBody: ``{code, message}`` error payload

File objects move PENDING -> ACTIVE on confirm. Objects are stored under
``<data_dir>/objects/<bucket_purpose>/<object_key>``.
"""
import time
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class FileObjectStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


class StorageConfig(BaseModel):
    """Upload rules of one bucket purpose (FileStorageConfigDTO)."""
    model_config = ConfigDict(populate_by_name=True)

    bucket_purpose: str = Field(..., alias="bucketPurpose", min_length=1)
    bucket_name: str = Field("", alias="bucketName")
    base_path: Optional[str] = Field(None, alias="basePath")
    max_file_size: Optional[int] = Field(None, alias="maxFileSize", gt=0)
    allowed_extensions: List[str] = Field(default_factory=list, alias="allowedExtensions")
    allowed_mime_types: List[str] = Field(default_factory=list, alias="allowedMimeTypes")
    enabled: bool = True


class FileObject(BaseModel):
    """Metadata record of an uploaded object (FileObjectDTO)."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    bucket_purpose: str = Field(..., alias="bucketPurpose")
    object_key: str = Field(..., alias="objectKey")
    original_filename: str = Field(..., alias="originalFilename")
    business_ref_type: str = Field(..., alias="businessRefType")
    business_ref_id: str = Field(..., alias="businessRefId")
    expected_size: int = Field(..., alias="expectedSize")
    size_bytes: Optional[int] = Field(None, alias="sizeBytes")
    mime_type: Optional[str] = Field(None, alias="mimeType")
    status: FileObjectStatus = FileObjectStatus.PENDING
    created_at: float = Field(default_factory=time.time, alias="createdAt")


class CreateUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bucket_purpose: str = Field(..., alias="bucketPurpose", min_length=1)
    original_filename: str = Field(..., alias="originalFilename", min_length=1)
    business_ref_type: str = Field(..., alias="businessRefType", min_length=1)
    business_ref_id: Union[int, str] = Field(..., alias="businessRefId")
    expected_size: int = Field(..., alias="expectedSize", ge=0)


class CreateUploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    presigned_url: str = Field(..., alias="presignedUrl")
    file_object_id: int = Field(..., alias="fileObjectId")
    expire_seconds: int = Field(..., alias="expireSeconds")


class ConfirmUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_object_id: int = Field(..., alias="fileObjectId")
    size_bytes: int = Field(..., alias="sizeBytes", ge=0)
    mime_type: str = Field("application/octet-stream", alias="mimeType")


class DownloadInfoResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    download_url: str = Field(..., alias="downloadUrl")
    expire_seconds: int = Field(..., alias="expireSeconds")


class PurposeInfo(BaseModel):
    code: str
    label: str
    description: Optional[str] = None
    module: Optional[str] = None
    recommended: bool = False


class ApiErrorBody(BaseModel):
    code: str
    message: str
    path: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)
