"""Object-storage sandbox backend (storage configs, presigned URLs, file objects)."""

from .schemas import FileObject, FileObjectStatus, StorageConfig
from .service import LEAVE_ATTACHMENT_PURPOSE, ObjectStorageService, StorageServiceError
from .router import router

__all__ = [
    "FileObject",
    "FileObjectStatus",
    "LEAVE_ATTACHMENT_PURPOSE",
    "ObjectStorageService",
    "StorageConfig",
    "StorageServiceError",
    "router",
]
