"""Object-storage sandbox API endpoints.

Implements the storage contract the upload saga talks to, so the client can
be exercised end to end without MinIO or the production backend.

Endpoints:
    GET    /api/object-storage/storage-configs: List storage configs
    POST   /api/object-storage/storage-configs: Create or replace a config
    DELETE /api/object-storage/storage-configs/{bucket_purpose}
    GET    /api/object-storage/purposes: Known bucket purposes
    POST   /api/object-storage/upload/create: Mint a presigned PUT session
    PUT    /api/object-storage/objects/{file_object_id}: Presigned upload target
    GET    /api/object-storage/objects/{file_object_id}: Presigned download target
    POST   /api/object-storage/upload/confirm: Finalize an upload
    GET    /api/object-storage/business/{type}/{id}/files: Committed files
    GET    /api/object-storage/files/{file_object_id}/download-info

Errors are returned as ``{"code": ..., "message": ...}`` bodies.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import FileResponse, JSONResponse, Response

from .schemas import (
    ApiErrorBody,
    ConfirmUploadRequest,
    CreateUploadRequest,
    CreateUploadResponse,
    DownloadInfoResponse,
    PurposeInfo,
    StorageConfig,
)
from .service import STORAGE_PREFIX, ObjectStorageService, StorageServiceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix=STORAGE_PREFIX, tags=["object-storage"])


def error_response(request: Request, exc: StorageServiceError) -> JSONResponse:
    body = ApiErrorBody(code=exc.code, message=exc.message, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def _dump(model) -> dict:
    return model.model_dump(by_alias=True)


# =============================================================================
# Storage configs
# =============================================================================


@router.get("/storage-configs")
async def list_storage_configs() -> List[dict]:
    service = ObjectStorageService.get_instance()
    return [_dump(c) for c in service.list_storage_configs()]


@router.post("/storage-configs")
async def save_storage_config(config: StorageConfig) -> dict:
    service = ObjectStorageService.get_instance()
    saved = service.save_storage_config(config)
    logger.info("Storage config saved: %s", saved.bucket_purpose)
    return _dump(saved)


@router.delete("/storage-configs/{bucket_purpose}")
async def delete_storage_config(request: Request, bucket_purpose: str):
    service = ObjectStorageService.get_instance()
    if not service.delete_storage_config(bucket_purpose):
        return error_response(request, StorageServiceError(
            "CONFIG_NOT_FOUND", f"No storage config for {bucket_purpose}", status_code=404
        ))
    return {"deleted": True, "bucketPurpose": bucket_purpose}


@router.get("/purposes", response_model=List[PurposeInfo])
async def list_purposes() -> List[PurposeInfo]:
    return ObjectStorageService.get_instance().list_purposes()


# =============================================================================
# Upload lifecycle
# =============================================================================


@router.post("/upload/create")
async def create_upload(request: Request, body: CreateUploadRequest):
    """Allocate a pending file object and return a presigned PUT URL.

    Every call allocates a new fileObjectId; there is no idempotency key.
    """
    service = ObjectStorageService.get_instance()
    try:
        file_object, url, expire_seconds = service.create_upload(body, str(request.base_url))
    except StorageServiceError as exc:
        logger.info("Create upload rejected: %s (%s)", exc.code, exc.message)
        return error_response(request, exc)
    return _dump(CreateUploadResponse(
        presigned_url=url,
        file_object_id=file_object.id,
        expire_seconds=expire_seconds,
    ))


@router.put("/objects/{file_object_id}")
async def put_object(
    request: Request,
    file_object_id: int,
    expires: int,
    signature: str,
    method: str = "PUT",
):
    """Presigned upload target. Success is an empty 200, like S3."""
    service = ObjectStorageService.get_instance()
    try:
        if method.upper() != "PUT":
            raise StorageServiceError("SIGNATURE_MISMATCH", "URL is not signed for PUT", status_code=403)
        service.verify_signature(file_object_id, "PUT", expires, signature)
        content = await request.body()
        service.store_object(file_object_id, content)
    except StorageServiceError as exc:
        logger.info("PUT object %s rejected: %s", file_object_id, exc.code)
        return error_response(request, exc)
    return Response(status_code=200)


@router.get("/objects/{file_object_id}")
async def get_object(
    request: Request,
    file_object_id: int,
    expires: int,
    signature: str,
    method: str = "GET",
):
    service = ObjectStorageService.get_instance()
    try:
        if method.upper() != "GET":
            raise StorageServiceError("SIGNATURE_MISMATCH", "URL is not signed for GET", status_code=403)
        service.verify_signature(file_object_id, "GET", expires, signature)
    except StorageServiceError as exc:
        return error_response(request, exc)
    file_object = service.get_file(file_object_id)
    path = service.get_object_path(file_object_id)
    if file_object is None or path is None:
        return error_response(request, StorageServiceError(
            "NOT_FOUND", f"File object {file_object_id} not found", status_code=404
        ))
    return FileResponse(
        path=path,
        filename=file_object.original_filename,
        media_type=file_object.mime_type or "application/octet-stream",
    )


@router.post("/upload/confirm")
async def confirm_upload(request: Request, body: ConfirmUploadRequest):
    """Finalize an upload. Confirming twice answers INVALID_STATE (409)."""
    service = ObjectStorageService.get_instance()
    try:
        file_object = service.confirm_upload(body)
    except StorageServiceError as exc:
        logger.info("Confirm of %s rejected: %s (%s)", body.file_object_id, exc.code, exc.message)
        return error_response(request, exc)
    return _dump(file_object)


@router.get("/business/{business_ref_type}/{business_ref_id}/files")
async def list_business_files(
    business_ref_type: str,
    business_ref_id: str,
    bucketPurpose: Optional[str] = None,
) -> List[dict]:
    service = ObjectStorageService.get_instance()
    files = service.list_business_files(business_ref_type, business_ref_id, bucketPurpose)
    return [_dump(f) for f in files]


@router.get("/files/{file_object_id}/download-info")
async def download_info(request: Request, file_object_id: int):
    service = ObjectStorageService.get_instance()
    if service.get_object_path(file_object_id) is None:
        return error_response(request, StorageServiceError(
            "NOT_FOUND", f"File object {file_object_id} not found", status_code=404
        ))
    expire_seconds = service.presign_expire_seconds
    url = service.presign(file_object_id, "GET", str(request.base_url), expire_seconds)
    return _dump(DownloadInfoResponse(download_url=url, expire_seconds=expire_seconds))
