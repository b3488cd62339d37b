"""HTTP client for the object-storage metadata backend and presigned PUTs.

One StorageApiClient wraps one ``httpx.AsyncClient``. It implements the three
network phases of an upload (create session, PUT bytes, confirm) plus the
reads and the compensating cancel the saga relies on.

Error bodies are ``{"code": ..., "message": ...}``; the human-readable text
is taken from ``message``, then ``code``, then the raw body / status line.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError as SchemaError

from ..config import ApiSettings, AppSettings, UploadSettings, get_config
from .errors import (
    ApiError,
    CompensationError,
    FatalConfirmError,
    ReconcilableConfirmError,
    SessionCreateError,
    TransferError,
)
from .schemas import (
    CommittedFile,
    DownloadInfo,
    FileObjectId,
    PurposeInfo,
    UploadPolicy,
    UploadSession,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def extract_error_message(response: httpx.Response) -> str:
    """Human-readable error text of a failed response."""
    body = _error_body(response)
    message = body.get("message") or body.get("detail") or body.get("code")
    if isinstance(message, str) and message:
        return message
    text = response.text.strip()
    if text:
        return text
    return f"HTTP {response.status_code}"


def extract_error_code(response: httpx.Response) -> Optional[str]:
    code = _error_body(response).get("code")
    return code if isinstance(code, str) else None


def _parse_list(model, data: Any, path: str) -> list:
    if not isinstance(data, list):
        return []
    try:
        return [model.model_validate(entry) for entry in data]
    except SchemaError as exc:
        raise ApiError(f"GET {path} returned unexpected data: {exc}") from exc


class StorageApiClient:
    """Async client for the upload endpoints of the storage backend.

    Usage:
        async with StorageApiClient.from_config() as api:
            session = await api.create_session("LEAVE_ATTACHMENT", "a.pdf", "LEAVE_REQUEST", 7, 1024)
    """

    def __init__(
        self,
        api_settings: Optional[ApiSettings] = None,
        upload_settings: Optional[UploadSettings] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self._api = api_settings or ApiSettings()
        self._uploads = upload_settings or UploadSettings()
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=self._api.base_url,
            timeout=self._api.request_timeout,
        )

    @classmethod
    def from_config(
        cls, config: Optional[AppSettings] = None, http: Optional[httpx.AsyncClient] = None
    ) -> "StorageApiClient":
        config = config or get_config()
        return cls(config.api, config.uploads, http=http)

    @property
    def upload_settings(self) -> UploadSettings:
        return self._uploads

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "StorageApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _storage_path(self, path: str) -> str:
        return f"{self._api.storage_prefix}{path}"

    # ------------------------------------------------------------------
    # Upload phases
    # ------------------------------------------------------------------

    async def create_session(
        self,
        bucket_purpose: str,
        original_filename: str,
        business_ref_type: str,
        business_ref_id: FileObjectId,
        expected_size: int,
    ) -> UploadSession:
        """Ask the backend for a presigned URL and a pending file record.

        Not idempotent: every call allocates a new fileObjectId.

        Raises:
            SessionCreateError: non-2xx response, transport failure or a
                response without a presigned URL / fileObjectId.
        """
        body = {
            "bucketPurpose": bucket_purpose,
            "originalFilename": original_filename,
            "businessRefType": business_ref_type,
            "businessRefId": business_ref_id,
            "expectedSize": expected_size,
        }
        try:
            resp = await self._http.post(self._storage_path("/upload/create"), json=body)
        except httpx.HTTPError as exc:
            raise SessionCreateError(f"Create upload failed: {exc}") from exc

        if not resp.is_success:
            raise SessionCreateError(extract_error_message(resp), status_code=resp.status_code)

        try:
            session = UploadSession.model_validate(resp.json())
        except (ValueError, SchemaError) as exc:
            raise SessionCreateError(
                f"Create upload returned an invalid session: {exc}", status_code=resp.status_code
            ) from exc

        logger.debug(
            "Upload session created: fileObjectId=%s file=%s expires=%ss",
            session.file_object_id,
            original_filename,
            session.expire_seconds,
        )
        return session

    async def put_object(
        self,
        file_handle: Any,
        presigned_url: str,
        size_bytes: int,
        mime_type: str = "",
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Stream the file bytes to a presigned URL with an HTTP PUT.

        ``on_progress`` receives non-decreasing integers in 0..100. Cancelling
        the awaiting task aborts the transfer.

        Raises:
            TransferError: non-2xx status, transport failure or unreadable file.
        """
        headers = {
            "Content-Type": mime_type or self._uploads.default_mime_type,
            "Content-Length": str(size_bytes),
        }
        try:
            resp = await self._http.put(
                presigned_url,
                content=self._iter_chunks(file_handle, size_bytes, on_progress),
                headers=headers,
                timeout=self._api.upload_timeout,
            )
        except httpx.HTTPError as exc:
            raise TransferError(f"Network error: {exc}") from exc
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            # Closed or unreadable handles surface while the body is streamed
            raise TransferError(f"Cannot read file: {exc}") from exc

        if not resp.is_success:
            raise TransferError(f"PUT failed: {resp.status_code}", status_code=resp.status_code)

    async def _iter_chunks(
        self,
        file_handle: Any,
        size_bytes: int,
        on_progress: Optional[ProgressCallback],
    ) -> AsyncIterator[bytes]:
        chunk_size = self._api.chunk_size
        sent = 0
        last = -1

        def report() -> None:
            nonlocal last
            if on_progress is None:
                return
            percent = 100 if size_bytes <= 0 else min(100, sent * 100 // size_bytes)
            if percent > last:
                last = percent
                on_progress(percent)

        report()
        if isinstance(file_handle, (bytes, bytearray, memoryview)):
            data = bytes(file_handle)
            for start in range(0, len(data), chunk_size):
                chunk = data[start:start + chunk_size]
                yield chunk
                sent += len(chunk)
                report()
        else:
            loop = asyncio.get_running_loop()
            owned = isinstance(file_handle, (str, Path))
            if owned:
                fh = await loop.run_in_executor(None, Path(file_handle).open, "rb")
            else:
                fh = file_handle
                if hasattr(fh, "seekable") and fh.seekable():
                    fh.seek(0)
            try:
                while True:
                    chunk = await loop.run_in_executor(None, fh.read, chunk_size)
                    if not chunk:
                        break
                    yield chunk
                    sent += len(chunk)
                    report()
            finally:
                if owned:
                    fh.close()

    async def confirm(
        self, file_object_id: Optional[FileObjectId], size_bytes: int, mime_type: str = ""
    ) -> CommittedFile:
        """Tell the backend the bytes landed, finalizing the file record.

        Raises:
            ReconcilableConfirmError: the backend says the record is already
                confirmed / in a state that forbids confirmation, or the
                outcome is unknown because the request never got an answer.
            FatalConfirmError: not found, no fileObjectId, or any other
                rejection.
        """
        if file_object_id is None:
            raise FatalConfirmError("Cannot confirm an upload without a fileObjectId")
        body = {
            "fileObjectId": file_object_id,
            "sizeBytes": size_bytes,
            "mimeType": (mime_type or self._uploads.default_mime_type).lower(),
        }
        try:
            resp = await self._http.post(self._storage_path("/upload/confirm"), json=body)
        except httpx.HTTPError as exc:
            raise ReconcilableConfirmError(f"Confirm outcome unknown: {exc}") from exc

        if not resp.is_success:
            raise self._confirm_error(resp)

        try:
            return CommittedFile.model_validate(resp.json())
        except (ValueError, SchemaError):
            # Some backends answer 200 with an empty body
            return CommittedFile(id=file_object_id, size_bytes=size_bytes)

    def _confirm_error(self, resp: httpx.Response):
        message = extract_error_message(resp)
        code = extract_error_code(resp)
        if code and code.upper() in {c.upper() for c in self._uploads.reconcilable_codes}:
            return ReconcilableConfirmError(message, code=code, status_code=resp.status_code)
        if code is None:
            lowered = message.lower()
            for marker in self._uploads.reconcilable_markers:
                if marker.lower() in lowered:
                    return ReconcilableConfirmError(message, status_code=resp.status_code)
        if code is None and resp.status_code == 404:
            code = "NOT_FOUND"
        return FatalConfirmError(message, code=code, status_code=resp.status_code)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_business_files(
        self, business_ref_type: str, business_ref_id: FileObjectId, bucket_purpose: str
    ) -> List[CommittedFile]:
        """Committed file records attached to a business entity."""
        path = self._storage_path(
            f"/business/{quote(str(business_ref_type), safe='')}/{quote(str(business_ref_id), safe='')}/files"
        )
        data = await self._get_json(path, params={"bucketPurpose": bucket_purpose})
        return _parse_list(CommittedFile, data, path)

    async def list_storage_configs(self) -> List[UploadPolicy]:
        path = self._storage_path("/storage-configs")
        return _parse_list(UploadPolicy, await self._get_json(path), path)

    async def get_policy(self, bucket_purpose: str) -> Optional[UploadPolicy]:
        """Enabled storage config for a bucket purpose, if any."""
        for policy in await self.list_storage_configs():
            if policy.bucket_purpose == bucket_purpose and policy.enabled:
                return policy
        return None

    async def list_purposes(self) -> List[PurposeInfo]:
        path = self._storage_path("/purposes")
        return _parse_list(PurposeInfo, await self._get_json(path), path)

    async def get_download_info(self, file_object_id: FileObjectId) -> DownloadInfo:
        data = await self._get_json(
            self._storage_path(f"/files/{quote(str(file_object_id), safe='')}/download-info")
        )
        try:
            return DownloadInfo.model_validate(data)
        except SchemaError as exc:
            raise ApiError(f"No downloadUrl for file {file_object_id}") from exc

    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        try:
            resp = await self._http.get(path, params=params)
        except httpx.HTTPError as exc:
            raise ApiError(f"GET {path} failed: {exc}") from exc
        if not resp.is_success:
            raise ApiError(extract_error_message(resp), status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError(f"GET {path} returned invalid JSON") from exc

    # ------------------------------------------------------------------
    # Business records
    # ------------------------------------------------------------------

    async def create_leave_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Submit a leave request; returns the saved record (with its id)."""
        try:
            resp = await self._http.post(self._uploads.leave_request_path, json=payload)
        except httpx.HTTPError as exc:
            raise ApiError(f"Leave request submission failed: {exc}") from exc
        if not resp.is_success:
            raise ApiError(extract_error_message(resp), status_code=resp.status_code)
        return resp.json()

    async def cancel_business_record(
        self, business_ref_type: str, business_ref_id: FileObjectId
    ) -> None:
        """Compensating cancel of a business record. Never retried.

        Raises:
            CompensationError: no cancel endpoint configured for the type,
                transport failure or non-2xx response.
        """
        template = self._uploads.cancel_paths.get(business_ref_type)
        if not template:
            raise CompensationError(f"No cancel endpoint configured for {business_ref_type}")
        path = template.format(
            ref_type=quote(str(business_ref_type), safe=""),
            ref_id=quote(str(business_ref_id), safe=""),
        )
        try:
            resp = await self._http.post(path)
        except httpx.HTTPError as exc:
            raise CompensationError(f"Cancel request failed: {exc}") from exc
        if not resp.is_success:
            raise CompensationError(extract_error_message(resp), status_code=resp.status_code)
        logger.info("Cancelled %s/%s", business_ref_type, business_ref_id)
