"""DuckDB-backed object-storage sandbox service.

A stand-in for the production storage backend: it keeps storage configs and
file-object metadata in DuckDB, writes object bytes to disk, and signs the
presigned URLs that clients PUT to. Every rule the client mirrors (size,
extension, MIME) is enforced here again.

Database Schema:
    storage_configs table:
        - bucket_purpose: Logical bucket name (primary key)
        - bucket_name / base_path: Physical location hints
        - max_file_size: Optional byte limit
        - allowed_extensions / allowed_mime_types: JSON lists, empty = any
        - enabled: Whether uploads are accepted
    file_objects table:
        - id: Auto-incrementing primary key (the fileObjectId)
        - bucket_purpose, object_key, original_filename
        - business_ref_type / business_ref_id: Owning business entity
        - expected_size, size_bytes, mime_type
        - status: PENDING -> ACTIVE (confirmed) or DELETED
        - created_at, confirmed_at

Usage:
    service = ObjectStorageService.get_instance()
    fo, url, expires = service.create_upload(request, base_url)
"""
import hashlib
import hmac
import json
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.parse import urlencode

import duckdb

from ..config import SandboxSettings, get_config
from ..uploads.policy import file_extension, format_size, mime_types_for_extensions
from .schemas import (
    ConfirmUploadRequest,
    CreateUploadRequest,
    FileObject,
    FileObjectStatus,
    PurposeInfo,
    StorageConfig,
)

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "/api/object-storage"

LEAVE_ATTACHMENT_PURPOSE = "LEAVE_ATTACHMENT"

KNOWN_PURPOSES = [
    PurposeInfo(
        code=LEAVE_ATTACHMENT_PURPOSE,
        label="Leave attachments",
        description="Supporting documents for leave requests",
        module="leave",
        recommended=True,
    ),
    PurposeInfo(
        code="DEMO",
        label="Storage test uploads",
        description="Uploads made from the storage configuration page",
        module="storage",
    ),
]


class StorageServiceError(Exception):
    """Business-rule rejection, rendered as ``{code, message}``."""

    def __init__(self, code: str, message: str, status_code: int = 400):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class ObjectStorageService:
    """Singleton service for storage configs, file objects and object bytes."""

    _instance: Optional["ObjectStorageService"] = None

    def __init__(self, settings: Optional[SandboxSettings] = None) -> None:
        self._settings = settings or get_config().sandbox
        self._db_path = self._settings.db_path
        self._objects_dir = Path(self._settings.data_dir) / "objects"
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._objects_dir.mkdir(parents=True, exist_ok=True)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        if self._settings.seed_leave_policy:
            self._seed_leave_policy()

    @classmethod
    def get_instance(cls, settings: Optional[SandboxSettings] = None) -> "ObjectStorageService":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(settings)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    @property
    def presign_expire_seconds(self) -> int:
        return self._settings.presign_expire_seconds

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS file_objects_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS storage_configs (
                bucket_purpose VARCHAR PRIMARY KEY,
                bucket_name VARCHAR NOT NULL,
                base_path VARCHAR,
                max_file_size BIGINT,
                allowed_extensions VARCHAR NOT NULL,
                allowed_mime_types VARCHAR NOT NULL,
                enabled BOOLEAN NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS file_objects (
                id INTEGER DEFAULT nextval('file_objects_seq') PRIMARY KEY,
                bucket_purpose VARCHAR NOT NULL,
                object_key VARCHAR NOT NULL,
                original_filename VARCHAR NOT NULL,
                business_ref_type VARCHAR NOT NULL,
                business_ref_id VARCHAR NOT NULL,
                expected_size BIGINT NOT NULL,
                size_bytes BIGINT,
                mime_type VARCHAR,
                status VARCHAR NOT NULL,
                created_at TIMESTAMP NOT NULL,
                confirmed_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_file_objects_business
            ON file_objects(business_ref_type, business_ref_id)
        """)

    def _seed_leave_policy(self) -> None:
        if self.get_storage_config(LEAVE_ATTACHMENT_PURPOSE) is not None:
            return
        extensions = ["pdf", "jpg", "jpeg", "png"]
        self.save_storage_config(StorageConfig(
            bucket_purpose=LEAVE_ATTACHMENT_PURPOSE,
            bucket_name="leave-attachments",
            max_file_size=self._settings.leave_max_file_size,
            allowed_extensions=extensions,
            allowed_mime_types=mime_types_for_extensions(extensions),
        ))
        logger.info("Seeded storage config for %s", LEAVE_ATTACHMENT_PURPOSE)

    # ------------------------------------------------------------------
    # Storage configs
    # ------------------------------------------------------------------

    def save_storage_config(self, config: StorageConfig) -> StorageConfig:
        """Insert or replace the config of a bucket purpose."""
        extensions = sorted({e.strip().lstrip(".").lower() for e in config.allowed_extensions if e.strip()})
        mimes = sorted({m.strip().lower() for m in config.allowed_mime_types if m.strip()})
        conn = self._get_connection()
        conn.execute("DELETE FROM storage_configs WHERE bucket_purpose = ?", [config.bucket_purpose])
        conn.execute(
            """
            INSERT INTO storage_configs
            (bucket_purpose, bucket_name, base_path, max_file_size,
             allowed_extensions, allowed_mime_types, enabled)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                config.bucket_purpose,
                config.bucket_name or config.bucket_purpose.lower().replace("_", "-"),
                config.base_path,
                config.max_file_size,
                json.dumps(extensions),
                json.dumps(mimes),
                config.enabled,
            ]
        )
        return self.get_storage_config(config.bucket_purpose)

    def get_storage_config(self, bucket_purpose: str) -> Optional[StorageConfig]:
        row = self._get_connection().execute(
            """
            SELECT bucket_purpose, bucket_name, base_path, max_file_size,
                   allowed_extensions, allowed_mime_types, enabled
            FROM storage_configs WHERE bucket_purpose = ?
            """,
            [bucket_purpose]
        ).fetchone()
        return self._row_to_config(row) if row else None

    def list_storage_configs(self) -> List[StorageConfig]:
        rows = self._get_connection().execute(
            """
            SELECT bucket_purpose, bucket_name, base_path, max_file_size,
                   allowed_extensions, allowed_mime_types, enabled
            FROM storage_configs ORDER BY bucket_purpose
            """
        ).fetchall()
        return [self._row_to_config(r) for r in rows]

    def delete_storage_config(self, bucket_purpose: str) -> bool:
        if self.get_storage_config(bucket_purpose) is None:
            return False
        self._get_connection().execute(
            "DELETE FROM storage_configs WHERE bucket_purpose = ?", [bucket_purpose]
        )
        return True

    def list_purposes(self) -> List[PurposeInfo]:
        known = {p.code for p in KNOWN_PURPOSES}
        extra = [
            PurposeInfo(code=c.bucket_purpose, label=c.bucket_purpose)
            for c in self.list_storage_configs()
            if c.bucket_purpose not in known
        ]
        return KNOWN_PURPOSES + extra

    @staticmethod
    def _row_to_config(row) -> StorageConfig:
        return StorageConfig(
            bucket_purpose=row[0],
            bucket_name=row[1],
            base_path=row[2],
            max_file_size=row[3],
            allowed_extensions=json.loads(row[4]),
            allowed_mime_types=json.loads(row[5]),
            enabled=row[6],
        )

    # ------------------------------------------------------------------
    # Upload lifecycle
    # ------------------------------------------------------------------

    def create_upload(self, req: CreateUploadRequest, base_url: str) -> Tuple[FileObject, str, int]:
        """Validate against the bucket's config and mint a presigned PUT URL.

        Returns:
            (pending file object, presigned URL, expiry in seconds)

        Raises:
            StorageServiceError: unknown/disabled purpose or policy violation.
        """
        config = self._require_enabled_config(req.bucket_purpose)
        if config.max_file_size and req.expected_size > config.max_file_size:
            raise StorageServiceError(
                "FILE_TOO_LARGE",
                f"File exceeds the {format_size(config.max_file_size)} limit of {config.bucket_purpose}",
            )
        ext = file_extension(req.original_filename)
        if config.allowed_extensions and ext not in config.allowed_extensions:
            raise StorageServiceError(
                "EXTENSION_NOT_ALLOWED",
                f"Extension '{ext or '(none)'}' is not allowed for {config.bucket_purpose}",
            )

        object_key = (
            f"{req.business_ref_type}/{req.business_ref_id}/"
            f"{uuid.uuid4()}{'.' + ext if ext else ''}"
        )
        conn = self._get_connection()
        row = conn.execute(
            """
            INSERT INTO file_objects
            (bucket_purpose, object_key, original_filename, business_ref_type,
             business_ref_id, expected_size, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            [
                config.bucket_purpose,
                object_key,
                req.original_filename,
                req.business_ref_type,
                str(req.business_ref_id),
                req.expected_size,
                FileObjectStatus.PENDING.value,
                datetime.now(),
            ]
        ).fetchone()
        file_object = self.get_file(row[0])
        expire_seconds = self._settings.presign_expire_seconds
        url = self.presign(file_object.id, "PUT", base_url, expire_seconds)
        logger.info(
            "Upload session created: id=%s key=%s (%s bytes expected)",
            file_object.id, object_key, req.expected_size,
        )
        return file_object, url, expire_seconds

    def store_object(self, file_object_id: int, content: bytes) -> FileObject:
        """Write the PUT body of a pending file object to disk."""
        file_object = self._require_file(file_object_id)
        if file_object.status != FileObjectStatus.PENDING:
            raise StorageServiceError(
                "INVALID_STATE", "Object is no longer accepting uploads", status_code=409
            )
        path = self._object_path(file_object)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        logger.info("Stored object %s (%d bytes)", file_object.object_key, len(content))
        return file_object

    def confirm_upload(self, req: ConfirmUploadRequest) -> FileObject:
        """Finalize a pending file object whose bytes have landed.

        Raises:
            StorageServiceError: NOT_FOUND, INVALID_STATE (already confirmed
                or deleted), OBJECT_MISSING, SIZE_MISMATCH, MIME_NOT_ALLOWED.
        """
        file_object = self._require_file(req.file_object_id)
        if file_object.status != FileObjectStatus.PENDING:
            raise StorageServiceError(
                "INVALID_STATE",
                f"Current state {file_object.status.value} does not allow confirmation",
                status_code=409,
            )
        path = self._object_path(file_object)
        if not path.exists():
            raise StorageServiceError("OBJECT_MISSING", "Object has not been uploaded", status_code=409)
        actual_size = path.stat().st_size
        if actual_size != req.size_bytes:
            raise StorageServiceError(
                "SIZE_MISMATCH",
                f"Uploaded object is {actual_size} bytes, confirm declared {req.size_bytes}",
            )
        mime_type = req.mime_type.lower()
        config = self.get_storage_config(file_object.bucket_purpose)
        if config and config.allowed_mime_types and mime_type not in config.allowed_mime_types:
            raise StorageServiceError(
                "MIME_NOT_ALLOWED", f"MIME type '{mime_type}' is not allowed for {config.bucket_purpose}"
            )

        self._get_connection().execute(
            """
            UPDATE file_objects
            SET status = ?, size_bytes = ?, mime_type = ?, confirmed_at = ?
            WHERE id = ?
            """,
            [FileObjectStatus.ACTIVE.value, actual_size, mime_type, datetime.now(), file_object.id]
        )
        logger.info("Confirmed file object %s", file_object.id)
        return self.get_file(file_object.id)

    def list_business_files(
        self, business_ref_type: str, business_ref_id: str, bucket_purpose: Optional[str] = None
    ) -> List[FileObject]:
        """Confirmed (ACTIVE) files of a business entity, oldest first."""
        query = """
            SELECT id, bucket_purpose, object_key, original_filename, business_ref_type,
                   business_ref_id, expected_size, size_bytes, mime_type, status, created_at
            FROM file_objects
            WHERE business_ref_type = ? AND business_ref_id = ? AND status = ?
        """
        params = [business_ref_type, str(business_ref_id), FileObjectStatus.ACTIVE.value]
        if bucket_purpose:
            query += " AND bucket_purpose = ?"
            params.append(bucket_purpose)
        query += " ORDER BY created_at ASC, id ASC"
        rows = self._get_connection().execute(query, params).fetchall()
        return [self._row_to_file(r) for r in rows]

    def delete_business_files(self, business_ref_type: str, business_ref_id: str) -> int:
        """Mark every file of a business entity DELETED and drop the bytes."""
        rows = self._get_connection().execute(
            """
            SELECT id, bucket_purpose, object_key, original_filename, business_ref_type,
                   business_ref_id, expected_size, size_bytes, mime_type, status, created_at
            FROM file_objects
            WHERE business_ref_type = ? AND business_ref_id = ? AND status != ?
            """,
            [business_ref_type, str(business_ref_id), FileObjectStatus.DELETED.value]
        ).fetchall()
        for file_object in (self._row_to_file(r) for r in rows):
            path = self._object_path(file_object)
            if path.exists():
                path.unlink()
        self._get_connection().execute(
            """
            UPDATE file_objects SET status = ?
            WHERE business_ref_type = ? AND business_ref_id = ? AND status != ?
            """,
            [
                FileObjectStatus.DELETED.value,
                business_ref_type,
                str(business_ref_id),
                FileObjectStatus.DELETED.value,
            ]
        )
        if rows:
            logger.info("Deleted %d files of %s/%s", len(rows), business_ref_type, business_ref_id)
        return len(rows)

    def get_file(self, file_object_id: int) -> Optional[FileObject]:
        row = self._get_connection().execute(
            """
            SELECT id, bucket_purpose, object_key, original_filename, business_ref_type,
                   business_ref_id, expected_size, size_bytes, mime_type, status, created_at
            FROM file_objects WHERE id = ?
            """,
            [file_object_id]
        ).fetchone()
        return self._row_to_file(row) if row else None

    def get_object_path(self, file_object_id: int) -> Optional[Path]:
        file_object = self.get_file(file_object_id)
        if file_object is None or file_object.status != FileObjectStatus.ACTIVE:
            return None
        path = self._object_path(file_object)
        return path if path.exists() else None

    def _require_file(self, file_object_id: int) -> FileObject:
        file_object = self.get_file(file_object_id)
        if file_object is None:
            raise StorageServiceError("NOT_FOUND", f"File object {file_object_id} not found", status_code=404)
        return file_object

    def _require_enabled_config(self, bucket_purpose: str) -> StorageConfig:
        config = self.get_storage_config(bucket_purpose)
        if config is None or not config.enabled:
            raise StorageServiceError(
                "CONFIG_NOT_FOUND", f"No enabled storage config for {bucket_purpose}", status_code=404
            )
        return config

    def _object_path(self, file_object: FileObject) -> Path:
        return self._objects_dir / file_object.bucket_purpose / file_object.object_key

    @staticmethod
    def _row_to_file(row) -> FileObject:
        return FileObject(
            id=row[0],
            bucket_purpose=row[1],
            object_key=row[2],
            original_filename=row[3],
            business_ref_type=row[4],
            business_ref_id=row[5],
            expected_size=row[6],
            size_bytes=row[7],
            mime_type=row[8],
            status=FileObjectStatus(row[9]),
            created_at=row[10].timestamp() if row[10] else 0,
        )

    # ------------------------------------------------------------------
    # Presigning
    # ------------------------------------------------------------------

    def _signature(self, method: str, file_object_id: int, expires: int) -> str:
        payload = f"{method.upper()}:{file_object_id}:{expires}".encode()
        return hmac.new(self._settings.signing_secret.encode(), payload, hashlib.sha256).hexdigest()

    def presign(self, file_object_id: int, method: str, base_url: str, expire_seconds: int) -> str:
        expires = int(time.time()) + expire_seconds
        query = urlencode({
            "method": method.upper(),
            "expires": expires,
            "signature": self._signature(method, file_object_id, expires),
        })
        base = (self._settings.public_base_url or base_url).rstrip("/")
        return f"{base}{STORAGE_PREFIX}/objects/{file_object_id}?{query}"

    def verify_signature(self, file_object_id: int, method: str, expires: int, signature: str) -> None:
        """Raise unless the URL signature matches and has not expired."""
        expected = self._signature(method, file_object_id, expires)
        if not hmac.compare_digest(expected, signature):
            raise StorageServiceError("SIGNATURE_MISMATCH", "Presigned URL signature mismatch", status_code=403)
        if expires < int(time.time()):
            raise StorageServiceError("URL_EXPIRED", "Presigned URL has expired", status_code=403)

