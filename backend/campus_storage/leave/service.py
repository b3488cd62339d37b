"""DuckDB-backed leave request service.

Stores leave requests for the sandbox backend. Cancelling a request also
deletes every attachment filed under ``LEAVE_REQUEST/<id>``, which is what
makes the cancel endpoint usable as the upload saga's compensating action.

Database Schema:
    leave_requests table:
        - id: Auto-incrementing primary key
        - leave_type_id: Leave type chosen by the student
        - start_date / end_date: Inclusive date range
        - reason: Free text
        - status: SUBMITTED or CANCELLED
        - created_at / cancelled_at: Timestamps
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import duckdb

from ..config import SandboxSettings, get_config
from ..storage.service import ObjectStorageService, StorageServiceError
from .schemas import LEAVE_REQUEST_REF_TYPE, LeaveRequest, LeaveRequestCreate, LeaveStatus

logger = logging.getLogger(__name__)


class LeaveRequestService:
    """Singleton service for leave requests."""

    _instance: Optional["LeaveRequestService"] = None

    def __init__(self, settings: Optional[SandboxSettings] = None) -> None:
        self._settings = settings or get_config().sandbox
        self._db_path = self._settings.leave_db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    @classmethod
    def get_instance(cls, settings: Optional[SandboxSettings] = None) -> "LeaveRequestService":
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
        conn.execute("CREATE SEQUENCE IF NOT EXISTS leave_requests_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS leave_requests (
                id INTEGER DEFAULT nextval('leave_requests_seq') PRIMARY KEY,
                leave_type_id INTEGER NOT NULL,
                start_date DATE NOT NULL,
                end_date DATE NOT NULL,
                reason VARCHAR NOT NULL,
                status VARCHAR NOT NULL,
                created_at TIMESTAMP NOT NULL,
                cancelled_at TIMESTAMP
            )
        """)

    def create(self, req: LeaveRequestCreate) -> LeaveRequest:
        row = self._get_connection().execute(
            """
            INSERT INTO leave_requests
            (leave_type_id, start_date, end_date, reason, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            [
                req.leave_type_id,
                req.start_date,
                req.end_date,
                req.reason.strip(),
                LeaveStatus.SUBMITTED.value,
                datetime.now(),
            ]
        ).fetchone()
        leave = self.get(row[0])
        logger.info("Leave request %s submitted (%d days)", leave.id, leave.days)
        return leave

    def get(self, leave_request_id: int) -> Optional[LeaveRequest]:
        row = self._get_connection().execute(
            """
            SELECT id, leave_type_id, start_date, end_date, reason, status,
                   created_at, cancelled_at
            FROM leave_requests WHERE id = ?
            """,
            [leave_request_id]
        ).fetchone()
        return self._row_to_leave(row) if row else None

    def cancel(self, leave_request_id: int) -> LeaveRequest:
        """Cancel a submitted request and delete its attachments.

        Raises:
            StorageServiceError: NOT_FOUND (404) or INVALID_STATE (409) when
                the request is already cancelled.
        """
        leave = self.get(leave_request_id)
        if leave is None:
            raise StorageServiceError(
                "NOT_FOUND", f"Leave request {leave_request_id} not found", status_code=404
            )
        if leave.status != LeaveStatus.SUBMITTED:
            raise StorageServiceError(
                "INVALID_STATE", f"Leave request {leave_request_id} is already cancelled", status_code=409
            )
        self._get_connection().execute(
            "UPDATE leave_requests SET status = ?, cancelled_at = ? WHERE id = ?",
            [LeaveStatus.CANCELLED.value, datetime.now(), leave_request_id]
        )
        removed = ObjectStorageService.get_instance().delete_business_files(
            LEAVE_REQUEST_REF_TYPE, str(leave_request_id)
        )
        logger.info("Leave request %s cancelled, %d attachments removed", leave_request_id, removed)
        return self.get(leave_request_id)

    @staticmethod
    def _row_to_leave(row) -> LeaveRequest:
        start, end = row[2], row[3]
        return LeaveRequest(
            id=row[0],
            leave_type_id=row[1],
            start_date=start,
            end_date=end,
            days=(end - start).days + 1,
            reason=row[4],
            status=LeaveStatus(row[5]),
            created_at=row[6].timestamp(),
            cancelled_at=row[7].timestamp() if row[7] else None,
        )
