"""Campus Storage configuration.

Loads settings from a single YAML file:
  * campus_storage.settings.yaml  (path overridable via CAMPUS_STORAGE_SETTINGS)

Sections:
  * ApiSettings      - where the storage/metadata backend lives
  * UploadSettings   - bucket purpose, business refs, cancel endpoints
  * SandboxSettings  - the local reference backend (DuckDB + disk)
  * LoggingSettings  - root log level
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("campus_storage.settings.yaml")
SETTINGS_ENV_VAR = "CAMPUS_STORAGE_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _settings_path() -> Path:
    override = os.environ.get(SETTINGS_ENV_VAR)
    return Path(override) if override else SETTINGS_FILE


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ApiSettings(BaseModel):
    base_url:         str   = "http://localhost:8000"
    storage_prefix:   str   = "/api/object-storage"
    request_timeout:  float = 30.0
    upload_timeout:   float = 300.0
    chunk_size:       int   = 256 * 1024

    @field_validator("storage_prefix")
    @classmethod
    def _normalise_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v:
            return ""
        return "/" + v.strip("/")

    @field_validator("chunk_size")
    @classmethod
    def _positive_chunk(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("chunk_size must be positive")
        return v


class UploadSettings(BaseModel):
    """Client-side conventions shared with the backend storage configs."""
    bucket_purpose:     str = "LEAVE_ATTACHMENT"
    business_ref_type:  str = "LEAVE_REQUEST"
    default_mime_type:  str = "application/octet-stream"
    # businessRefType -> POST path template, formatted with ref_type/ref_id
    cancel_paths: Dict[str, str] = Field(
        default_factory=lambda: {"LEAVE_REQUEST": "/api/leave/{ref_id}/cancel"}
    )
    leave_request_path: str = "/api/leave/request"
    # Error codes on /upload/confirm that may mean an earlier attempt won
    reconcilable_codes: List[str] = Field(
        default_factory=lambda: ["ALREADY_CONFIRMED", "INVALID_STATE"]
    )
    # Legacy backends only send text; matched case-insensitively
    reconcilable_markers: List[str] = Field(
        default_factory=lambda: [
            "当前状态不允许确认",
            "already confirmed",
            "does not allow confirmation",
        ]
    )


class SandboxSettings(BaseModel):
    """Configuration for the local reference backend."""
    data_dir:               str           = "./storage_data"
    db_path:                str           = "./storage_data/metadata.duckdb"
    leave_db_path:          str           = "./storage_data/leave.duckdb"
    # Empty: presigned URLs use the base URL of the incoming request
    public_base_url:        str           = ""
    presign_expire_seconds: int           = 600
    signing_secret:         str           = "change-me-in-production"
    seed_leave_policy:      bool          = True
    leave_max_file_size:    Optional[int] = 5 * 1024 * 1024


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    api:      ApiSettings     = Field(default_factory=ApiSettings)
    uploads:  UploadSettings  = Field(default_factory=UploadSettings)
    sandbox:  SandboxSettings = Field(default_factory=SandboxSettings)
    logging:  LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load settings from YAML into a single *AppSettings* object."""
    settings_data = _load_yaml(path or _settings_path())
    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (api=%s%s, bucket_purpose=%s)",
        app_settings.api.base_url,
        app_settings.api.storage_prefix,
        app_settings.uploads.bucket_purpose,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Drop the cached settings (for testing)."""
    global _config
    _config = None
