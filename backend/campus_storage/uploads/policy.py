"""Client-side upload policy checks.

``validate`` mirrors the backend's storage-config rules so that obviously
bad files are rejected before any network call. The backend re-validates on
session creation; this check only saves a round trip.

Also hosts the size helpers used when editing storage configs
(``parse_max_size`` / ``format_size``) and the common extension -> MIME table.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .errors import ValidationError
from .schemas import UploadItem, UploadPolicy


class ValidationRejection(str, Enum):
    TOO_LARGE = "too_large"
    EXTENSION_DENIED = "extension_denied"
    MIME_DENIED = "mime_denied"


@dataclass(frozen=True)
class ValidationResult:
    rejection: Optional[ValidationRejection] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.rejection is None


OK = ValidationResult()


def file_extension(filename: str) -> str:
    """Lowercased text after the last dot, or "" when there is none."""
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[1].lower()


def validate(item: UploadItem, policy: UploadPolicy) -> ValidationResult:
    """Check a candidate file against a bucket's upload policy.

    Pure: the same item and policy always produce the same result.

    Rules, in order:
        * size, only if ``max_file_size`` is a positive number
        * extension, only if ``allowed_extensions`` is non-empty and the
          filename has an extension
        * MIME type, only if ``allowed_mime_types`` is non-empty and the
          client reported a MIME type (empty MIME is not checked)
    """
    max_size = policy.max_file_size
    if max_size is not None and max_size > 0 and item.size_bytes > max_size:
        return ValidationResult(
            ValidationRejection.TOO_LARGE,
            f"File size ({format_size(item.size_bytes)}) exceeds limit ({format_size(max_size)})",
        )

    if policy.allowed_extensions:
        ext = file_extension(item.original_filename)
        if ext and ext not in policy.allowed_extensions:
            return ValidationResult(
                ValidationRejection.EXTENSION_DENIED,
                f"Extension '.{ext}' is not allowed for {policy.bucket_purpose}",
            )

    if policy.allowed_mime_types and item.mime_type:
        if item.mime_type.lower() not in policy.allowed_mime_types:
            return ValidationResult(
                ValidationRejection.MIME_DENIED,
                f"MIME type '{item.mime_type}' is not allowed for {policy.bucket_purpose}",
            )

    return OK


def ensure_valid(item: UploadItem, policy: UploadPolicy) -> None:
    """Raising variant of :func:`validate`."""
    result = validate(item, policy)
    if not result.ok:
        raise ValidationError(result.message, rejection=result.rejection.value)


# ---------------------------------------------------------------------------
# Size helpers
# ---------------------------------------------------------------------------

_SIZE_RE = re.compile(r"^([0-9]+)(\.?[0-9]*)?\s*(B|K|KB|M|MB|G|GB|Mi|Gi|Ki)?$", re.IGNORECASE)

_SIZE_MULTIPLIERS = {
    "B": 1,
    "K": 1000,
    "KB": 1000,
    "M": 1000 ** 2,
    "MB": 1000 ** 2,
    "G": 1000 ** 3,
    "GB": 1000 ** 3,
    "KI": 1024,
    "MI": 1024 ** 2,
    "GI": 1024 ** 3,
}

MAX_CONFIGURABLE_SIZE = 5 * 1024 ** 4  # 5 TiB


def parse_max_size(raw: str) -> int:
    """Parse a human size such as ``10Mi``, ``512K`` or ``1048576`` into bytes.

    K/M/G (and KB/MB/GB) are decimal; Ki/Mi/Gi are binary. Bare numbers are
    bytes.

    Raises:
        ValueError: empty input, bad format, non-positive or > 5 TiB.

    Examples:
        >>> parse_max_size("10Mi")
        10485760
        >>> parse_max_size("1.5K")
        1500
    """
    if not raw or not raw.strip():
        raise ValueError("size is required")
    match = _SIZE_RE.match(raw.strip())
    if not match:
        raise ValueError(f"invalid size '{raw}', e.g. 10Mi / 512K / 1Gi / 1048576")
    number = float(match.group(1) + (match.group(2) or ""))
    unit = (match.group(3) or "B").upper()
    value = int(number * _SIZE_MULTIPLIERS[unit])
    if value <= 0:
        raise ValueError("size must be greater than 0")
    if value > MAX_CONFIGURABLE_SIZE:
        raise ValueError("size is too large")
    return value


def format_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes}B"
    if num_bytes < 1024 ** 2:
        return f"{num_bytes / 1024:.1f}KB"
    if num_bytes < 1024 ** 3:
        return f"{num_bytes / 1024 ** 2:.1f}MB"
    return f"{num_bytes / 1024 ** 3:.1f}GB"


# ---------------------------------------------------------------------------
# Common file types
# ---------------------------------------------------------------------------

# Extension -> MIME types, used to keep allowedExtensions and
# allowedMimeTypes of a storage config in sync.
COMMON_FILE_TYPES: Dict[str, List[str]] = {
    "jpg": ["image/jpeg"],
    "jpeg": ["image/jpeg"],
    "png": ["image/png"],
    "gif": ["image/gif"],
    "webp": ["image/webp"],
    "svg": ["image/svg+xml"],
    "pdf": ["application/pdf"],
    "txt": ["text/plain"],
    "json": ["application/json"],
    "xml": ["application/xml", "text/xml"],
    "doc": ["application/msword"],
    "docx": ["application/vnd.openxmlformats-officedocument.wordprocessingml.document"],
    "xls": ["application/vnd.ms-excel"],
    "xlsx": ["application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"],
    "ppt": ["application/vnd.ms-powerpoint"],
    "pptx": ["application/vnd.openxmlformats-officedocument.presentationml.presentation"],
    "zip": ["application/zip"],
    "gz": ["application/gzip"],
    "tar": ["application/x-tar"],
    "mp3": ["audio/mpeg"],
    "wav": ["audio/wav", "audio/x-wav"],
    "mp4": ["video/mp4"],
    "mov": ["video/quicktime"],
    "avi": ["video/x-msvideo"],
    "csv": ["text/csv"],
    "md": ["text/markdown"],
}


def mime_types_for_extensions(extensions: Iterable[str]) -> List[str]:
    """MIME types implied by a set of extensions, in first-seen order."""
    seen: List[str] = []
    for ext in extensions:
        for mime in COMMON_FILE_TYPES.get(ext.lower().lstrip("."), []):
            if mime not in seen:
                seen.append(mime)
    return seen
