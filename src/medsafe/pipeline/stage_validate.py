"""Validation Stage - Synchronous upload checks.

Runs before any dependency is contacted. Oversized uploads are rejected
with DOC_002 and unsupported formats with DOC_001; neither is retried.
"""

import hashlib
import mimetypes
from pathlib import Path
from typing import Iterable, Optional, Union
from uuid import UUID

from medsafe.config import Settings, settings as default_settings
from medsafe.errors import DocumentRejected, ErrorCode
from medsafe.models import DocumentRun, DocumentUpload

# Extensions mimetypes does not know on every platform
_EXTRA_TYPES = {
    ".heic": "image/heic",
    ".webp": "image/webp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
}


class UploadValidator:
    """Checks upload size and content type."""

    def __init__(self, max_bytes: int, accepted_content_types: Iterable[str]):
        self.max_bytes = max_bytes
        self.accepted_content_types = frozenset(t.lower() for t in accepted_content_types)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "UploadValidator":
        config = config or default_settings
        return cls(config.max_upload_bytes, config.accepted_content_types)

    def validate(self, run: Union[DocumentRun, DocumentUpload]) -> None:
        """Raise `DocumentRejected` if the upload cannot be processed."""
        if run.size_bytes > self.max_bytes:
            raise DocumentRejected(
                f"File is {run.size_bytes} bytes; the limit is {self.max_bytes} bytes.",
                ErrorCode.SIZE_EXCEEDED,
            )
        if run.size_bytes == 0:
            raise DocumentRejected("File is empty.", ErrorCode.INVALID_FORMAT)
        content_type = run.content_type.split(";")[0].strip().lower()
        if content_type not in self.accepted_content_types:
            raise DocumentRejected(
                f"Unsupported file type '{run.content_type}'. "
                f"Accepted: {', '.join(sorted(self.accepted_content_types))}.",
                ErrorCode.INVALID_FORMAT,
            )


def guess_content_type(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in _EXTRA_TYPES:
        return _EXTRA_TYPES[suffix]
    content_type, _ = mimetypes.guess_type(path.name)
    return content_type or "application/octet-stream"


def compute_file_hash(path: Path) -> str:
    """Compute SHA-256 hash of file for deduplication."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def upload_from_path(
    user_id: UUID, path: Union[str, Path], content_type: Optional[str] = None
) -> DocumentUpload:
    """Describe a local image file as an upload."""
    path = Path(path)
    return DocumentUpload(
        user_id=user_id,
        source_ref=str(path.resolve()),
        content_type=content_type or guess_content_type(path),
        size_bytes=path.stat().st_size,
        source_hash=compute_file_hash(path),
    )
