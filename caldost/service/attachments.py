from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence

from caldost.logging import get_logger
from caldost.service.errors import ValidationError
from caldost.service.fs import PathTraversalError, safe_join, sanitize_filename
from caldost.storage.models import Attachment, ComplaintDomain, utcnow

logger = get_logger(__name__)


@dataclass
class Upload:
    """A file received with a complaint update, not yet stored."""

    filename: str
    content_type: Optional[str]
    data: bytes
    note: Optional[str] = None


class AttachmentStore:
    """Writes complaint attachments under ``{fs_root}/attachments``.

    A file that is too large or fails to write is skipped and logged; the
    rest of the update goes ahead.
    """

    def __init__(self, fs_root: str, *, max_files: int = 5, max_bytes: int = 10 * 1024 * 1024):
        self.base = Path(fs_root) / "attachments"
        self.max_files = max_files
        self.max_bytes = max_bytes

    def check_count(self, uploads: Sequence[Any]) -> None:
        if len(uploads) > self.max_files:
            raise ValidationError(
                f"At most {self.max_files} attachments are allowed per request",
                detail={"max_attachments": self.max_files},
            )

    async def store_attachment(
        self, domain: ComplaintDomain, complaint_number: str, upload: Upload
    ) -> Attachment:
        if not upload.data:
            raise ValueError("empty file")
        if len(upload.data) > self.max_bytes:
            raise ValueError(f"file exceeds {self.max_bytes} bytes")
        attachment_id = uuid.uuid4().hex
        relative = (
            f"{domain.value}/{complaint_number}/"
            f"{attachment_id}_{sanitize_filename(upload.filename)}"
        )
        path = safe_join(self.base, relative)
        await asyncio.to_thread(self._write, path, upload.data)
        return Attachment(
            id=attachment_id,
            url=f"attachments/{relative}",
            original_name=upload.filename,
            mimetype=upload.content_type,
            size=len(upload.data),
            uploaded_at=utcnow(),
            note=upload.note,
        )

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def store_many(
        self, domain: ComplaintDomain, complaint_number: str, uploads: Sequence[Upload]
    ) -> List[Attachment]:
        self.check_count(uploads)
        stored: List[Attachment] = []
        for upload in uploads:
            try:
                stored.append(await self.store_attachment(domain, complaint_number, upload))
            except (OSError, ValueError, PathTraversalError) as exc:
                logger.warning(
                    "attachment_skipped",
                    complaint_number=complaint_number,
                    filename=upload.filename,
                    error=str(exc),
                )
        return stored

    def discard(self, attachments: Sequence[Attachment]) -> None:
        """Remove files written for an update that was then rejected."""
        for attachment in attachments:
            relative = attachment.url.split("/", 1)[-1]
            try:
                safe_join(self.base, relative).unlink(missing_ok=True)
            except (OSError, PathTraversalError) as exc:
                logger.warning(
                    "attachment_discard_failed", attachment_id=attachment.id, error=str(exc)
                )


__all__ = ["AttachmentStore", "Upload"]
