import logging
import re
import uuid
from pathlib import Path

from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

ALLOWED_DOCUMENT_TYPES = {
    "application/pdf": (".pdf",),
    "image/jpeg": (".jpg", ".jpeg"),
    "image/png": (".png",),
}


class DocumentStorage:
    """Stores practitioner verification documents on the local filesystem."""

    def __init__(self, base_path: str, max_size: int = 10 * 1024 * 1024):
        self.base_path = Path(base_path)
        self.max_size = max_size

    def validate(self, filename: str, content_type: str | None, size: int) -> str:
        """Returns the normalized extension or raises 400."""
        if size > self.max_size:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File size exceeds maximum allowed size of {self.max_size // (1024 * 1024)}MB",
            )
        if size == 0:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is empty")

        extensions = ALLOWED_DOCUMENT_TYPES.get((content_type or "").lower())
        if extensions is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File type not allowed. Allowed types: {', '.join(ALLOWED_DOCUMENT_TYPES)}",
            )

        extension = Path(filename or "").suffix.lower()
        if extension not in extensions:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File extension not allowed for {content_type}",
            )
        return extension

    def store(self, practitioner_id: str, filename: str, content_type: str | None, data: bytes) -> str:
        """
        Writes the document under <base>/<practitioner>/ with a random name.
        Returns the path relative to the storage root.
        """
        extension = self.validate(filename, content_type, len(data))

        folder = self.base_path / _safe_segment(practitioner_id)
        folder.mkdir(parents=True, exist_ok=True)
        target = folder / f"{uuid.uuid4().hex}{extension}"
        target.write_bytes(data)

        relative = target.relative_to(self.base_path).as_posix()
        logger.debug("Verification document stored", extra={"document_path": relative, "size": len(data)})
        return relative

    def delete(self, relative_path: str) -> None:
        target = self.base_path / relative_path
        try:
            target.unlink()
        except FileNotFoundError:
            logger.warning("Verification document already gone", extra={"document_path": relative_path})


def _safe_segment(value: str) -> str:
    # Practitioner ids come from the client; keep them from escaping the storage root
    cleaned = re.sub(r"[^A-Za-z0-9_-]", "_", value).strip("_")
    return cleaned or "unknown"
