"""Content-addressed file storage.

Blobs are written once to ``<files_dir>/<sha256><ext>`` and registered as a
FileRef unique per (owner, sha256). Submitting identical bytes again returns
the existing FileRef instead of storing a second copy.
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import os
import uuid
from pathlib import Path

from cairn.db.models import FileRef
from cairn.db.repository import Repository
from cairn.errors import NotFoundError

logger = logging.getLogger(__name__)

_READ_BLOCK = 1024 * 1024


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(_READ_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


def guess_mime_type(file_name: str) -> str:
    mime, _ = mimetypes.guess_type(file_name)
    return mime or "application/octet-stream"


class FileStore:
    """Stores uploaded files on disk and records them in the repository."""

    def __init__(self, repo: Repository, files_dir: Path | str) -> None:
        self.repo = repo
        self.files_dir = Path(files_dir)

    def store(
        self,
        source: Path | bytes,
        owner: str,
        *,
        file_name: str = "",
        mime_type: str | None = None,
    ) -> FileRef:
        """Store *source* (a path or raw bytes) for *owner* and return its FileRef."""
        if isinstance(source, Path):
            file_name = file_name or source.name
            data = source.read_bytes()
        else:
            data = source
        digest = sha256_bytes(data)
        mime = mime_type or guess_mime_type(file_name)

        self.files_dir.mkdir(parents=True, exist_ok=True)
        blob = self.files_dir / f"{digest}{Path(file_name).suffix.lower()}"
        if not blob.exists():
            tmp = blob.with_name(f".{blob.name}.{uuid.uuid4().hex}.tmp")
            tmp.write_bytes(data)
            os.replace(tmp, blob)

        ref, created = self.repo.add_file(
            FileRef(
                id=uuid.uuid4().hex,
                owner=owner,
                sha256=digest,
                path=str(blob),
                mime_type=mime,
                file_name=file_name,
            )
        )
        if created:
            logger.info("Stored file %s (%s, %d bytes)", ref.id, mime, len(data))
        else:
            logger.info("File already stored as %s", ref.id)
        return ref

    def open(self, file_id: str, owner: str) -> tuple[FileRef, Path]:
        """Return the FileRef and blob path for *file_id*.

        Raises:
            NotFoundError: Unknown id or the blob is missing on disk.
            OwnershipError: The file belongs to another owner.
        """
        ref = self.repo.get_file(file_id, owner)
        if ref is None:
            raise NotFoundError(f"File '{file_id}' not found")
        path = Path(ref.path)
        if not path.exists():
            raise NotFoundError(f"Blob for file '{file_id}' is missing at '{path}'")
        return ref, path
