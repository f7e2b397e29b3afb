"""File Store Writer: validation and on-disk placement of uploaded files.

Layout under the managed upload root::

    {category}/{bucket}/{field_name}_{timestamp_ms}{ext}

``bucket`` is ``{timestamp_ms}-{random token}`` so two submissions in the same
millisecond never share a directory. Stored paths are normalized to be
relative to the public web root (``uploads/...``) so the static file mount can
serve them verbatim.

Writes go through an :class:`UploadBatch`: files are staged in a private
directory next to the upload root (outside what is served) first and only moved into place by ``commit()``. If anything inside
the ``FileStore.batch()`` block fails, every file the batch produced is
removed again.
"""
from __future__ import annotations

import io
import logging
import secrets
import shutil
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Iterator

from PIL import Image
from pypdf import PdfReader

from .config import MIB, UploadSettings

logger = logging.getLogger(__name__)

# Sibling of the upload root, so staged files are never served
STAGING_DIR = ".upload-staging"


class FileKind(str, Enum):
    """Accepted upload content types."""
    PDF = "pdf"
    JPEG = "jpeg"
    PNG = "png"


MIME_KINDS = {
    "application/pdf": FileKind.PDF,
    "image/jpeg": FileKind.JPEG,
    "image/jpg": FileKind.JPEG,
    "image/png": FileKind.PNG,
}

KIND_EXTENSIONS = {
    FileKind.PDF: (".pdf",),
    FileKind.JPEG: (".jpg", ".jpeg"),
    FileKind.PNG: (".png",),
}

KIND_MIME_TYPES = {
    FileKind.PDF: "application/pdf",
    FileKind.JPEG: "image/jpeg",
    FileKind.PNG: "image/png",
}

INVALID_TYPE_MESSAGE = "Invalid file type. Only PDF and images are allowed."


class InvalidFile(Exception):
    """Raised when an upload is rejected before it is written."""
    pass


class FileTooLarge(InvalidFile):
    """Raised when an upload exceeds the per-form size ceiling."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        super().__init__(f"File too large. Maximum size is {max_bytes / MIB:g} MB.")


class InvalidPath(Exception):
    """Raised when a storage path would escape the managed upload root."""
    pass


@dataclass
class IncomingFile:
    """An uploaded file as received from the client."""
    field_name: str
    filename: str
    content_type: str | None
    content: bytes


@dataclass
class CheckedFile:
    """An upload that passed validation and may be written."""
    incoming: IncomingFile
    kind: FileKind
    extension: str


def detect_kind(content: bytes) -> FileKind | None:
    """Detect the file kind from its magic number."""
    if content.startswith(b"%PDF"):
        return FileKind.PDF
    if content.startswith(b"\xff\xd8\xff"):
        return FileKind.JPEG
    if content.startswith(b"\x89PNG\r\n\x1a\n"):
        return FileKind.PNG
    return None


def _verify_content(kind: FileKind, content: bytes) -> None:
    try:
        if kind is FileKind.PDF:
            PdfReader(io.BytesIO(content))
        else:
            with Image.open(io.BytesIO(content)) as image:
                image.verify()
    except Exception as e:
        raise InvalidFile(f"Uploaded {kind.value.upper()} file is corrupt or unreadable") from e


def _pick_extension(filename: str, kind: FileKind) -> str:
    suffix = PurePosixPath(filename.replace("\\", "/")).suffix.lower()
    allowed = KIND_EXTENSIONS[kind]
    return suffix if suffix in allowed else allowed[0]


def _timestamp_ms() -> int:
    return time.time_ns() // 1_000_000


class UploadBatch:
    """Files written for a single submission.

    Created by :meth:`FileStore.batch`; not meant to be instantiated directly.
    """

    def __init__(self, store: FileStore, category: str):
        self.store = store
        self.category = category
        stamp = _timestamp_ms()
        token = secrets.token_hex(4)
        self.bucket_dir = store.category_dir(category) / f"{stamp}-{token}"
        self.staging_dir = store.staging_root / f"{stamp}-{token}"
        self._staged: list[tuple[Path, Path]] = []
        self._committed: list[Path] = []

    def add(self, checked: CheckedFile) -> str:
        """Stage a validated file and return its final public path."""
        incoming = checked.incoming
        if not incoming.field_name or any(sep in incoming.field_name for sep in ("/", "\\", "..")):
            raise InvalidPath(f"Field name {incoming.field_name!r} cannot be used in a filename")
        filename = f"{incoming.field_name}_{_timestamp_ms()}{checked.extension}"
        final_path = self.bucket_dir / filename
        public_path = self.store.public_path(final_path)

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        staged_path = self.staging_dir / filename
        staged_path.write_bytes(incoming.content)
        self._staged.append((staged_path, final_path))

        logger.debug(f"Staged {incoming.field_name} ({len(incoming.content)} bytes) for {public_path}")
        return public_path

    def commit(self) -> None:
        """Move staged files into the bucket directory."""
        if not self._staged:
            return
        self.bucket_dir.mkdir(parents=True, exist_ok=True)
        while self._staged:
            staged_path, final_path = self._staged.pop(0)
            staged_path.replace(final_path)
            self._committed.append(final_path)

    def discard(self) -> None:
        """Remove every staged and committed file of this batch."""
        for path in self._committed:
            path.unlink(missing_ok=True)
        self._committed.clear()
        self._staged.clear()
        self._cleanup_staging()
        try:
            self.bucket_dir.rmdir()
        except OSError:
            # Missing or not empty: nothing of ours left in it
            pass

    def _cleanup_staging(self) -> None:
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir, ignore_errors=True)


class FileStore:
    """Writes uploads under the managed upload root."""

    def __init__(self, config: UploadSettings):
        self.settings = config
        self.root = Path(config.root).resolve()
        self.staging_root = self.root.parent / STAGING_DIR
        self.url_prefix = config.url_prefix

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def category_dir(self, category: str) -> Path:
        path = (self.root / category).resolve()
        self._ensure_inside_root(path)
        return path

    def check(self, incoming: IncomingFile, *, max_bytes: int) -> CheckedFile:
        """Validate type and size of an upload before anything is written.

        Raises:
            FileTooLarge: If the content exceeds ``max_bytes``
            InvalidFile: If the declared MIME type is not allowed or the
                content does not match it
        """
        if len(incoming.content) > max_bytes:
            logger.warning(
                f"Rejected {incoming.field_name}: {len(incoming.content)} bytes exceeds {max_bytes}"
            )
            raise FileTooLarge(max_bytes)

        content_type = (incoming.content_type or "").split(";")[0].strip().lower()
        declared = MIME_KINDS.get(content_type)
        if declared is None or content_type not in self.settings.allowed_mime_types:
            logger.warning(f"Rejected {incoming.field_name}: content type {content_type!r} not allowed")
            raise InvalidFile(INVALID_TYPE_MESSAGE)

        detected = detect_kind(incoming.content)
        if detected is not declared:
            logger.warning(
                f"Rejected {incoming.field_name}: declared {declared.value}, "
                f"content looks like {detected.value if detected else 'unknown'}"
            )
            raise InvalidFile(INVALID_TYPE_MESSAGE)

        if self.settings.verify_content:
            _verify_content(detected, incoming.content)

        return CheckedFile(
            incoming=incoming,
            kind=detected,
            extension=_pick_extension(incoming.filename, detected),
        )

    @contextmanager
    def batch(self, category: str) -> Iterator[UploadBatch]:
        """Group the files of one submission.

        Usage:
            with store.batch("document-upload") as batch:
                path = batch.add(checked)
                batch.commit()
                ...  # persist the row; an exception here removes the files
        """
        upload_batch = UploadBatch(self, category)
        try:
            yield upload_batch
        except BaseException:
            upload_batch.discard()
            logger.info(f"Discarded uploads for {category} batch {upload_batch.bucket_dir.name}")
            raise
        else:
            upload_batch.commit()
        finally:
            upload_batch._cleanup_staging()

    def store(
        self,
        category: str,
        field_name: str,
        original_filename: str,
        content: bytes,
        content_type: str | None = None,
        max_bytes: int | None = None,
    ) -> str:
        """Validate and write a single file, returning its public path.

        Without ``content_type`` the type is taken from the file's magic number.
        """
        if content_type is None:
            content_type = KIND_MIME_TYPES.get(detect_kind(content))
        checked = self.check(
            IncomingFile(field_name, original_filename, content_type, content),
            max_bytes=max_bytes or self.settings.document_max_bytes,
        )
        with self.batch(category) as upload_batch:
            return upload_batch.add(checked)

    def public_path(self, path: Path) -> str:
        """Normalize an absolute path under the root to its public form.

        Raises:
            InvalidPath: If the path resolves outside the upload root
        """
        resolved = Path(path).resolve()
        relative = self._ensure_inside_root(resolved)
        parts = [part for part in relative.as_posix().split("/") if part not in ("", ".")]
        if not parts:
            raise InvalidPath(f"{path} is the upload root itself")
        return "/".join([self.url_prefix, *parts]) if self.url_prefix else "/".join(parts)

    def resolve(self, public_path: str) -> Path:
        """Map a stored public path back to its location on disk.

        Raises:
            InvalidPath: If the path does not belong to the upload root
        """
        posix = PurePosixPath(public_path.replace("\\", "/").lstrip("/"))
        parts = posix.parts
        if self.url_prefix:
            if not parts or parts[0] != self.url_prefix:
                raise InvalidPath(f"{public_path} is not under /{self.url_prefix}")
            parts = parts[1:]
        resolved = self.root.joinpath(*parts).resolve()
        self._ensure_inside_root(resolved)
        return resolved

    def _ensure_inside_root(self, path: Path) -> Path:
        try:
            return path.relative_to(self.root)
        except ValueError:
            raise InvalidPath(f"{path} escapes upload root {self.root}") from None
