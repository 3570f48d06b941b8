"""Filesystem-backed media object store."""

from __future__ import annotations

import errno
import logging
import mimetypes
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Protocol, Tuple

from ..errors import MediaUnavailable


LOGGER = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "video/mp4"

_MISSING_ERRNOS = {errno.ENOENT, errno.ENOTDIR, errno.EISDIR}


@dataclass(frozen=True)
class MediaObject:
    """A stored object resolved to a readable location."""

    location_ref: str
    path: Path
    size_bytes: int
    content_type: str


class MediaStore(Protocol):
    """Protocol describing where media bytes come from."""

    def describe(self, location_ref: str, *, content_type: Optional[str] = None) -> MediaObject:
        """Resolve *location_ref* or raise :class:`MediaUnavailable`."""

    def open(self, media: MediaObject, offset: int = 0) -> BinaryIO:
        """Return a binary handle positioned at *offset*."""


def _unavailable_from_os_error(error: OSError, location_ref: str) -> MediaUnavailable:
    if isinstance(error, (FileNotFoundError, IsADirectoryError, NotADirectoryError)) or (
        error.errno in _MISSING_ERRNOS
    ):
        return MediaUnavailable(f"Media file '{location_ref}' not found", status_code=404)
    return MediaUnavailable(
        f"Media storage is unavailable for '{location_ref}': {error.strerror or error}",
        status_code=503,
    )


class FilesystemMediaStore:
    """Resolve location references relative to a media root directory."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, location_ref: str) -> Path:
        candidate = (self._root / location_ref).resolve()
        try:
            candidate.relative_to(self._root)
        except ValueError as error:
            raise MediaUnavailable(
                f"Media location '{location_ref}' is outside the media root",
                status_code=404,
            ) from error
        return candidate

    def describe(self, location_ref: str, *, content_type: Optional[str] = None) -> MediaObject:
        if not self._root.is_dir():
            raise MediaUnavailable(
                f"Media root '{self._root}' is not mounted", status_code=503
            )
        path = self.resolve(location_ref)
        try:
            stat_result = path.stat()
        except OSError as error:
            raise _unavailable_from_os_error(error, location_ref) from error
        if not path.is_file():
            raise MediaUnavailable(f"Media file '{location_ref}' not found", status_code=404)
        resolved_type = content_type or mimetypes.guess_type(path.name)[0] or DEFAULT_CONTENT_TYPE
        return MediaObject(
            location_ref=location_ref,
            path=path,
            size_bytes=int(stat_result.st_size),
            content_type=resolved_type,
        )

    def open(self, media: MediaObject, offset: int = 0) -> BinaryIO:
        try:
            handle = media.path.open("rb")
        except OSError as error:
            raise _unavailable_from_os_error(error, media.location_ref) from error
        try:
            if offset:
                handle.seek(offset)
        except OSError as error:
            handle.close()
            raise _unavailable_from_os_error(error, media.location_ref) from error
        return handle

    def import_file(self, source: Path, *, owner_id: str) -> Tuple[str, int, str]:
        """Place *source* under the media root and return ``(ref, size, type)``.

        Files already inside the root are referenced in place; anything else is
        copied into a per-owner directory.
        """

        source = Path(source).resolve()
        if not source.is_file():
            raise MediaUnavailable(f"Source file '{source}' not found", status_code=404)
        try:
            location_ref = source.relative_to(self._root).as_posix()
        except ValueError:
            target_dir = self._root / str(owner_id)
            target_dir.mkdir(parents=True, exist_ok=True)
            target = target_dir / f"{uuid.uuid4().hex[:12]}-{source.name}"
            shutil.copyfile(source, target)
            LOGGER.info("Copied %s into media store as %s", source, target)
            location_ref = target.relative_to(self._root).as_posix()
        media = self.describe(location_ref)
        return media.location_ref, media.size_bytes, media.content_type


__all__ = ["DEFAULT_CONTENT_TYPE", "FilesystemMediaStore", "MediaObject", "MediaStore"]
