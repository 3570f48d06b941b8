"""Byte-range negotiation and chunked delivery of stored media."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional, Tuple

from ..errors import AccessDenied, RangeNotSatisfiable, StreamAborted
from .access import AccessPolicy, AllowAllPolicy, Requester
from .events import log_stream
from .media_store import DEFAULT_CONTENT_TYPE, MediaObject, MediaStore
from .storage import MediaRecord, MediaRepository


LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_BYTES = 1024 * 1024
DEFAULT_READ_BLOCK_BYTES = 64 * 1024

_RANGE_PATTERN = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ByteRange:
    """A single parsed ``bytes=`` range specifier."""

    start: Optional[int]
    end: Optional[int] = None

    @property
    def is_suffix(self) -> bool:
        return self.start is None

    @property
    def opens_session(self) -> bool:
        """``bytes=0-`` is what players send when playback starts."""

        return self.start == 0 and self.end is None


def parse_range_header(value: str) -> ByteRange:
    """Parse ``bytes=start-[end]`` or the suffix form ``bytes=-N``."""

    if "," in value:
        raise RangeNotSatisfiable("Multiple byte ranges are not supported")
    match = _RANGE_PATTERN.match(value)
    if match is None:
        raise RangeNotSatisfiable(f"Malformed Range header: {value!r}")
    start_text, end_text = match.groups()
    if not start_text and not end_text:
        raise RangeNotSatisfiable(f"Malformed Range header: {value!r}")
    if not start_text:
        return ByteRange(start=None, end=int(end_text))
    start = int(start_text)
    end = int(end_text) if end_text else None
    if end is not None and end < start:
        raise RangeNotSatisfiable(f"Range end {end} precedes start {start}")
    return ByteRange(start=start, end=end)


def resolve_range(
    byte_range: ByteRange,
    size_bytes: int,
    *,
    max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES,
) -> Tuple[int, int]:
    """Return the inclusive ``(start, end)`` slice actually served.

    The end is ``min(requested_end, start + max_chunk_bytes - 1, size_bytes - 1)``.
    """

    if byte_range.is_suffix:
        suffix_length = byte_range.end or 0
        if suffix_length <= 0 or size_bytes <= 0:
            raise RangeNotSatisfiable(
                "Suffix range selects no bytes", size_bytes=size_bytes
            )
        start = max(0, size_bytes - suffix_length)
        requested_end = size_bytes - 1
    else:
        start = int(byte_range.start or 0)
        if start >= size_bytes:
            raise RangeNotSatisfiable(
                f"Range start ({start}) >= file size ({size_bytes})",
                size_bytes=size_bytes,
            )
        requested_end = size_bytes - 1 if byte_range.end is None else byte_range.end
    end = min(requested_end, start + max_chunk_bytes - 1, size_bytes - 1)
    return start, end


@dataclass
class StreamPlan:
    """Everything needed to answer one media request."""

    record: MediaRecord
    media: MediaObject
    status_code: int
    start: int
    end: int
    headers: Dict[str, str] = field(default_factory=dict)
    counted_view: bool = False

    @property
    def content_length(self) -> int:
        return max(0, self.end - self.start + 1)

    @property
    def is_partial(self) -> bool:
        return self.status_code == 206


class RangeStreamer:
    """Serve media records as full (200) or partial (206) responses."""

    def __init__(
        self,
        repository: MediaRepository,
        store: MediaStore,
        *,
        access_policy: Optional[AccessPolicy] = None,
        max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES,
        read_block_bytes: int = DEFAULT_READ_BLOCK_BYTES,
        cache_max_age: Optional[int] = 86400,
    ) -> None:
        if max_chunk_bytes <= 0:
            raise ValueError("max_chunk_bytes must be positive")
        self._repository = repository
        self._store = store
        self._access_policy: AccessPolicy = access_policy or AllowAllPolicy()
        self._max_chunk_bytes = int(max_chunk_bytes)
        self._read_block_bytes = max(1, int(read_block_bytes))
        self._cache_max_age = cache_max_age

    @property
    def max_chunk_bytes(self) -> int:
        return self._max_chunk_bytes

    def prepare(
        self,
        record: MediaRecord,
        range_header: Optional[str] = None,
        *,
        requester: Optional[Requester] = None,
        count_view: bool = True,
    ) -> StreamPlan:
        """Validate the request and build the response plan.

        Every failure surfaces here, before any header or byte is written.
        ``view_count`` is bumped at most once, and only for session openers.
        """

        requester = requester or Requester()
        if not self._access_policy.can_access(record, requester):
            raise AccessDenied("This media is not available for viewing")

        byte_range = parse_range_header(range_header) if range_header else None
        if byte_range is not None:
            resolve_range(byte_range, record.size_bytes, max_chunk_bytes=self._max_chunk_bytes)

        media = self._store.describe(record.location_ref, content_type=record.content_type)
        size_bytes = media.size_bytes
        if size_bytes != record.size_bytes:
            LOGGER.warning(
                "Stored size of media %s differs from record (%s != %s); serving stored size",
                record.id,
                size_bytes,
                record.size_bytes,
            )

        content_type = media.content_type or DEFAULT_CONTENT_TYPE
        headers: Dict[str, str] = {
            "Accept-Ranges": "bytes",
            "Content-Type": content_type,
        }
        if self._cache_max_age:
            headers["Cache-Control"] = f"public, max-age={int(self._cache_max_age)}"

        if byte_range is None:
            status_code, start, end = 200, 0, size_bytes - 1
        else:
            start, end = resolve_range(
                byte_range, size_bytes, max_chunk_bytes=self._max_chunk_bytes
            )
            status_code = 206
            headers["Content-Range"] = f"bytes {start}-{end}/{size_bytes}"
        headers["Content-Length"] = str(max(0, end - start + 1))

        counted = False
        if count_view and (byte_range is None or byte_range.opens_session):
            views = self._repository.increment_view_count(record.id)
            counted = True
            LOGGER.debug("Media %s view count is now %s", record.id, views)

        log_stream(
            "Prepared media response",
            record.id,
            byte_range=(start, end) if status_code == 206 else None,
            size_bytes=size_bytes,
            fields={"status": status_code, "counted_view": counted},
            level=logging.DEBUG,
        )
        return StreamPlan(
            record=record,
            media=media,
            status_code=status_code,
            start=start,
            end=end,
            headers=headers,
            counted_view=counted,
        )

    async def iter_bytes(self, plan: StreamPlan) -> AsyncIterator[bytes]:
        """Yield the planned slice in bounded blocks without blocking the loop."""

        remaining = plan.content_length
        if remaining <= 0:
            return
        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        sent = 0
        handle = await loop.run_in_executor(None, self._store.open, plan.media, plan.start)
        try:
            while remaining > 0:
                try:
                    block = await loop.run_in_executor(
                        None, handle.read, min(self._read_block_bytes, remaining)
                    )
                except OSError as error:
                    raise StreamAborted(
                        f"Read failed for media {plan.record.id} after {sent} bytes: {error}"
                    ) from error
                if not block:
                    raise StreamAborted(
                        f"Media {plan.record.id} ended after {sent} of "
                        f"{plan.content_length} bytes"
                    )
                remaining -= len(block)
                sent += len(block)
                yield block
        except (asyncio.CancelledError, GeneratorExit):
            log_stream(
                "Client disconnected mid-transfer",
                plan.record.id,
                byte_range=(plan.start, plan.end),
                size_bytes=plan.media.size_bytes,
                fields={"sent": sent, "remaining": remaining},
            )
            raise
        except StreamAborted as error:
            LOGGER.error("%s", error)
            raise
        else:
            log_stream(
                "Media transfer completed",
                plan.record.id,
                byte_range=(plan.start, plan.end),
                size_bytes=plan.media.size_bytes,
                fields={"sent": sent, "partial": plan.is_partial},
                duration_ms=(time.perf_counter() - started) * 1000.0,
                level=logging.DEBUG,
            )
        finally:
            handle.close()


__all__ = [
    "ByteRange",
    "DEFAULT_MAX_CHUNK_BYTES",
    "RangeStreamer",
    "StreamPlan",
    "parse_range_header",
    "resolve_range",
]
