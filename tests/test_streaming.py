from __future__ import annotations

import asyncio
from typing import List

import pytest

from mediahub.errors import AccessDenied, MediaUnavailable, RangeNotSatisfiable, StreamAborted
from mediahub.services.access import AllowAllPolicy, Requester, RoleAccessPolicy
from mediahub.services.media_store import FilesystemMediaStore
from mediahub.services.storage import MediaRepository
from mediahub.services.streaming import (
    ByteRange,
    RangeStreamer,
    parse_range_header,
    resolve_range,
)


SIZE = 10_000_000
MIB = 1024 * 1024


def _collect(streamer: RangeStreamer, plan) -> bytes:
    async def _drain() -> List[bytes]:
        return [block async for block in streamer.iter_bytes(plan)]

    return b"".join(asyncio.run(_drain()))


@pytest.fixture()
def streamer(temp_config, repository: MediaRepository) -> RangeStreamer:
    return RangeStreamer(
        repository,
        FilesystemMediaStore(temp_config.media_root),
        access_policy=AllowAllPolicy(),
        max_chunk_bytes=temp_config.max_chunk_bytes,
        read_block_bytes=4096,
    )


@pytest.mark.parametrize(
    "header, expected",
    [
        ("bytes=0-", ByteRange(0, None)),
        ("bytes=100-199", ByteRange(100, 199)),
        ("bytes=-500", ByteRange(None, 500)),
        ("BYTES = 5 - ", ByteRange(5, None)),
    ],
)
def test_parse_range_header_accepts_single_ranges(header: str, expected: ByteRange) -> None:
    assert parse_range_header(header) == expected


@pytest.mark.parametrize(
    "header",
    ["bytes=0-10,20-30", "items=0-10", "bytes=-", "bytes=abc-", "bytes=10-5"],
)
def test_parse_range_header_rejects_unsupported_forms(header: str) -> None:
    with pytest.raises(RangeNotSatisfiable):
        parse_range_header(header)


def test_open_ended_range_is_capped_to_one_chunk() -> None:
    start, end = resolve_range(ByteRange(0, None), SIZE, max_chunk_bytes=MIB)

    assert (start, end) == (0, 1048575)
    assert end - start + 1 == 1048576


def test_last_byte_is_served_alone() -> None:
    start, end = resolve_range(ByteRange(9_999_999, None), SIZE, max_chunk_bytes=MIB)

    assert (start, end) == (9_999_999, 9_999_999)


def test_start_at_size_is_not_satisfiable() -> None:
    with pytest.raises(RangeNotSatisfiable) as excinfo:
        resolve_range(ByteRange(SIZE, None), SIZE, max_chunk_bytes=MIB)

    assert excinfo.value.size_bytes == SIZE


def test_explicit_end_past_size_is_clamped() -> None:
    assert resolve_range(ByteRange(SIZE - 10, SIZE + 500), SIZE, max_chunk_bytes=MIB) == (
        SIZE - 10,
        SIZE - 1,
    )


def test_suffix_range_selects_tail() -> None:
    assert resolve_range(ByteRange(None, 500), SIZE, max_chunk_bytes=MIB) == (
        SIZE - 500,
        SIZE - 1,
    )
    assert resolve_range(ByteRange(None, SIZE * 2), 100, max_chunk_bytes=MIB) == (0, 99)
    with pytest.raises(RangeNotSatisfiable):
        resolve_range(ByteRange(None, 0), SIZE, max_chunk_bytes=MIB)


def test_full_request_returns_whole_object_and_counts_view(
    streamer: RangeStreamer, repository: MediaRepository, sample_media: str, sample_payload: bytes
) -> None:
    record = repository.require_media(sample_media)

    plan = streamer.prepare(record)

    assert plan.status_code == 200
    assert plan.headers["Content-Length"] == str(len(sample_payload))
    assert plan.headers["Accept-Ranges"] == "bytes"
    assert plan.headers["Content-Type"] == "video/mp4"
    assert plan.headers["Cache-Control"] == "public, max-age=86400"
    assert "Content-Range" not in plan.headers
    assert plan.counted_view
    assert _collect(streamer, plan) == sample_payload
    assert repository.require_media(sample_media).view_count == 1


def test_partial_request_serves_requested_slice(
    streamer: RangeStreamer, repository: MediaRepository, sample_media: str, sample_payload: bytes
) -> None:
    record = repository.require_media(sample_media)

    plan = streamer.prepare(record, "bytes=100-5099")

    assert plan.status_code == 206
    assert plan.headers["Content-Range"] == f"bytes 100-5099/{len(sample_payload)}"
    assert plan.headers["Content-Length"] == "5000"
    assert _collect(streamer, plan) == sample_payload[100:5100]


def test_only_session_openers_count_views(
    streamer: RangeStreamer, repository: MediaRepository, sample_media: str
) -> None:
    record = repository.require_media(sample_media)

    streamer.prepare(record, "bytes=0-")
    streamer.prepare(record, "bytes=0-99")
    streamer.prepare(record, "bytes=1000-")
    streamer.prepare(record, "bytes=-100")

    assert repository.require_media(sample_media).view_count == 1


def test_count_view_can_be_disabled(
    streamer: RangeStreamer, repository: MediaRepository, sample_media: str
) -> None:
    record = repository.require_media(sample_media)

    plan = streamer.prepare(record, count_view=False)

    assert not plan.counted_view
    assert repository.require_media(sample_media).view_count == 0


def test_unsatisfiable_range_does_not_count_view(
    streamer: RangeStreamer, repository: MediaRepository, sample_media: str, sample_payload: bytes
) -> None:
    record = repository.require_media(sample_media)

    with pytest.raises(RangeNotSatisfiable):
        streamer.prepare(record, f"bytes={len(sample_payload)}-")

    assert repository.require_media(sample_media).view_count == 0


def test_missing_object_is_reported_before_streaming(
    streamer: RangeStreamer, repository: MediaRepository
) -> None:
    media_id = repository.add_media(
        owner_id="owner-1",
        location_ref="owner-1/gone.mp4",
        content_type="video/mp4",
        size_bytes=10,
    )

    with pytest.raises(MediaUnavailable) as excinfo:
        streamer.prepare(repository.require_media(media_id))

    assert excinfo.value.status_code == 404
    assert repository.require_media(media_id).view_count == 0


def test_truncated_object_aborts_stream(
    streamer: RangeStreamer, repository: MediaRepository, sample_media: str, temp_config
) -> None:
    record = repository.require_media(sample_media)
    plan = streamer.prepare(record, "bytes=0-99")
    (temp_config.media_root / record.location_ref).write_bytes(b"short")

    with pytest.raises(StreamAborted):
        _collect(streamer, plan)


def test_viewers_only_reach_safe_media(
    temp_config, repository: MediaRepository, sample_media: str
) -> None:
    streamer = RangeStreamer(
        repository,
        FilesystemMediaStore(temp_config.media_root),
        access_policy=RoleAccessPolicy(),
    )
    record = repository.require_media(sample_media)

    with pytest.raises(AccessDenied):
        streamer.prepare(record, requester=Requester(user_id="someone", role="viewer"))

    owner_plan = streamer.prepare(record, requester=Requester(user_id="owner-1", role="viewer"))
    admin_plan = streamer.prepare(record, requester=Requester(user_id="root", role="admin"))

    assert owner_plan.status_code == 200
    assert admin_plan.status_code == 200


@pytest.mark.parametrize("header, expected_views", [("bytes=100-", 0), ("bytes=0-", 1)])
def test_client_disconnect_closes_handle_and_keeps_view_count(
    temp_config,
    repository: MediaRepository,
    sample_media: str,
    sample_payload: bytes,
    header: str,
    expected_views: int,
) -> None:
    handles = []

    class RecordingStore(FilesystemMediaStore):
        def open(self, media, offset=0):
            handle = super().open(media, offset)
            handles.append(handle)
            return handle

    streamer = RangeStreamer(
        repository,
        RecordingStore(temp_config.media_root),
        access_policy=AllowAllPolicy(),
        read_block_bytes=1024,
    )
    plan = streamer.prepare(repository.require_media(sample_media), header)
    start = plan.start

    async def read_one_block_then_disconnect() -> bytes:
        stream = streamer.iter_bytes(plan)
        first = await stream.__anext__()
        await stream.aclose()
        return first

    first = asyncio.run(read_one_block_then_disconnect())

    assert first == sample_payload[start : start + 1024]
    assert plan.content_length > len(first)
    assert len(handles) == 1
    assert handles[0].closed
    assert repository.require_media(sample_media).view_count == expected_views
