"""Persistence helpers for media records backed by SQLite."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional, Sequence, Tuple

from ..config import AppConfig
from ..errors import ClaimConflict, RecordNotFound


MediaState = Literal["pending", "processing", "safe", "flagged", "error"]

MEDIA_STATES: Tuple[str, ...] = ("pending", "processing", "safe", "flagged", "error")
TERMINAL_STATES = frozenset({"safe", "flagged", "error"})
SUCCESS_STATES = frozenset({"safe", "flagged"})

_COLUMNS = (
    "id, owner_id, title, location_ref, content_type, size_bytes, state, "
    "progress_percent, score, view_count, metadata, created_at, processed_at"
)


@dataclass
class MediaRecord:
    id: str
    owner_id: str
    title: str
    location_ref: str
    content_type: str
    size_bytes: int
    state: MediaState = "pending"
    progress_percent: int = 0
    score: Optional[float] = None
    view_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    processed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MediaRecord":
        raw_metadata = row["metadata"]
        metadata: Dict[str, Any] = {}
        if raw_metadata:
            try:
                decoded = json.loads(raw_metadata)
            except json.JSONDecodeError:
                LOGGER.warning("Ignoring malformed metadata for media %s", row["id"])
            else:
                if isinstance(decoded, dict):
                    metadata = decoded
        score = row["score"]
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"] or "",
            location_ref=row["location_ref"],
            content_type=row["content_type"],
            size_bytes=int(row["size_bytes"]),
            state=row["state"],
            progress_percent=int(row["progress_percent"]),
            score=float(score) if score is not None else None,
            view_count=int(row["view_count"]),
            metadata=metadata,
            created_at=row["created_at"],
            processed_at=row["processed_at"],
        )


LOGGER = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MediaRepository:
    """Repository exposing the atomic record updates used by the core."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting query events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(action, fields=filtered, duration_ms=duration_ms)

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] = (),
        *,
        action: str,
    ) -> sqlite3.Cursor:
        params = tuple(parameters)
        with self._track_db_event(
            action,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount >= 0:
                event.setdefault("rowcount", int(cursor.rowcount))
            return cursor

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose work is committed (or rolled back) and closed."""

        connection = sqlite3.connect(self._db_path, timeout=10.0)
        connection.row_factory = sqlite3.Row
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def _fetch(self, connection: sqlite3.Connection, media_id: str) -> Optional[MediaRecord]:
        cursor = self._execute(
            connection,
            f"SELECT {_COLUMNS} FROM media WHERE id = ?",
            (media_id,),
            action="media.lookup",
        )
        row = cursor.fetchone()
        return MediaRecord.from_row(row) if row else None

    # ---------------------------------------------------------------------
    # Creation and lookup
    # ---------------------------------------------------------------------
    def add_media(
        self,
        *,
        owner_id: str,
        location_ref: str,
        content_type: str,
        size_bytes: int,
        title: str = "",
        media_id: Optional[str] = None,
    ) -> str:
        if size_bytes < 0:
            raise ValueError("size_bytes must not be negative")
        identifier = media_id or uuid.uuid4().hex
        LOGGER.debug(
            "Adding media '%s' for owner %s (%s bytes, %s)",
            identifier,
            owner_id,
            size_bytes,
            content_type,
        )
        with self._transaction() as connection:
            self._execute(
                connection,
                "INSERT INTO media(id, owner_id, title, location_ref, content_type, "
                "size_bytes, state, progress_percent, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?)",
                (
                    identifier,
                    str(owner_id),
                    title,
                    location_ref,
                    content_type,
                    int(size_bytes),
                    _utc_now(),
                ),
                action="media.insert",
            )
        return identifier

    def get_media(self, media_id: str) -> Optional[MediaRecord]:
        with self._transaction() as connection:
            return self._fetch(connection, media_id)

    def require_media(self, media_id: str) -> MediaRecord:
        record = self.get_media(media_id)
        if record is None:
            raise RecordNotFound(media_id)
        return record

    def iter_media(
        self,
        *,
        owner_id: Optional[str] = None,
        state: Optional[str] = None,
    ) -> List[MediaRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(str(owner_id))
        if state is not None:
            if state not in MEDIA_STATES:
                raise ValueError(f"Unknown media state '{state}'")
            clauses.append("state = ?")
            params.append(state)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                f"SELECT {_COLUMNS} FROM media{where} ORDER BY created_at DESC, id",
                params,
                action="media.list",
            )
            return [MediaRecord.from_row(row) for row in cursor.fetchall()]

    # ---------------------------------------------------------------------
    # Streaming side
    # ---------------------------------------------------------------------
    def increment_view_count(self, media_id: str) -> int:
        """Atomically bump ``view_count`` and return the new value."""

        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "UPDATE media SET view_count = view_count + 1 WHERE id = ?",
                (media_id,),
                action="media.increment_views",
            )
            if cursor.rowcount == 0:
                raise RecordNotFound(media_id)
            row = self._execute(
                connection,
                "SELECT view_count FROM media WHERE id = ?",
                (media_id,),
                action="media.read_views",
            ).fetchone()
        return int(row["view_count"])

    # ---------------------------------------------------------------------
    # Processing state machine
    # ---------------------------------------------------------------------
    def claim_for_processing(self, media_id: str) -> MediaRecord:
        """Move a ``pending`` record to ``processing``.

        The update is conditional on the current state, so of several
        concurrent claimants exactly one observes ``rowcount == 1``. The others
        receive :class:`ClaimConflict`.
        """

        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "UPDATE media SET state = 'processing', progress_percent = 0, "
                "score = NULL, processed_at = NULL "
                "WHERE id = ? AND state = 'pending'",
                (media_id,),
                action="media.claim",
            )
            record = self._fetch(connection, media_id)
            if record is None:
                raise RecordNotFound(media_id)
            if cursor.rowcount == 0:
                raise ClaimConflict(media_id, record.state)
        LOGGER.debug("Claimed media %s for processing", media_id)
        return record

    def update_progress(self, media_id: str, percent: int) -> bool:
        """Persist ``percent`` while the run is active; never moves backwards."""

        if not 0 <= percent <= 100:
            raise ValueError("percent must be within [0, 100]")
        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "UPDATE media SET progress_percent = ? "
                "WHERE id = ? AND state = 'processing' AND progress_percent <= ?",
                (int(percent), media_id, int(percent)),
                action="media.progress",
            )
            return cursor.rowcount == 1

    def complete_processing(
        self,
        media_id: str,
        *,
        state: str,
        score: float,
        metadata: Optional[Dict[str, Any]] = None,
        processed_at: Optional[str] = None,
    ) -> bool:
        if state not in SUCCESS_STATES:
            raise ValueError(f"'{state}' is not a successful terminal state")
        encoded = json.dumps(metadata or {}, sort_keys=True)
        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "UPDATE media SET state = ?, score = ?, progress_percent = 100, "
                "metadata = ?, processed_at = ? "
                "WHERE id = ? AND state = 'processing'",
                (state, float(score), encoded, processed_at or _utc_now(), media_id),
                action="media.complete",
            )
            return cursor.rowcount == 1

    def fail_processing(self, media_id: str) -> bool:
        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "UPDATE media SET state = 'error', progress_percent = 0, score = NULL "
                "WHERE id = ? AND state IN ('pending', 'processing')",
                (media_id,),
                action="media.fail",
            )
            return cursor.rowcount == 1

    def reset_for_reprocess(self, media_id: str) -> MediaRecord:
        """Re-open a terminal record to ``pending``.

        A record that is already ``pending`` is returned unchanged. A record
        that is ``processing`` raises :class:`ClaimConflict`.
        """

        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "UPDATE media SET state = 'pending', progress_percent = 0, "
                "score = NULL, processed_at = NULL "
                "WHERE id = ? AND state IN ('safe', 'flagged', 'error')",
                (media_id,),
                action="media.reset",
            )
            changed = cursor.rowcount
            record = self._fetch(connection, media_id)
        if record is None:
            raise RecordNotFound(media_id)
        if changed == 0 and record.state == "processing":
            raise ClaimConflict(media_id, record.state)
        return record

    def fail_interrupted_runs(self) -> int:
        """Mark records left in ``processing`` by a previous process as failed.

        Assumes a single server instance per database: every ``processing``
        row is treated as orphaned, including runs another live process owns.
        """

        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "UPDATE media SET state = 'error', progress_percent = 0, score = NULL "
                "WHERE state = 'processing'",
                action="media.recover",
            )
            count = max(cursor.rowcount, 0)
        if count:
            LOGGER.warning("Marked %s interrupted processing run(s) as failed", count)
        return count


__all__ = [
    "MEDIA_STATES",
    "MediaRecord",
    "MediaRepository",
    "MediaState",
    "SUCCESS_STATES",
    "TERMINAL_STATES",
]
