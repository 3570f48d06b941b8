"""Asynchronous processing pipeline driving the media state machine."""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import AnalysisFailure, ClaimConflict, MediaHubError, RecordNotFound
from ..processing.analysis import AnalysisResult, Analyzer, MediaReference
from .events import log_run
from .notifications import EventKind, NotificationBus, ProcessingEvent
from .progress import compute_progress_percent, describe_phase, format_progress_message
from .storage import MediaRecord, MediaRepository


LOGGER = logging.getLogger(__name__)

DEFAULT_TOTAL_STEPS = 10
DEFAULT_STEP_DELAY_SECONDS = 1.0
GENERIC_FAILURE_MESSAGE = "An error occurred during processing"
INTERRUPTED_MESSAGE = "Processing was interrupted before it could finish"


class ProcessingPipeline:
    """Claim pending records, analyse them step by step and announce progress.

    At most one run per media id is active at a time. The in-process task
    registry stops duplicate scheduling, and the repository's conditional
    claim settles races between processes.
    """

    def __init__(
        self,
        repository: MediaRepository,
        bus: NotificationBus,
        analyzer: Analyzer,
        *,
        total_steps: int = DEFAULT_TOTAL_STEPS,
        step_delay_seconds: float = DEFAULT_STEP_DELAY_SECONDS,
        analysis_timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if total_steps <= 0:
            raise ValueError("total_steps must be positive")
        self._repository = repository
        self._bus = bus
        self._analyzer = analyzer
        self._total_steps = int(total_steps)
        self._step_delay = max(0.0, float(step_delay_seconds))
        self._analysis_timeout = analysis_timeout_seconds
        self._sleep = sleep
        self._lock = threading.Lock()
        self._active: Dict[str, asyncio.Task[None]] = {}

    @property
    def total_steps(self) -> int:
        return self._total_steps

    def is_active(self, media_id: str) -> bool:
        with self._lock:
            task = self._active.get(media_id)
            return task is not None and not task.done()

    def active_tasks(self) -> List[asyncio.Task[None]]:
        with self._lock:
            return [task for task in self._active.values() if not task.done()]

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------
    def start(self, media_id: str, owner_id: Optional[str] = None) -> Optional[asyncio.Task[None]]:
        """Schedule a run for *media_id* on the running loop.

        Returns ``None`` when a run is already active for the record.
        """

        loop = asyncio.get_running_loop()
        with self._lock:
            existing = self._active.get(media_id)
            if existing is not None and not existing.done():
                LOGGER.debug("Run already active for media %s; not scheduling another", media_id)
                return None
            task = loop.create_task(
                self._run(media_id, owner_id), name=f"process-media-{media_id}"
            )
            self._active[media_id] = task
        task.add_done_callback(functools.partial(self._forget, media_id))
        return task

    def reprocess(self, media_id: str, owner_id: Optional[str] = None) -> Optional[asyncio.Task[None]]:
        """Re-open *media_id* and make sure exactly one run is active for it.

        Raises :class:`RecordNotFound` for unknown ids. A record that is
        already ``processing`` is left untouched.
        """

        try:
            record = self._repository.reset_for_reprocess(media_id)
        except ClaimConflict as conflict:
            LOGGER.info("Reprocess of media %s ignored: %s", media_id, conflict)
            return None
        log_run(
            "Media queued for reprocessing",
            media_id,
            owner_id=record.owner_id,
            fields={"state": record.state},
        )
        return self.start(media_id, owner_id or record.owner_id)

    def recover_interrupted(self) -> int:
        """Fail records that a previous process left in ``processing``."""

        return self._repository.fail_interrupted_runs()

    async def shutdown(self) -> None:
        """Cancel active runs; each one records itself as failed."""

        tasks = self.active_tasks()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            LOGGER.info("Cancelled %s active processing run(s)", len(tasks))

    def _forget(self, media_id: str, task: asyncio.Task[None]) -> None:
        with self._lock:
            if self._active.get(media_id) is task:
                self._active.pop(media_id, None)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    async def _run(self, media_id: str, owner_id: Optional[str]) -> None:
        started = time.perf_counter()
        try:
            record = self._repository.claim_for_processing(media_id)
        except ClaimConflict as conflict:
            LOGGER.debug("Skipping run: %s", conflict)
            return
        except RecordNotFound as error:
            LOGGER.warning("Cannot process media %s: %s", media_id, error)
            if owner_id is not None:
                self._publish("error", media_id, owner_id, {"message": str(error)})
            return
        except Exception as error:
            LOGGER.exception("Claiming media %s failed", media_id)
            self._fail(media_id, owner_id, error)
            return

        owner = str(owner_id) if owner_id is not None else record.owner_id
        log_run("Processing started", media_id, owner_id=owner, total_steps=self._total_steps)
        try:
            self._publish("start", media_id, owner, {"title": record.title})
            await self._execute(record, owner)
        except asyncio.CancelledError:
            LOGGER.warning("Processing of media %s was cancelled", media_id)
            self._fail(media_id, owner, INTERRUPTED_MESSAGE)
            raise
        except Exception as error:
            LOGGER.exception("Processing of media %s failed", media_id)
            self._fail(media_id, owner, error)
        else:
            log_run(
                "Processing finished",
                media_id,
                owner_id=owner,
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )

    async def _execute(self, record: MediaRecord, owner_id: str) -> None:
        total = self._total_steps
        loop = asyncio.get_running_loop()
        reference = MediaReference(
            media_id=record.id,
            location_ref=record.location_ref,
            content_type=record.content_type,
            size_bytes=record.size_bytes,
        )
        for step in range(1, total + 1):
            await self._sleep(self._step_delay)
            message = describe_phase(step)
            log_run(
                format_progress_message(message, step, total),
                record.id,
                owner_id=owner_id,
                step=step,
                total_steps=total,
                level=logging.DEBUG,
            )
            if step < total:
                # 100 is reserved for the terminal write.
                percent = min(compute_progress_percent(step, total), 99)
                updated = await loop.run_in_executor(
                    None, self._repository.update_progress, record.id, percent
                )
                if not updated:
                    raise ClaimConflict(record.id, "no longer processing")
                self._publish_progress(record.id, owner_id, percent, message, step)
                continue

            result = await self._analyze(reference)
            # Terminal write stays on the loop: a cancelled run must not complete after _fail.
            processed_at = datetime.now(timezone.utc).isoformat()
            if not self._repository.complete_processing(
                record.id,
                state=result.classification,
                score=result.score,
                metadata=result.metadata,
                processed_at=processed_at,
            ):
                raise ClaimConflict(record.id, "no longer processing")
            self._publish_progress(record.id, owner_id, 100, message, step)
            self._publish(
                "complete",
                record.id,
                owner_id,
                {
                    "finalState": result.classification,
                    "score": result.score,
                    "title": record.title,
                },
            )

    async def _analyze(self, reference: MediaReference) -> AnalysisResult:
        loop = asyncio.get_running_loop()
        pending = loop.run_in_executor(None, self._analyzer.analyze, reference)
        try:
            if self._analysis_timeout:
                result = await asyncio.wait_for(pending, self._analysis_timeout)
            else:
                result = await pending
        except asyncio.TimeoutError as error:
            raise AnalysisFailure(
                f"Analyzer timed out after {self._analysis_timeout:g}s"
            ) from error
        except AnalysisFailure:
            raise
        except Exception as error:
            raise AnalysisFailure(f"Analyzer failed: {error}") from error
        if not isinstance(result, AnalysisResult):
            raise AnalysisFailure(f"Analyzer returned {type(result).__name__}, not a result")
        return result.validate()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def _fail(self, media_id: str, owner_id: Optional[str], error: BaseException | str) -> None:
        if isinstance(error, str):
            message = error
        elif isinstance(error, MediaHubError):
            message = str(error) or GENERIC_FAILURE_MESSAGE
        else:
            message = GENERIC_FAILURE_MESSAGE
        try:
            self._repository.fail_processing(media_id)
        except Exception:
            LOGGER.exception("Could not persist error state for media %s", media_id)
        log_run(
            "Processing failed",
            media_id,
            owner_id=owner_id,
            fields={"error": message},
            level=logging.WARNING,
        )
        if owner_id is not None:
            self._publish("error", media_id, str(owner_id), {"message": message})

    def _publish_progress(
        self, media_id: str, owner_id: str, percent: int, message: str, step: int
    ) -> None:
        self._publish(
            "progress",
            media_id,
            owner_id,
            {
                "progressPercent": percent,
                "phaseMessage": message,
                "step": step,
                "totalSteps": self._total_steps,
            },
        )

    def _publish(
        self, kind: EventKind, media_id: str, owner_id: str, payload: Dict[str, Any]
    ) -> None:
        self._bus.publish(
            owner_id,
            ProcessingEvent(kind=kind, media_id=media_id, owner_id=owner_id, payload=payload),
        )


__all__ = ["ProcessingPipeline"]
