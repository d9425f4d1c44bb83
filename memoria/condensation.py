from __future__ import annotations

import logging
import queue
import threading
import time
from collections import Counter
from dataclasses import dataclass, field

from .config import MemoriaConfig
from .errors import ExternalServiceError, InvalidVector
from .semantic import Embedder, embed_text, get_embedding_client
from .store import CondensedStatus, ConversationId, MemoryStore, conversation_id
from .store.utils import now_ms
from .summarizer import Summarizer, SummarizerClient

logger = logging.getLogger(__name__)

CONDENSE_INDEXED = "indexed"
CONDENSE_SKIPPED = "skipped"
CONDENSE_MISSING = "missing"
CONDENSE_BUSY = "busy"
CONDENSE_CANCELLED = "cancelled"
CONDENSE_FAILED = "failed"


def backoff_delay_s(attempt: int, *, base_s: float, max_s: float) -> float:
    if attempt <= 0:
        return 0.0
    return min(max_s, base_s * (2 ** (attempt - 1)))


def condense_memory(
    store: MemoryStore,
    raw_memory_id: int,
    *,
    summarizer: SummarizerClient,
    embedder: Embedder,
    cancelled: threading.Event | None = None,
) -> str:
    """Summarize, embed and index the condensed row of one model turn.

    Already indexed rows are skipped, so running this twice for the same raw memory
    is safe. Summarizer and embedder failures raise ExternalServiceError and leave
    the row NEW; an embedding of the wrong width raises InvalidVector.
    """
    placeholder = store.get_condensed_for_raw(raw_memory_id)
    if placeholder is None:
        return CONDENSE_MISSING
    if placeholder.status is CondensedStatus.INDEXED:
        return CONDENSE_SKIPPED
    raw = store.get_raw(raw_memory_id)
    if raw is None:
        return CONDENSE_MISSING

    try:
        summary = summarizer.summarize(raw.text)
    except ExternalServiceError:
        raise
    except Exception as exc:
        raise ExternalServiceError(f"summarizer failed: {exc}") from exc
    if not summary or not summary.strip():
        raise ExternalServiceError("summarizer returned an empty summary")
    vector = embed_text(embedder, summary)

    if cancelled is not None and cancelled.is_set():
        return CONDENSE_CANCELLED
    if not store.mark_indexed(placeholder.id, summary, vector):
        return CONDENSE_MISSING
    return CONDENSE_INDEXED


@dataclass
class _Job:
    raw_memory_id: int
    conversation_id: ConversationId | None = None
    running: bool = False
    cancelled: threading.Event = field(default_factory=threading.Event)


class CondensationWorker:
    """Background condensation queue keyed by raw memory id.

    A job map guarantees at most one queued or running job per raw memory. A single
    consumer thread drains the queue; a sweeper thread re-enqueues NEW rows whose
    backoff has expired.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        summarizer: SummarizerClient | None = None,
        embedder: Embedder | None = None,
        config: MemoriaConfig | None = None,
    ) -> None:
        self.store = store
        self.config = config or store.config
        self.summarizer = summarizer or Summarizer(self.config)
        self._embedder = embedder
        self._lock = threading.Lock()
        self._jobs: dict[int, _Job] = {}
        self._retry_timers: dict[int, threading.Timer] = {}
        self._queue: queue.Queue[int] = queue.Queue()
        self._stop = threading.Event()
        self._consumer: threading.Thread | None = None
        self._sweeper: threading.Thread | None = None

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = get_embedding_client(self.config)
        if self._embedder is None:
            raise ExternalServiceError("embedding client unavailable")
        return self._embedder

    def running(self) -> bool:
        return self._consumer is not None and self._consumer.is_alive()

    def in_flight(self) -> set[int]:
        with self._lock:
            return {raw_id for raw_id, job in self._jobs.items() if job.running}

    def pending_count(self) -> int:
        return self.store.pending_count()

    def enqueue(self, raw_memory_id: int) -> bool:
        """Schedule condensation for a model turn; False if it is already queued or running."""
        raw = self.store.get_raw(raw_memory_id)
        if raw is None:
            return False
        with self._lock:
            existing = self._jobs.get(raw_memory_id)
            if existing is not None and (existing.running or not existing.cancelled.is_set()):
                return False
            self._jobs[raw_memory_id] = _Job(
                raw_memory_id=raw_memory_id, conversation_id=raw.conversation_id
            )
            timer = self._retry_timers.pop(raw_memory_id, None)
        if timer:
            timer.cancel()
        self._queue.put(raw_memory_id)
        return True

    def cancel(self, raw_memory_id: int) -> bool:
        with self._lock:
            job = self._jobs.get(raw_memory_id)
            timer = self._retry_timers.pop(raw_memory_id, None)
            if job is not None:
                job.cancelled.set()
        if timer:
            timer.cancel()
        return job is not None

    def cancel_conversation(self, conversation: str) -> int:
        cid = conversation_id(conversation)
        with self._lock:
            jobs = [job for job in self._jobs.values() if job.conversation_id == cid]
            for job in jobs:
                job.cancelled.set()
        return len(jobs)

    def process(self, raw_memory_id: int) -> str:
        """Condense one raw memory in the calling thread, honoring the in-flight map."""
        job = self._claim(raw_memory_id)
        if job is None:
            return CONDENSE_BUSY
        return self._execute(job)

    def run_pending(
        self, *, limit: int | None = None, include_not_due: bool = False
    ) -> dict[str, int]:
        rows = self.store.pending(
            due_before=None if include_not_due else now_ms(),
            max_attempts=self.config.condense_max_attempts,
            limit=limit,
        )
        counts: Counter[str] = Counter()
        for row in rows:
            counts[self.process(row.raw_memory_id)] += 1
        return dict(counts)

    def sweep(self, *, limit: int = 100) -> int:
        rows = self.store.pending(
            due_before=now_ms(),
            max_attempts=self.config.condense_max_attempts,
            limit=limit,
        )
        return sum(1 for row in rows if self.enqueue(row.raw_memory_id))

    def start(self) -> None:
        if self.running():
            return
        self._stop.clear()
        self._consumer = threading.Thread(
            target=self._consume, name="memoria-condense", daemon=True
        )
        self._consumer.start()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="memoria-sweep", daemon=True)
        self._sweeper.start()
        self.sweep()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        with self._lock:
            timers = list(self._retry_timers.values())
            self._retry_timers.clear()
            for job in self._jobs.values():
                job.cancelled.set()
        for timer in timers:
            timer.cancel()
        for thread in (self._consumer, self._sweeper):
            if thread is not None:
                thread.join(timeout)
        self._consumer = None
        self._sweeper = None

    def wait_idle(self, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                busy = bool(self._jobs) or bool(self._retry_timers)
            if not busy and self._queue.empty():
                return True
            time.sleep(0.01)
        return False

    def _claim(self, raw_memory_id: int) -> _Job | None:
        with self._lock:
            job = self._jobs.get(raw_memory_id)
            if job is None:
                job = _Job(raw_memory_id=raw_memory_id)
                self._jobs[raw_memory_id] = job
            if job.running:
                return None
            job.running = True
            return job

    def _release(self, job: _Job, retry_delay_s: float | None = None) -> None:
        timer: threading.Timer | None = None
        with self._lock:
            if self._jobs.get(job.raw_memory_id) is job:
                del self._jobs[job.raw_memory_id]
            if retry_delay_s is not None and not self._stop.is_set():
                timer = threading.Timer(retry_delay_s, self._fire_retry, args=(job.raw_memory_id,))
                timer.daemon = True
                existing = self._retry_timers.pop(job.raw_memory_id, None)
                if existing:
                    existing.cancel()
                self._retry_timers[job.raw_memory_id] = timer
        if timer is not None:
            timer.start()

    def _fire_retry(self, raw_memory_id: int) -> None:
        # Runs on the Timer thread; the entry is dropped only after the job is queued.
        if not self._stop.is_set():
            self.enqueue(raw_memory_id)
        with self._lock:
            if self._retry_timers.get(raw_memory_id) is threading.current_thread():
                del self._retry_timers[raw_memory_id]

    def _execute(self, job: _Job) -> str:
        raw_memory_id = job.raw_memory_id
        retry_delay_s: float | None = None
        try:
            if job.cancelled.is_set():
                return CONDENSE_CANCELLED
            status = condense_memory(
                self.store,
                raw_memory_id,
                summarizer=self.summarizer,
                embedder=self.embedder,
                cancelled=job.cancelled,
            )
            logger.debug("condensation %s", status, extra={"raw_memory_id": raw_memory_id})
            return status
        except InvalidVector as exc:
            logger.error(
                "condensation rejected vector: %s",
                exc,
                extra={"raw_memory_id": raw_memory_id},
            )
            self._record_failure(raw_memory_id, exc, retry=False)
            return CONDENSE_FAILED
        except ExternalServiceError as exc:
            logger.warning(
                "condensation external call failed: %s",
                exc,
                extra={"raw_memory_id": raw_memory_id},
            )
            retry_delay_s = self._record_failure(raw_memory_id, exc, retry=True)
            return CONDENSE_FAILED
        except Exception as exc:
            logger.exception(
                "condensation failed",
                extra={"raw_memory_id": raw_memory_id},
                exc_info=exc,
            )
            retry_delay_s = self._record_failure(raw_memory_id, exc, retry=True)
            return CONDENSE_FAILED
        finally:
            self._release(job, retry_delay_s if self.running() else None)

    def _record_failure(self, raw_memory_id: int, exc: Exception, *, retry: bool) -> float | None:
        """Persist the failure; returns the backoff delay when another attempt is allowed."""
        try:
            placeholder = self.store.get_condensed_for_raw(raw_memory_id)
            if placeholder is None:
                return None
            delay_s = backoff_delay_s(
                placeholder.attempt_count + 1,
                base_s=self.config.condense_backoff_s,
                max_s=self.config.condense_backoff_max_s,
            )
            attempts = self.store.record_condensation_failure(
                placeholder.id,
                error=f"{type(exc).__name__}: {exc}",
                next_attempt_at=now_ms() + int(delay_s * 1000),
                exhausted=not retry,
            )
        except Exception as record_exc:
            logger.exception(
                "condensation failure bookkeeping failed",
                extra={"raw_memory_id": raw_memory_id},
                exc_info=record_exc,
            )
            return None
        if not retry:
            return None
        if attempts >= self.config.condense_max_attempts:
            logger.error(
                "condensation gave up after %d attempts",
                attempts,
                extra={"raw_memory_id": raw_memory_id},
            )
            return None
        return delay_s

    def _consume(self) -> None:
        while not self._stop.is_set():
            try:
                raw_memory_id = self._queue.get(timeout=0.25)
            except queue.Empty:
                continue
            try:
                job = self._claim(raw_memory_id)
                if job is not None:
                    self._execute(job)
            finally:
                self._queue.task_done()

    def _sweep_loop(self) -> None:
        interval_s = max(1.0, self.config.condense_sweep_interval_s)
        while not self._stop.wait(interval_s):
            try:
                self.sweep()
            except Exception as exc:
                logger.exception("condensation sweep failed", exc_info=exc)
