"""Background embedding worker.

Decides *when* and *how much* to index; the indexing itself is delegated to
ConversationIndexService.process_unembedded_messages. A ticker thread fires
one cycle immediately on start and then every ``interval_seconds``.
Overlapping cycles are skipped, never queued.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Protocol

from chatmemory.config import WorkerConfig
from chatmemory.errors import ConcurrentProcessingError
from chatmemory.ports import ChunkStoreProtocol

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Ticker(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...


TickerFactory = Callable[[float, Callable[[], None]], Ticker]


class ThreadTicker:
    """Call *callback* now and then every *interval* seconds on a daemon thread."""

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self._interval = interval
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="chatmemory-worker", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop ticking and wait for an in-flight callback to finish."""
        self._stop_event.set()
        thread = self._thread
        # a callback stopping its own ticker cannot join itself
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._callback()
            if self._stop_event.wait(self._interval):
                break


@dataclass
class WorkerStats:
    """Counters of an EmbeddingWorker.

    Attributes:
        is_running: The scheduler is armed (between start() and stop()). It
            stays True while the worker waits for the next tick.
        cycle_in_progress: A cycle is executing right now, whether fired by the
            ticker or by a direct run_worker_cycle() call.
    """

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    contexts_processed: int = 0
    messages_embedded: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None
    is_running: bool = False
    cycle_in_progress: bool = False


class EmbeddingWorker:
    """Periodically index the most active conversation contexts.

    Args:
        service: ConversationIndexService (anything with
            ``process_unembedded_messages(context_id) -> int``).
        store: Chunk store providing ``get_candidate_contexts``.
        config: Worker settings; defaults to WorkerConfig().
        ticker_factory: ``(interval_seconds, callback) -> Ticker``.
        clock: Returns the current UTC time; drives the recency window.
    """

    def __init__(
        self,
        service,
        store: ChunkStoreProtocol,
        config: WorkerConfig | None = None,
        ticker_factory: TickerFactory = ThreadTicker,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._service = service
        self._store = store
        self._config = replace(config) if config is not None else WorkerConfig()
        self._ticker_factory = ticker_factory
        self._clock = clock
        self._ticker: Ticker | None = None
        self._cycle_lock = threading.Lock()
        self._queue_lock = threading.Lock()
        self._processing: set[str] = set()
        self._stats_lock = threading.Lock()
        self._stats = WorkerStats()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self._config.enabled:
            logger.warning("[WORKER] Embedding worker is disabled; not starting")
            return
        if self._ticker is not None:
            logger.warning("[WORKER] Embedding worker already running")
            return

        logger.info(
            f"[WORKER] Starting (every {self._config.interval_seconds}s, "
            f"batch {self._config.batch_size}, threshold {self._config.messages_threshold})"
        )
        self._ticker = self._ticker_factory(self._config.interval_seconds, self.run_worker_cycle)
        with self._stats_lock:
            self._stats.is_running = True
        self._ticker.start()

    def stop(self) -> None:
        if self._ticker is None:
            return
        self._ticker.stop()
        self._ticker = None
        with self._stats_lock:
            self._stats.is_running = False
        logger.info("[WORKER] Stopped")

    def is_running(self) -> bool:
        return self._ticker is not None

    def __enter__(self) -> EmbeddingWorker:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Processing set
    # ------------------------------------------------------------------

    def _claim(self, context_id: str) -> bool:
        with self._queue_lock:
            if context_id in self._processing:
                return False
            self._processing.add(context_id)
            return True

    def _release(self, context_id: str) -> None:
        with self._queue_lock:
            self._processing.discard(context_id)

    def get_processing_queue(self) -> list[str]:
        with self._queue_lock:
            return sorted(self._processing)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def run_worker_cycle(self) -> None:
        """Run one indexing cycle. Never raises."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("[WORKER] Previous cycle still running; skipping")
            return
        with self._stats_lock:
            self._stats.cycle_in_progress = True
        try:
            self._run_cycle()
        finally:
            with self._stats_lock:
                self._stats.cycle_in_progress = False
            self._cycle_lock.release()

    def wait_idle(self) -> None:
        """Block until no cycle is executing. Must not be called from inside a cycle."""
        with self._cycle_lock:
            pass

    def _run_cycle(self) -> None:
        config = self._config
        with self._stats_lock:
            self._stats.total_runs += 1

        attempted = 0
        embedded = 0
        try:
            since = self._clock() - timedelta(hours=config.recency_hours)
            candidates = self._store.get_candidate_contexts(
                config.messages_threshold, config.batch_size * 2, since
            )
            logger.debug(f"[WORKER] {len(candidates)} candidate contexts")

            for context_id in candidates:
                if attempted >= config.batch_size:
                    break
                if not self._claim(context_id):
                    logger.debug(f"[WORKER] {context_id} already being processed; skipping")
                    continue
                attempted += 1
                try:
                    embedded += self._service.process_unembedded_messages(context_id)
                except Exception as exc:  # noqa: BLE001 - isolate one context's failure
                    logger.error(f"[WORKER] Failed to process {context_id}: {exc}")
                finally:
                    self._release(context_id)
        except Exception as exc:  # noqa: BLE001 - a cycle must never crash the ticker
            logger.exception(f"[WORKER] Cycle failed: {exc}")
            with self._stats_lock:
                self._stats.failed_runs += 1
                self._stats.last_error = str(exc)
                self._stats.contexts_processed += attempted
                self._stats.messages_embedded += embedded
                self._stats.last_run_at = self._clock()
            return

        with self._stats_lock:
            self._stats.successful_runs += 1
            self._stats.contexts_processed += attempted
            self._stats.messages_embedded += embedded
            self._stats.last_run_at = self._clock()
        logger.info(
            f"[WORKER] Cycle complete: {attempted} contexts, {embedded} messages embedded"
        )

    def process_context_now(self, context_id: str) -> int:
        """Index *context_id* immediately.

        Returns:
            Number of messages embedded.

        Raises:
            ConcurrentProcessingError: The context is already being processed.
        """
        if not self._claim(context_id):
            logger.warning(f"[WORKER] {context_id} already being processed")
            raise ConcurrentProcessingError(context_id)
        try:
            logger.info(f"[WORKER] Manually processing {context_id}")
            count = self._service.process_unembedded_messages(context_id)
        finally:
            self._release(context_id)
        logger.info(f"[WORKER] Manual processing of {context_id} embedded {count} messages")
        return count

    # ------------------------------------------------------------------
    # Stats / config
    # ------------------------------------------------------------------

    def get_stats(self) -> WorkerStats:
        with self._stats_lock:
            return replace(self._stats)

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = WorkerStats(
                is_running=self._stats.is_running,
                cycle_in_progress=self._stats.cycle_in_progress,
            )
        logger.info("[WORKER] Statistics reset")

    def get_config(self) -> WorkerConfig:
        return replace(self._config)

    def update_config(self, **changes) -> WorkerConfig:
        """Apply *changes*. Toggling ``enabled`` starts or stops the worker.

        A new ``interval_seconds`` takes effect on the next start.
        """
        was_enabled = self._config.enabled
        self._config = WorkerConfig(**{**asdict(self._config), **changes})
        logger.info(f"[WORKER] Config updated: {sorted(changes)}")

        if not was_enabled and self._config.enabled:
            self.start()
        elif was_enabled and not self._config.enabled:
            self.stop()
        return replace(self._config)
