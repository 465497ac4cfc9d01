import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Type

import psutil

from .exceptions import JobConfigError, QueueError, BuildFailedError
from .logger_setup import logger
from .settings import RunnerSettings

DEFAULT_MAX_RETRIES = 3
FOLLOW_UP_DELAY_SECONDS = 1.0
STATUS_HISTORY_SIZE = 10
MIN_POOL_WORKERS = 4
CPU_SAMPLE_SECONDS = 1.0


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class EntryStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class QueueEntry:
    id: str
    job_id: str
    name: str
    priority: Priority = Priority.MEDIUM
    status: EntryStatus = EntryStatus.QUEUED
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    queued_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    execution_time: Optional[float] = None  # seconds
    result: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    _started_monotonic: float = field(default=0.0, repr=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "name": self.name,
            "priority": self.priority.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "queued_at": self.queued_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "execution_time": self.execution_time,
            "result": self.result,
            "error": self.error,
            "metadata": self.metadata,
        }


def sample_system_load() -> float:
    """Higher of CPU usage over a one second window and used memory, in percent."""
    try:
        cpu = psutil.cpu_percent(interval=CPU_SAMPLE_SECONDS)
        memory = psutil.virtual_memory().percent
    except (psutil.Error, OSError) as e:
        logger.warning(f"[QUEUE] Could not sample system load, admitting anyway: {e}")
        return 0.0
    return max(cpu, memory)


class WorkQueue:
    """Priority queue with admission control.

    Entries are admitted on a fixed tick when the host load is below
    ``resource_threshold`` and fewer than ``max_concurrent_jobs`` are running.
    Admitted entries run on a thread pool through ``executor(entry)``.
    """

    def __init__(self, executor: Callable[[QueueEntry], Any], max_concurrent_jobs: int = 2,
                 resource_threshold: float = 80.0, tick_seconds: float = 5.0,
                 load_sampler: Optional[Callable[[], float]] = None,
                 settings: Optional[RunnerSettings] = None,
                 non_retryable: Tuple[Type[BaseException], ...] = (JobConfigError,),
                 default_max_retries: int = DEFAULT_MAX_RETRIES):
        self.executor = executor
        self.max_concurrent_jobs = max_concurrent_jobs
        self.resource_threshold = resource_threshold
        self.tick_seconds = tick_seconds
        self.load_sampler = load_sampler or sample_system_load
        self.settings = settings
        self.non_retryable = non_retryable
        self.default_max_retries = default_max_retries

        self._lock = threading.RLock()
        self._queue: List[QueueEntry] = []
        self._running: Dict[str, QueueEntry] = {}
        self._completed: Deque[QueueEntry] = deque(maxlen=STATUS_HISTORY_SIZE)
        self._failed: Deque[QueueEntry] = deque(maxlen=STATUS_HISTORY_SIZE)
        self._stats = {
            "total_queued": 0,
            "total_completed": 0,
            "total_failed": 0,
            "average_execution_time": 0.0,
        }
        self._paused = False
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None
        self._pool_size = max(max_concurrent_jobs, MIN_POOL_WORKERS)
        self._pool = ThreadPoolExecutor(max_workers=self._pool_size, thread_name_prefix="forgewatch-build")

    @classmethod
    def from_settings(cls, executor: Callable[[QueueEntry], Any], settings: RunnerSettings, **kwargs) -> 'WorkQueue':
        return cls(executor, max_concurrent_jobs=settings.max_concurrent_jobs,
                   resource_threshold=settings.resource_threshold, tick_seconds=settings.queue_tick_seconds,
                   settings=settings, default_max_retries=settings.default_max_retries, **kwargs)

    # --- producers -----------------------------------------------------

    def add_job(self, job_id: str, name: Optional[str] = None, priority: str = Priority.MEDIUM.value,
                max_retries: Optional[int] = None, metadata: Optional[Dict[str, Any]] = None,
                entry_id: Optional[str] = None) -> str:
        try:
            priority = Priority(str(getattr(priority, "value", priority) or "medium").lower())
        except ValueError:
            raise QueueError(f"Unknown priority '{priority}', expected high, medium or low")
        entry = QueueEntry(
            id=entry_id or f"q-{uuid.uuid4().hex[:12]}",
            job_id=job_id,
            name=name or job_id,
            priority=priority,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            queued_at=_now(),
            metadata=dict(metadata or {}),
        )
        with self._lock:
            if entry.id in self._running or any(e.id == entry.id for e in self._queue):
                raise QueueError(f"Queue entry {entry.id} already exists")
            self._insert_by_priority(entry)
            self._stats["total_queued"] += 1
        logger.info(f"[QUEUE] Entry {entry.id} for job '{entry.name}' queued (priority: {entry.priority.value})")
        return entry.id

    def _insert_by_priority(self, entry: QueueEntry):
        # after every entry of equal or higher priority
        index = len(self._queue)
        for i, queued in enumerate(self._queue):
            if entry.priority.rank > queued.priority.rank:
                index = i
                break
        self._queue.insert(index, entry)

    def has_pending(self, job_id: str) -> bool:
        with self._lock:
            return any(e.job_id == job_id for e in self._queue) or \
                any(e.job_id == job_id for e in self._running.values())

    # --- admission -----------------------------------------------------

    def process_queue(self) -> Optional[Future]:
        """One admission tick. Returns the future of the admitted entry, if any."""
        with self._lock:
            if self._paused or not self._queue:
                return None

        load = self.load_sampler()
        if load > self.resource_threshold:
            logger.warning(f"[QUEUE] System load high ({load:.1f}% > {self.resource_threshold}%), holding queue")
            return None

        with self._lock:
            if self._paused or not self._queue:
                return None
            if len(self._running) >= self.max_concurrent_jobs:
                logger.debug(f"[QUEUE] {len(self._running)} entries running, limit reached")
                return None
            entry = self._queue.pop(0)
            entry.status = EntryStatus.RUNNING
            entry.started_at = _now()
            entry._started_monotonic = time.monotonic()
            self._running[entry.id] = entry
            future = self._pool.submit(self._execute, entry)
        logger.info(f"[QUEUE] Starting entry {entry.id} for job '{entry.name}'")
        return future

    def _execute(self, entry: QueueEntry):
        try:
            result = self.executor(entry)
        except self.non_retryable as e:
            logger.error(f"[QUEUE] Entry {entry.id} failed with a configuration error, not retrying: {e}")
            self._finish_failed(entry, e, retry=False)
        except BuildFailedError as e:
            logger.error(f"[QUEUE] Entry {entry.id} failed: {e}")
            self._finish_failed(entry, e, retry=True)
        except Exception as e:
            logger.error(f"[QUEUE] Entry {entry.id} raised an unexpected error: {e}", exc_info=True)
            self._finish_failed(entry, e, retry=True)
        else:
            self._finish_completed(entry, result)
        finally:
            self._schedule_follow_up()

    def _finish_completed(self, entry: QueueEntry, result: Any):
        with self._lock:
            self._running.pop(entry.id, None)
            entry.execution_time = round(time.monotonic() - entry._started_monotonic, 3)
            if entry.status == EntryStatus.CANCELLED:
                logger.info(f"[QUEUE] Cancelled entry {entry.id} finished after {entry.execution_time}s")
                return
            entry.status = EntryStatus.COMPLETED
            entry.completed_at = _now()
            entry.result = result
            self._completed.append(entry)
            count = self._stats["total_completed"] + 1
            average = self._stats["average_execution_time"]
            self._stats["total_completed"] = count
            self._stats["average_execution_time"] = round(average + (entry.execution_time - average) / count, 3)
        logger.info(f"[QUEUE] Entry {entry.id} completed ({entry.execution_time}s)")

    def _finish_failed(self, entry: QueueEntry, error: BaseException, retry: bool):
        with self._lock:
            self._running.pop(entry.id, None)
            entry.execution_time = round(time.monotonic() - entry._started_monotonic, 3)
            entry.error = str(error)
            entry.failed_at = _now()
            if entry.status == EntryStatus.CANCELLED:
                return
            entry.retry_count += 1
            if retry and entry.retry_count < entry.max_retries:
                entry.status = EntryStatus.QUEUED
                self._insert_by_priority(entry)
                logger.warning(f"[QUEUE] Entry {entry.id} will be retried ({entry.retry_count}/{entry.max_retries})")
                return
            entry.status = EntryStatus.FAILED
            self._failed.append(entry)
            self._stats["total_failed"] += 1
        logger.error(f"[QUEUE] Entry {entry.id} failed permanently: {error}")

    def _schedule_follow_up(self):
        timer = threading.Timer(FOLLOW_UP_DELAY_SECONDS, self._wake.set)
        timer.daemon = True
        timer.start()

    # --- loop ----------------------------------------------------------

    def start(self):
        if self._loop_thread and self._loop_thread.is_alive():
            return
        self._stop_event.clear()
        self._loop_thread = threading.Thread(target=self._run_loop, name="forgewatch-queue", daemon=True)
        self._loop_thread.start()
        logger.info(f"[QUEUE] Processing started (tick {self.tick_seconds}s, "
                    f"max {self.max_concurrent_jobs} concurrent, threshold {self.resource_threshold}%)")

    def _run_loop(self):
        while not self._stop_event.is_set():
            try:
                self.process_queue()
            except Exception as e:
                logger.error(f"[QUEUE] Admission tick failed: {e}", exc_info=True)
            self._wake.wait(self.tick_seconds)
            self._wake.clear()

    def stop(self, wait: bool = False):
        self._stop_event.set()
        self._wake.set()
        if self._loop_thread:
            self._loop_thread.join(timeout=self.tick_seconds + CPU_SAMPLE_SECONDS + 1)
            self._loop_thread = None
        self._pool.shutdown(wait=wait)
        logger.info("[QUEUE] Processing stopped")

    @property
    def is_running(self) -> bool:
        return bool(self._loop_thread and self._loop_thread.is_alive())

    def pause(self):
        with self._lock:
            self._paused = True
        logger.info("[QUEUE] Paused")

    def resume(self):
        with self._lock:
            self._paused = False
        self._wake.set()
        logger.info("[QUEUE] Resumed")

    # --- inspection & control -----------------------------------------

    def cancel(self, entry_id: str) -> bool:
        with self._lock:
            for i, entry in enumerate(self._queue):
                if entry.id == entry_id:
                    del self._queue[i]
                    entry.status = EntryStatus.CANCELLED
                    logger.info(f"[QUEUE] Entry {entry_id} removed from queue")
                    return True
            entry = self._running.get(entry_id)
            if entry:
                # the build keeps running; only the recorded status changes
                entry.status = EntryStatus.CANCELLED
                logger.warning(f"[QUEUE] Entry {entry_id} marked cancelled while running")
                return True
        return False

    def update_config(self, max_concurrent_jobs: Optional[int] = None, resource_threshold: Optional[float] = None):
        changes: Dict[str, Any] = {}
        if max_concurrent_jobs is not None:
            if int(max_concurrent_jobs) < 1:
                raise QueueError("max_concurrent_jobs must be at least 1")
            changes["max_concurrent_jobs"] = int(max_concurrent_jobs)
        if resource_threshold is not None:
            if not 0 < float(resource_threshold) <= 100:
                raise QueueError("resource_threshold must be between 0 and 100")
            changes["resource_threshold"] = float(resource_threshold)
        with self._lock:
            for key, value in changes.items():
                setattr(self, key, value)
            if self.max_concurrent_jobs > self._pool_size:
                self._resize_pool(self.max_concurrent_jobs)
        if changes and self.settings:
            self.settings.save_runtime_overrides(**changes)
        logger.info(f"[QUEUE] Configuration updated: {changes}")
        self._wake.set()
        return self.get_stats()

    def _resize_pool(self, size: int):
        # running builds finish on the old pool; new admissions go to the new one
        old_pool = self._pool
        self._pool = ThreadPoolExecutor(max_workers=size, thread_name_prefix="forgewatch-build")
        self._pool_size = size
        old_pool.shutdown(wait=False)
        logger.info(f"[QUEUE] Build pool resized to {size} workers")

    def get_status(self) -> dict:
        with self._lock:
            return {
                "queue": [e.to_dict() for e in self._queue],
                "running": [e.to_dict() for e in self._running.values()],
                "completed": [e.to_dict() for e in self._completed],
                "failed": [e.to_dict() for e in self._failed],
                "paused": self._paused,
            }

    def get_stats(self) -> dict:
        with self._lock:
            stats = dict(self._stats)
            stats.update({
                "queue_length": len(self._queue),
                "running_jobs": len(self._running),
                "max_concurrent_jobs": self.max_concurrent_jobs,
                "resource_threshold": self.resource_threshold,
                "paused": self._paused,
            })
            return stats
