from __future__ import annotations

import errno
import logging
import os
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.repositories.common import Clock, utc_now
from backend.app.repositories.task_run_repository import TaskRunRepository
from backend.app.services.sync_jobs import JobName, SyncJobRunner
from backend.app.telemetry import TelemetryClient, elapsed_ms

LOGGER = logging.getLogger("tubesync.scheduler")

HOUR_SECONDS = 60 * 60
DAY_SECONDS = 24 * HOUR_SECONDS

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


@dataclass(frozen=True)
class ScheduledTask:
    name: JobName
    interval_seconds: int


DEFAULT_TASKS: tuple[ScheduledTask, ...] = (
    ScheduledTask("cleanup", HOUR_SECONDS),
    ScheduledTask("resume_paused_syncs", HOUR_SECONDS),
    ScheduledTask("refresh_high", 2 * HOUR_SECONDS),
    ScheduledTask("refresh_medium", 6 * HOUR_SECONDS),
    ScheduledTask("refresh_low", DAY_SECONDS),
    ScheduledTask("retry_dead_channels", DAY_SECONDS),
    ScheduledTask("refresh_playlists", 7 * DAY_SECONDS),
    ScheduledTask("activity_levels", 7 * DAY_SECONDS),
)


class ProcessLock:
    """Non-blocking `flock` on a file; keeps one scheduler per data directory.

    Several API worker processes may share a data directory. Only the first one
    to take the lock runs periodic jobs; the others leave the scheduler off.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._handle: IO[str] | None = None

    def acquire(self) -> bool:
        if self._handle is not None:
            return True
        if fcntl is None:
            LOGGER.warning("scheduler process lock unsupported on this platform; not locking")
            return True

        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = self._path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info("scheduler lock held by another process path=%s", self._path)
                return False
            raise

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            if fcntl is not None:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("scheduler lock release failed path=%s", self._path, exc_info=True)
        finally:
            handle.close()


class SchedulerService:
    """Background thread that runs each periodic job once its interval elapses.

    Last start times live in `scheduled_task_runs`, so a restart does not rerun
    jobs that ran recently.
    """

    def __init__(
        self,
        jobs: SyncJobRunner,
        task_runs: TaskRunRepository,
        poll_interval_seconds: int,
        *,
        tasks: Sequence[ScheduledTask] = DEFAULT_TASKS,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._jobs = jobs
        self._task_runs = task_runs
        self._poll_interval_seconds = max(1, poll_interval_seconds)
        self._tasks = tuple(tasks)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._process_lock = ProcessLock(lock_path) if lock_path is not None else None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        if self._process_lock is not None and not self._acquire_process_lock():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="tubesync-scheduler", daemon=True
        )
        self._thread.start()
        LOGGER.info(
            "scheduler started tasks=%s poll_interval_seconds=%s",
            len(self._tasks),
            self._poll_interval_seconds,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        if self._process_lock is not None:
            self._process_lock.release()

    def due_tasks(self) -> list[ScheduledTask]:
        now = self._clock()
        due: list[ScheduledTask] = []
        for task in self._tasks:
            last = self._task_runs.get(task.name)
            last_started = last.last_started_at if last is not None else None
            if last_started is None:
                due.append(task)
            elif (now - last_started).total_seconds() >= task.interval_seconds:
                due.append(task)
        return due

    def run_due_tasks(self) -> int:
        """Run every task whose interval has elapsed; returns how many ran."""
        due = self.due_tasks()
        for task in due:
            if self._stop_event.is_set():
                break
            self.run_task(task.name)
        return len(due)

    def run_task(self, name: JobName) -> dict[str, Any] | None:
        tick_id = uuid4().hex
        telemetry = self._telemetry.bind(task=name, tick_id=tick_id)
        tokens = bind_contextvars(scheduler_task=name, scheduler_tick_id=tick_id)
        started_at = time.perf_counter()
        self._task_runs.mark_started(name, self._clock())
        telemetry.emit("scheduler.task.start")
        try:
            result = self._jobs.run(name).to_dict()
        except Exception as exc:
            # One failing job must not stop the others; the failure is recorded below.
            LOGGER.warning("scheduler task failed task=%s", name, exc_info=True)
            self._task_runs.mark_finished(
                name,
                finished_at=self._clock(),
                status="error",
                result={"error_type": type(exc).__name__, "error": str(exc)},
            )
            telemetry.emit(
                "scheduler.task.error",
                duration_ms=elapsed_ms(started_at),
                error_type=type(exc).__name__,
            )
            return None
        finally:
            reset_contextvars(**tokens)

        self._task_runs.mark_finished(name, finished_at=self._clock(), status="ok", result=result)
        telemetry.emit(
            "scheduler.task.finish",
            duration_ms=elapsed_ms(started_at),
            outcome="ok" if result.get("success", True) else "failed",
        )
        return result

    def _acquire_process_lock(self) -> bool:
        assert self._process_lock is not None
        try:
            return self._process_lock.acquire()
        except OSError:
            LOGGER.warning("scheduler lock acquisition failed; starting anyway", exc_info=True)
            return True

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_due_tasks()
            except Exception:
                # Per-task failures are handled in run_task; this guards the bookkeeping reads.
                LOGGER.exception("scheduler poll failed")
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(0.0, self._poll_interval_seconds - elapsed))
