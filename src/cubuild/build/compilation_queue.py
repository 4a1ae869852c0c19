"""
Compilation Queue - Parallel kernel compilation with a bounded worker pool.

Compile units are independent, so they run on a ThreadPoolExecutor with one
child compiler process per worker thread. The calling thread submits every
unit, then blocks once until all workers have finished.

Failure policy:
    - After the first failure no further unit is started: pending futures
      are cancelled and workers check a stop flag before dispatching
    - Units already running finish normally (never killed)
    - When several units fail, the error of the lexicographically smallest
      source path is raised, so diagnostics do not depend on timing

Results are always returned sorted by source path, independent of the order
in which the compiler processes finished.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from .compiler import Artifact, CompilerInvoker, CompileUnit
from .progress import CompileCallback, CompilePhase, NullCallback


class JobState(Enum):
    """State of a compilation job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class CompilationJob:
    """Single compilation job."""

    job_id: str
    unit: CompileUnit
    state: JobState = JobState.PENDING
    artifact: Optional[Artifact] = None
    error: Optional[Exception] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    def duration(self) -> Optional[float]:
        """Get job duration in seconds."""
        if self.start_time and self.end_time:
            return self.end_time - self.start_time
        return None

    @property
    def sort_key(self) -> str:
        return str(self.unit.path)


class CompilationQueue:
    """Runs compile units in parallel with fail-fast semantics."""

    def __init__(
        self,
        invoker: CompilerInvoker,
        num_workers: int,
        progress_callback: Optional[CompileCallback] = None,
    ):
        """Initialize compilation queue.

        Args:
            invoker: Compiler invoker executing each unit
            num_workers: Maximum concurrent compiler processes
            progress_callback: Receives per-unit progress (default: discard)
        """
        self.invoker = invoker
        self.num_workers = max(1, num_workers)
        self.progress_callback: CompileCallback = progress_callback or NullCallback()
        self._results: List[CompilationJob] = []
        self._results_lock = threading.Lock()
        self._stop = threading.Event()
        logging.debug(f"CompilationQueue initialized with {self.num_workers} workers")

    def run(self, units: Sequence[CompileUnit]) -> List[Artifact]:
        """Compile all units and wait for them.

        Args:
            units: Stale compile units

        Returns:
            Artifacts sorted by source path

        Raises:
            CubuildError: The failure of the smallest failing source path
        """
        if not units:
            logging.debug("No compile units submitted")
            return []

        self._results = []
        self._stop.clear()
        jobs = [CompilationJob(job_id=f"{i}:{unit.path.name}", unit=unit) for i, unit in enumerate(units)]
        for job in jobs:
            self._notify(job, CompilePhase.QUEUED, "")

        workers = min(self.num_workers, len(jobs))
        logging.info(f"Compiling {len(jobs)} kernel(s) with {workers} worker(s)")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="CompilationWorker") as executor:
            futures = {executor.submit(self._execute_job, job): job for job in jobs}
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                future.result()
                if self._stop.is_set():
                    for pending in futures:
                        if not pending.cancelled() and pending.cancel():
                            self._cancel(futures[pending])

        with self._results_lock:
            finished = sorted(self._results, key=lambda j: j.sort_key)

        failed = [job for job in finished if job.state is JobState.FAILED]
        cancelled = [job for job in finished if job.state is JobState.CANCELLED]
        if failed:
            logging.info(f"Compilation stopped: {len(failed)} failed, {len(cancelled)} not started")
            first = failed[0]
            assert first.error is not None
            raise first.error

        completed = [job for job in finished if job.state is JobState.COMPLETED]
        logging.info(f"All {len(completed)} compile job(s) completed successfully")
        return [job.artifact for job in completed if job.artifact is not None]

    def _execute_job(self, job: CompilationJob) -> None:
        """Execute a single compilation job in a worker thread.

        Args:
            job: Compilation job to execute
        """
        if self._stop.is_set():
            self._cancel(job)
            return

        job.state = JobState.RUNNING
        job.start_time = time.time()
        logging.debug(f"Job {job.job_id} started")
        self._notify(job, CompilePhase.COMPILING, "")

        try:
            job.artifact = self.invoker.compile(job.unit)
            job.state = JobState.COMPLETED
        except Exception as e:
            job.error = e
            job.state = JobState.FAILED
            self._stop.set()
        finally:
            job.end_time = time.time()
            with self._results_lock:
                self._results.append(job)

        duration = job.duration() or 0.0
        if job.state is JobState.COMPLETED:
            logging.debug(f"Job {job.job_id} completed in {duration:.2f}s")
            self._notify(job, CompilePhase.DONE, f"{duration:.1f}s")
        else:
            logging.warning(f"Job {job.job_id} failed after {duration:.2f}s: {job.error}")
            self._notify(job, CompilePhase.FAILED, str(job.error))

    def _cancel(self, job: CompilationJob) -> None:
        job.state = JobState.CANCELLED
        with self._results_lock:
            self._results.append(job)
        logging.debug(f"Job {job.job_id} cancelled before start")
        self._notify(job, CompilePhase.CANCELLED, "")

    def _notify(self, job: CompilationJob, phase: CompilePhase, detail: str) -> None:
        try:
            self.progress_callback.on_progress(job.unit.path, phase, detail)
        except Exception as e:
            logging.error(f"Progress callback error: {e}", exc_info=True)
