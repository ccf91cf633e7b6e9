"""
Dataflow Execution Engine

This module provides the small in-process dataflow engine the pipeline graph
runs on. Stages are connected through per-sample channels; a task instance
starts only once every input it depends on exists.

Building Blocks:
- Artifact: (sample id, produced files) tuple passed between stages
- Process: a named stage function with a declared CPU unit request
- Engine: thread pool + CPU unit admission budget + task ledger
- Broadcast: a run-scoped, one-shot value (e.g. the reference database
  readiness token) shared by reference with every sample
- Channel: an ordered collection of per-sample futures

Dataflow Semantics:
1. ``Channel.map`` creates one task per sample; each task waits only on its
   own sample's upstream artifact, so samples never block each other.
2. ``Channel.combine(broadcast)`` pairs every sample with the single
   broadcast value. N samples combined with one token yield N invocations.
3. A failed input propagates to its dependants as ``UpstreamError``; the
   dependant function is never invoked.
4. Under the "abort" failure policy the first task failure stops the
   engine from starting further tasks; running tasks finish. Under
   "isolate" the remaining samples continue.

Example Usage:
    >>> with Engine(max_cpus=4) as engine:
    ...     token = engine.once("prepare_db", prepare)
    ...     genes = Channel.from_samples(engine, samples).map(Process("genes", find))
    ...     models = genes.combine(token).map(Process("build", build, cpus=2))
    ...     engine.wait()
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import threading
import time

from .utils import format_elapsed_time

logger = logging.getLogger(__name__)


# ============================================================================
# Exceptions
# ============================================================================

class StageError(RuntimeError):
    """A task raised; carries the stage name and sample id it ran for."""

    def __init__(self, stage: str, sample_id: Optional[str], cause: BaseException):
        self.stage = stage
        self.sample_id = sample_id
        self.cause = cause
        where = f"{stage}[{sample_id}]" if sample_id else stage
        super().__init__(f"{where} failed: {cause}")


class UpstreamError(RuntimeError):
    """A task was skipped because one of its inputs failed."""

    def __init__(self, stage: str, sample_id: Optional[str], cause: BaseException):
        self.stage = stage
        self.sample_id = sample_id
        self.cause = cause
        where = f"{stage}[{sample_id}]" if sample_id else stage
        super().__init__(f"{where} skipped: input failed ({cause})")


class RunAborted(RuntimeError):
    """A task was not started because the run is aborting."""


# ============================================================================
# Data Types
# ============================================================================

@dataclass(frozen=True)
class Artifact:
    """
    Files a stage produced for one sample.

    Artifacts are never modified after creation; each stage emits a new
    artifact tagged with the same sample id.
    """
    sample_id: str
    files: Tuple[Path, ...]
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def path(self) -> Path:
        """The primary (first) file."""
        return self.files[0]

    def file_with_suffix(self, suffix: str) -> Path:
        """Return the first file whose name ends with ``suffix``."""
        for path in self.files:
            if path.name.endswith(suffix):
                return path
        raise KeyError(f"No file ending with '{suffix}' in artifact for {self.sample_id}")


@dataclass(frozen=True)
class Process:
    """A stage: name, callable and declared CPU units per invocation."""
    name: str
    fn: Callable[..., Any]
    cpus: int = 1


@dataclass
class TaskRecord:
    """Ledger entry for one task instance."""
    stage: str
    sample_id: Optional[str]
    cpus: int
    status: str = "pending"
    elapsed: float = 0.0
    error: Optional[str] = None


def cross_join(items: Iterable[Any], singletons: Iterable[Any]) -> List[Tuple[Any, Any]]:
    """
    Full cross product of a per-sample stream with run-scoped values.

    With exactly one singleton the result has one pair per item; the
    singleton never multiplies the number of items.
    """
    singletons = list(singletons)
    return [(item, value) for item in items for value in singletons]


# ============================================================================
# Resource Admission
# ============================================================================

class CpuBudget:
    """
    Counting admission control for declared CPU units.

    A task acquires all of its units atomically before it runs and releases
    them when it finishes. Requests above the total are clamped.
    """

    def __init__(self, total: int):
        if total < 1:
            raise ValueError("CPU budget must be at least 1")
        self.total = total
        self._available = total
        self._condition = threading.Condition()
        self.peak_in_use = 0

    def acquire(self, units: int) -> int:
        """Block until ``units`` are free, take them, and return the amount taken."""
        if units > self.total:
            logger.warning(f"Requested {units} CPU units exceeds budget of {self.total}; clamping")
            units = self.total
        with self._condition:
            self._condition.wait_for(lambda: self._available >= units)
            self._available -= units
            self.peak_in_use = max(self.peak_in_use, self.total - self._available)
        return units

    def release(self, units: int) -> None:
        with self._condition:
            self._available += units
            self._condition.notify_all()

    @contextmanager
    def hold(self, units: int):
        taken = self.acquire(units)
        try:
            yield taken
        finally:
            self.release(taken)


# ============================================================================
# Engine
# ============================================================================

class Broadcast:
    """A run-scoped value produced once and read by every sample."""

    def __init__(self, name: str, future: Future):
        self.name = name
        self.future = future

    def result(self, timeout: Optional[float] = None) -> Any:
        return self.future.result(timeout)

    def failed(self) -> bool:
        return self.future.done() and self.future.exception() is not None

    def __repr__(self) -> str:
        return f"Broadcast({self.name!r}, done={self.future.done()})"


class Engine:
    """
    Executes tasks once their inputs resolve, within a CPU unit budget.

    Parameters
    ----------
    max_cpus : int
        Total CPU units available to concurrently running tasks
    failure_policy : str
        "abort" (stop starting new tasks after the first failure) or
        "isolate" (keep running independent samples)
    """

    def __init__(self, max_cpus: int = 1, failure_policy: str = "abort"):
        if failure_policy not in ("abort", "isolate"):
            raise ValueError(f"Unknown failure policy: {failure_policy}")
        self.failure_policy = failure_policy
        self.budget = CpuBudget(max_cpus)
        self.records: List[TaskRecord] = []
        self.failures: List[StageError] = []
        self._executor = ThreadPoolExecutor(max_workers=max_cpus, thread_name_prefix="genome2gem")
        self._futures: List[Future] = []
        self._lock = threading.Lock()
        self._aborted = threading.Event()

    def __enter__(self) -> 'Engine':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def submit(
        self,
        stage: str,
        fn: Callable[..., Any],
        deps: Sequence[Future] = (),
        cpus: int = 1,
        sample_id: Optional[str] = None,
    ) -> Future:
        """
        Schedule ``fn(*dep_results)`` to run once every future in ``deps`` is done.

        Returns a future for the task's result.
        """
        result: Future = Future()
        record = TaskRecord(stage=stage, sample_id=sample_id, cpus=cpus)
        with self._lock:
            self.records.append(record)
            self._futures.append(result)

        deps = list(deps)
        if not deps:
            self._dispatch(result, record, fn, deps)
            return result

        remaining = [len(deps)]
        counter_lock = threading.Lock()

        def on_input_done(_):
            with counter_lock:
                remaining[0] -= 1
                ready = remaining[0] == 0
            if ready:
                self._dispatch(result, record, fn, deps)

        for dep in deps:
            dep.add_done_callback(on_input_done)

        return result

    def once(self, name: str, fn: Callable[[], Any], cpus: int = 1) -> Broadcast:
        """Run ``fn`` exactly once for the run and wrap its result as a Broadcast."""
        return Broadcast(name, self.submit(name, fn, cpus=cpus))

    def _dispatch(self, result: Future, record: TaskRecord, fn, deps: List[Future]) -> None:
        for dep in deps:
            error = dep.exception()
            if error is not None:
                record.status = "skipped"
                record.error = str(error)
                result.set_exception(UpstreamError(record.stage, record.sample_id, error))
                return

        if self.aborted:
            self._cancel(result, record)
            return

        args = [dep.result() for dep in deps]
        self._executor.submit(self._run, result, record, fn, args)

    def _cancel(self, result: Future, record: TaskRecord) -> None:
        record.status = "cancelled"
        result.set_exception(RunAborted(f"{record.stage}[{record.sample_id}] not started: run aborted"))

    def _run(self, result: Future, record: TaskRecord, fn, args: List[Any]) -> None:
        label = f"{record.stage}[{record.sample_id}]" if record.sample_id else record.stage
        with self.budget.hold(record.cpus):
            if self.aborted:
                self._cancel(result, record)
                return

            record.status = "running"
            logger.info(f"Starting {label} ({record.cpus} CPU)")
            start = time.monotonic()
            try:
                value = fn(*args)
            except Exception as e:
                record.elapsed = time.monotonic() - start
                record.status = "failed"
                record.error = str(e)
                error = StageError(record.stage, record.sample_id, e)
                logger.error(f"✗ {label} failed after {format_elapsed_time(record.elapsed)}: {e}")
                self._record_failure(error)
                result.set_exception(error)
                return

            record.elapsed = time.monotonic() - start
            record.status = "succeeded"

        logger.info(f"✓ {label} finished in {format_elapsed_time(record.elapsed)}")
        result.set_result(value)

    def _record_failure(self, error: StageError) -> None:
        with self._lock:
            self.failures.append(error)
        if self.failure_policy == "abort" and not self._aborted.is_set():
            logger.error("Aborting run: no further tasks will be started")
            self._aborted.set()

    def abort(self) -> None:
        """Stop starting new tasks; running tasks finish."""
        self._aborted.set()

    def wait(self) -> None:
        """Block until every submitted task has completed, failed or been skipped."""
        while True:
            with self._lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                return
            wait(pending)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def records_for(self, stage: str) -> List[TaskRecord]:
        """Ledger entries for one stage."""
        return [r for r in self.records if r.stage == stage]


# ============================================================================
# Channels
# ============================================================================

class Channel:
    """
    Per-sample stream of artifact futures.

    Items keep their sample id alongside the future so that tasks can be
    declared (and recorded) before their inputs exist.
    """

    def __init__(
        self,
        engine: Engine,
        items: List[Tuple[str, Future]],
        joined: Optional[Broadcast] = None,
    ):
        self.engine = engine
        self.items = items
        self.joined = joined

    @classmethod
    def from_samples(cls, engine: Engine, samples) -> 'Channel':
        """Seed a channel with one resolved Artifact per sample."""
        items = []
        for sample in samples:
            future: Future = Future()
            future.set_result(Artifact(sample_id=sample.id, files=(sample.assembly,)))
            items.append((sample.id, future))
        return cls(engine, items)

    @property
    def sample_ids(self) -> List[str]:
        return [sample_id for sample_id, _ in self.items]

    def __len__(self) -> int:
        return len(self.items)

    def combine(self, broadcast: Broadcast) -> 'Channel':
        """Pair every item with the single value of ``broadcast``."""
        if self.joined is not None:
            raise ValueError(f"Channel is already combined with {self.joined.name}")
        return Channel(self.engine, self.items, joined=broadcast)

    def map(self, process: Process) -> 'Channel':
        """
        Run ``process`` once per item.

        The function receives the item's Artifact, followed by the broadcast
        value when the channel was combined. It must return an Artifact with
        the same sample id.
        """
        if self.joined is not None:
            pairs = cross_join(self.items, [self.joined])
        else:
            pairs = [(item, None) for item in self.items]

        out = []
        for (sample_id, future), broadcast in pairs:
            deps = [future]
            if broadcast is not None:
                deps.append(broadcast.future)
            task = self.engine.submit(
                process.name,
                _checked(process, sample_id),
                deps=deps,
                cpus=process.cpus,
                sample_id=sample_id,
            )
            out.append((sample_id, task))
        return Channel(self.engine, out)

    def wait(self) -> None:
        """Block until every item of this channel has resolved."""
        wait([future for _, future in self.items])

    def results(self) -> Dict[str, Artifact]:
        """Artifacts of the items that succeeded, keyed by sample id."""
        return {
            sample_id: future.result()
            for sample_id, future in self.items
            if future.done() and future.exception() is None
        }

    def errors(self) -> Dict[str, BaseException]:
        """Exceptions of the items that did not succeed, keyed by sample id."""
        return {
            sample_id: future.exception()
            for sample_id, future in self.items
            if future.done() and future.exception() is not None
        }


def _checked(process: Process, sample_id: str) -> Callable[..., Artifact]:
    """Wrap a stage function so it cannot emit an artifact for another sample."""
    def run(*args):
        artifact = process.fn(*args)
        if not isinstance(artifact, Artifact):
            raise TypeError(f"{process.name} returned {type(artifact).__name__}, expected Artifact")
        if artifact.sample_id != sample_id:
            raise ValueError(
                f"{process.name} emitted sample id '{artifact.sample_id}' for input '{sample_id}'"
            )
        return artifact
    return run
