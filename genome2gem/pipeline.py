"""
Pipeline Driver

Wires the stages into a dataflow graph for the selected strategy, runs it on
the engine and tracks the run through a small state machine.

Topologies:
    carveme:  samples -> find_genes -> (x reference token) build_carveme_model
              [-> (x universal database) annotate_model] -> score_quality
    gapseq:   samples -> build_gapseq_model -> score_quality

The reference database preparer runs once per carveme run and its readiness
token is broadcast to every sample. The universal database is fetched once,
only when annotation is enabled. Quality scoring consumes whichever channel is
bound to "models": the annotated models when annotation is wired, otherwise
the builder's output.

States:
    IDLE -> DISCOVERING_SAMPLES -> RUNNING_STRATEGY_A | RUNNING_STRATEGY_B
         -> SCORING_QUALITY -> DONE
    Any state may end in FAILED.
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
import logging
import time

from .config import (
    PipelineConfig,
    ConfigurationError,
    CARVEME,
    GAPSEQ,
    RECOGNIZED_METHODS,
    validate_config,
)
from .dataflow import Artifact, Broadcast, Channel, Engine, Process, StageError, TaskRecord
from .reports import write_run_summary
from .samples import Sample, discover_samples
from .stages import (
    StageContext,
    download_file,
    prepare_reference_db,
    fetch_universal_db,
    find_genes,
    build_carveme_model,
    build_gapseq_model,
    annotate_model,
    score_quality,
    clean_work_dir,
)
from .tools import CommandRunner, run_command, required_tools
from .utils import check_external_tool, format_elapsed_time

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    IDLE = "idle"
    DISCOVERING_SAMPLES = "discovering_samples"
    RUNNING_STRATEGY_A = "running_strategy_a"
    RUNNING_STRATEGY_B = "running_strategy_b"
    SCORING_QUALITY = "scoring_quality"
    FAILED = "failed"
    DONE = "done"


class PipelineError(RuntimeError):
    """The run ended in FAILED because one or more tasks failed."""

    def __init__(self, message: str, result: Optional['PipelineResult'] = None):
        self.result = result
        super().__init__(message)


# Stage names as they appear in logs and the task ledger
PREPARE_REFERENCE_DB = "prepare_reference_db"
FETCH_UNIVERSAL_DB = "fetch_universal_db"
FIND_GENES = "find_genes"
BUILD_CARVEME_MODEL = "build_carveme_model"
BUILD_GAPSEQ_MODEL = "build_gapseq_model"
ANNOTATE_MODEL = "annotate_model"
SCORE_QUALITY = "score_quality"

STRATEGY_STATES = {
    CARVEME: PipelineState.RUNNING_STRATEGY_A,
    GAPSEQ: PipelineState.RUNNING_STRATEGY_B,
}


@dataclass(frozen=True)
class Topology:
    """Shape of the graph for one configuration."""
    method: str
    stages: Tuple[str, ...]
    optional: Tuple[str, ...] = ()

    def has(self, stage: str) -> bool:
        return stage in self.stages


def build_topology(config: PipelineConfig) -> Topology:
    """
    Stage names the driver wires for ``config``, in dataflow order.

    Raises
    ------
    ConfigurationError
        If ``config.method`` is not a recognized strategy
    """
    if config.method == CARVEME:
        optional: Tuple[str, ...] = ()
        if config.annotate:
            optional = (FETCH_UNIVERSAL_DB, ANNOTATE_MODEL)
        stages = (PREPARE_REFERENCE_DB, FIND_GENES, BUILD_CARVEME_MODEL) + optional + (SCORE_QUALITY,)
        return Topology(CARVEME, stages, optional)

    if config.method == GAPSEQ:
        if config.annotate:
            logger.warning("Annotation is only available for the carveme strategy; skipping it")
        return Topology(GAPSEQ, (BUILD_GAPSEQ_MODEL, SCORE_QUALITY))

    raise ConfigurationError(
        f"Unrecognized method '{config.method}'. "
        f"Expected one of: {', '.join(RECOGNIZED_METHODS)}"
    )


@dataclass
class PipelineResult:
    """Outcome of one run."""
    state: PipelineState
    topology: Topology
    samples: List[Sample] = field(default_factory=list)
    models: Dict[str, Artifact] = field(default_factory=dict)
    reports: Dict[str, Artifact] = field(default_factory=dict)
    failures: List[StageError] = field(default_factory=list)
    records: List[TaskRecord] = field(default_factory=list)
    elapsed: float = 0.0
    summary_files: Dict[str, Path] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.DONE and not self.failures


class Pipeline:
    """
    One run of the reconstruction workflow.

    Parameters
    ----------
    config : PipelineConfig
        Run configuration
    runner : CommandRunner, optional
        Executes external commands (default: ``tools.run_command``)
    downloader : callable, optional
        Fetches the universal database (default: ``stages.download_file``)
    write_summary : bool, optional
        Write the TSV/HTML run summary into the data directory (default: True)
    """

    def __init__(
        self,
        config: PipelineConfig,
        runner: CommandRunner = run_command,
        downloader: Callable[[str, Path], Path] = download_file,
        write_summary: bool = True,
    ):
        self.config = config
        self.context = StageContext(config, runner=runner, downloader=downloader)
        self.write_summary = write_summary
        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]

    def _transition(self, state: PipelineState) -> None:
        logger.debug(f"State: {self.state.name} -> {state.name}")
        self.state = state
        self.history.append(state)

    def run(self) -> PipelineResult:
        """
        Execute the run.

        Returns
        -------
        PipelineResult
            Published artifacts and the task ledger. Under the "isolate" policy
            ``failures`` lists the samples that did not complete.

        Raises
        ------
        ConfigurationError
            If the strategy is unrecognized (no task is submitted)
        FileNotFoundError, SampleError
            If sample discovery fails
        PipelineError
            If a task fails under the "abort" policy, or a run-scoped stage
            fails under either policy
        """
        config = self.config
        start = time.monotonic()

        self._transition(PipelineState.DISCOVERING_SAMPLES)
        try:
            topology = build_topology(config)
        except ConfigurationError as e:
            logger.error(f"✗ {e}")
            self._transition(PipelineState.FAILED)
            raise

        for warning in validate_config(config):
            logger.warning(f"⚠ {warning}")

        logger.info("=" * 80)
        logger.info(f"genome2gem - {topology.method} strategy")
        logger.info("=" * 80)
        logger.info(f"Data directory: {config.data_dir}")
        logger.info(f"Stages: {' -> '.join(topology.stages)}")
        logger.info("")

        # ====================================================================
        # PHASE 1: Sample Discovery
        # ====================================================================
        logger.info("PHASE 1: Sample Discovery")
        logger.info("-" * 80)

        try:
            samples = discover_samples(config.data_dir)
        except Exception as e:
            logger.error(f"✗ Sample discovery failed: {e}")
            self._transition(PipelineState.FAILED)
            raise

        logger.info(f"  ✓ Found {len(samples)} samples: {', '.join(s.id for s in samples)}")
        self._preflight()
        logger.info("")

        result = PipelineResult(state=self.state, topology=topology, samples=samples)

        with Engine(max_cpus=config.max_cpus, failure_policy=config.failure_policy) as engine:
            try:
                models, reports = self._execute(engine, topology, samples)
            except KeyboardInterrupt:
                logger.error("✗ Interrupted; waiting for running tasks to finish")
                engine.abort()
                self._transition(PipelineState.FAILED)
                raise

        result.models = models.results()
        result.reports = reports.results()
        result.failures = list(engine.failures)
        result.records = list(engine.records)
        result.elapsed = time.monotonic() - start

        fatal = self._fatal_failures(result)
        self._transition(PipelineState.FAILED if fatal else PipelineState.DONE)
        result.state = self.state

        self._finish(result)

        if fatal:
            lines = "\n".join(f"  - {f}" for f in fatal)
            raise PipelineError(f"{len(fatal)} task(s) failed:\n{lines}", result)

        return result

    def _preflight(self) -> None:
        missing = [tool for tool in required_tools(self.config) if not check_external_tool(tool)]
        if missing:
            logger.warning(f"  ⚠ Missing tools: {', '.join(missing)}; the stages using them will fail")

    def _execute(
        self,
        engine: Engine,
        topology: Topology,
        samples: List[Sample],
    ) -> Tuple[Channel, Channel]:
        """Wire the graph, then wait for models and quality reports in turn."""
        ctx = self.context
        resources = self.config.resources
        assemblies = Channel.from_samples(engine, samples)

        # ====================================================================
        # PHASE 2: Model Reconstruction
        # ====================================================================
        self._transition(STRATEGY_STATES[topology.method])
        logger.info(f"PHASE 2: Model Reconstruction ({topology.method})")
        logger.info("-" * 80)

        if topology.method == CARVEME:
            token = engine.once(PREPARE_REFERENCE_DB, partial(prepare_reference_db, ctx))
            genes = assemblies.map(Process(FIND_GENES, partial(find_genes, ctx), resources.gene_finder))
            models = genes.combine(token).map(
                Process(BUILD_CARVEME_MODEL, partial(build_carveme_model, ctx), resources.carveme)
            )
            if topology.has(ANNOTATE_MODEL):
                universal: Broadcast = engine.once(FETCH_UNIVERSAL_DB, partial(fetch_universal_db, ctx))
                models = models.combine(universal).map(
                    Process(ANNOTATE_MODEL, partial(annotate_model, ctx), resources.annotation)
                )
        else:
            models = assemblies.map(
                Process(BUILD_GAPSEQ_MODEL, partial(build_gapseq_model, ctx), resources.gapseq)
            )

        reports = models.map(Process(SCORE_QUALITY, partial(score_quality, ctx), resources.quality))

        models.wait()
        logger.info(f"  ✓ {len(models.results())}/{len(models)} models built")
        logger.info("")

        # ====================================================================
        # PHASE 3: Quality Scoring
        # ====================================================================
        self._transition(PipelineState.SCORING_QUALITY)
        logger.info("PHASE 3: Quality Scoring")
        logger.info("-" * 80)

        engine.wait()
        logger.info(f"  ✓ {len(reports.results())}/{len(reports)} quality reports written")
        logger.info("")

        return models, reports

    def _fatal_failures(self, result: PipelineResult) -> List[StageError]:
        if self.config.failure_policy == "abort":
            return result.failures
        # Run-scoped stages feed every sample
        return [f for f in result.failures if f.sample_id is None]

    def _finish(self, result: PipelineResult) -> None:
        if self.write_summary:
            result.summary_files = write_run_summary(result, self.config.data_dir)

        clean_work_dir(self.context)

        logger.info("=" * 80)
        if result.state == PipelineState.DONE and not result.failures:
            logger.info(f"✓ Pipeline completed in {format_elapsed_time(result.elapsed)}")
        elif result.state == PipelineState.DONE:
            failed = sorted({f.sample_id for f in result.failures if f.sample_id})
            logger.warning(
                f"⚠ Pipeline completed in {format_elapsed_time(result.elapsed)} "
                f"with failed samples: {', '.join(failed)}"
            )
        else:
            logger.error(f"✗ Pipeline failed after {format_elapsed_time(result.elapsed)}")
        logger.info("=" * 80)
