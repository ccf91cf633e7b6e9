"""
Pipeline Stages

The stage functions wired together by the pipeline driver. Each per-sample
stage takes the upstream Artifact (plus a broadcast value where the stage is
joined with one) and returns a new Artifact with the same sample id. Each
run-scoped stage runs once and returns the value that gets broadcast.

Stages:
- prepare_reference_db  (once)  stale index removal, bootstrap, stats report
- fetch_universal_db    (once)  universal reaction database download
- find_genes            (per sample)  Prodigal
- build_carveme_model   (per sample, joined with the readiness token)  CarveMe
- build_gapseq_model    (per sample)  gapseq + gzip
- annotate_model        (per sample, joined with the universal database)
- score_quality         (per sample)  memote snapshot

Output Layout (under the data directory):
    genes/<id>.gff, <id>.ffn, <id>.faa
    carveme_models/<id>.xml.gz  or  gapseq_models/<id>.xml.gz
    carveme_models_annotated/<id>.xml.gz
    model_qualities/<id>.html
    db_stats.txt
    work/  scratch space (gapseq runs, downloads)
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable
from urllib.error import URLError
from urllib.request import urlretrieve
import logging
import shutil

from Bio import SeqIO

from .annotation import UniversalDatabase, annotate_model_file
from .config import PipelineConfig
from .dataflow import Artifact
from .modelio import compress_file
from .tools import (
    CommandRunner,
    ToolError,
    run_command,
    prodigal_command,
    carveme_command,
    carveme_init_command,
    diamond_dbinfo_command,
    gapseq_command,
    memote_snapshot_command,
    locate_carveme_index,
    locate_gapseq_medium,
)

logger = logging.getLogger(__name__)

MODEL_SUFFIX = ".xml.gz"


class DownloadError(RuntimeError):
    """The universal reaction database could not be fetched."""


class StageOutputError(RuntimeError):
    """A tool exited cleanly but did not produce the expected output."""


# ============================================================================
# Run Context
# ============================================================================

@dataclass(frozen=True)
class OutputLayout:
    """Directories each stage publishes into."""
    data_dir: Path

    @property
    def genes(self) -> Path:
        return self.data_dir / "genes"

    @property
    def carveme_models(self) -> Path:
        return self.data_dir / "carveme_models"

    @property
    def gapseq_models(self) -> Path:
        return self.data_dir / "gapseq_models"

    @property
    def annotated_models(self) -> Path:
        return self.data_dir / "carveme_models_annotated"

    @property
    def qualities(self) -> Path:
        return self.data_dir / "model_qualities"

    @property
    def work(self) -> Path:
        return self.data_dir / "work"

    @property
    def db_stats(self) -> Path:
        return self.data_dir / "db_stats.txt"


def download_file(url: str, output_path: Path) -> Path:
    """
    Download ``url`` to ``output_path``.

    The file is written next to the target and renamed once complete, so an
    interrupted download never leaves a truncated file at ``output_path``.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    partial = output_path.with_name(output_path.name + ".part")

    logger.info(f"Downloading from {url}")

    def progress_hook(block_num, block_size, total_size):
        downloaded = block_num * block_size
        if total_size > 0 and block_num % 200 == 0:
            percent = min(100, (downloaded / total_size) * 100)
            logger.debug(f"Downloaded: {percent:.1f}% ({downloaded / 1e6:.1f} MB)")

    try:
        urlretrieve(url, partial, reporthook=progress_hook)
    except (URLError, OSError) as e:
        partial.unlink(missing_ok=True)
        raise DownloadError(f"Download of {url} failed: {e}") from e

    partial.replace(output_path)
    logger.info(f"Download complete: {output_path}")
    return output_path


@dataclass(frozen=True)
class StageContext:
    """Everything a stage needs besides its input artifact."""
    config: PipelineConfig
    runner: CommandRunner = run_command
    downloader: Callable[[str, Path], Path] = download_file
    layout: OutputLayout = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, 'layout', OutputLayout(self.config.data_dir))


@dataclass(frozen=True)
class ReferenceToken:
    """Signals that the shared reference database is built and queryable."""
    index: Path
    stats_report: Path
    stats: str


def _require_output(path: Path, tool: str) -> Path:
    if not path.exists() or path.stat().st_size == 0:
        raise StageOutputError(f"{tool} did not produce {path}")
    return path


# ============================================================================
# Run-scoped Stages
# ============================================================================

def prepare_reference_db(ctx: StageContext) -> ReferenceToken:
    """
    Rebuild CarveMe's DIAMOND reference database and record its statistics.

    A stale pre-built index is removed first, so repeated runs always end
    with a freshly built, queryable index.

    Raises
    ------
    ToolError
        If the bootstrap or the statistics query fails
    """
    tools = ctx.config.tools
    index = locate_carveme_index(tools)

    if index.exists():
        logger.info(f"Removing stale reference index: {index}")
        index.unlink()

    logger.info("Building reference protein database")
    ctx.runner(carveme_init_command(tools))

    if not index.exists():
        raise ToolError(f"Reference database bootstrap did not create {index}")

    result = ctx.runner(diamond_dbinfo_command(index, tools))
    stats = result.stdout or ""

    report = ctx.layout.db_stats
    report.parent.mkdir(parents=True, exist_ok=True)
    report.write_text(stats)
    logger.info(f"Reference database ready; statistics written to {report}")

    return ReferenceToken(index=index, stats_report=report, stats=stats)


def fetch_universal_db(ctx: StageContext) -> UniversalDatabase:
    """
    Download the universal reaction database once and load it.

    A non-empty copy from an earlier run in the work directory is reused.
    """
    url = ctx.config.universal_db_url
    name = Path(url.split('?', 1)[0]).name or "universal_model.json"
    target = ctx.layout.work / "universal" / name

    if target.exists() and target.stat().st_size > 0:
        logger.info(f"Using cached universal database: {target}")
    else:
        ctx.downloader(url, target)

    return UniversalDatabase.from_json(target)


# ============================================================================
# Per-sample Stages
# ============================================================================

def find_genes(ctx: StageContext, assembly: Artifact) -> Artifact:
    """Predict genes of one assembly; emits (nucleotide FASTA, protein FASTA)."""
    sample_id = assembly.sample_id
    out_dir = ctx.layout.genes
    out_dir.mkdir(parents=True, exist_ok=True)

    gff = out_dir / f"{sample_id}.gff"
    nucleotides = out_dir / f"{sample_id}.ffn"
    proteins = out_dir / f"{sample_id}.faa"

    ctx.runner(prodigal_command(assembly.path, gff, nucleotides, proteins, ctx.config.tools))

    _require_output(nucleotides, "prodigal")
    _require_output(proteins, "prodigal")

    try:
        with open(proteins) as fh:
            n_proteins = sum(1 for _ in SeqIO.parse(fh, "fasta"))
    except ValueError as e:
        raise StageOutputError(
            f"prodigal wrote an unreadable protein FASTA for {sample_id}: {e}"
        ) from e
    if n_proteins == 0:
        raise StageOutputError(f"prodigal predicted no proteins for {sample_id}")

    logger.info(f"  {sample_id}: {n_proteins} predicted proteins")
    return Artifact(sample_id, (nucleotides, proteins), {"n_proteins": n_proteins})


def build_carveme_model(ctx: StageContext, genes: Artifact, token: ReferenceToken) -> Artifact:
    """Reconstruct a draft model from predicted proteins with CarveMe."""
    sample_id = genes.sample_id
    config = ctx.config
    out_dir = ctx.layout.carveme_models
    out_dir.mkdir(parents=True, exist_ok=True)
    output = out_dir / f"{sample_id}{MODEL_SUFFIX}"

    logger.debug(f"  {sample_id}: using reference database {token.index}")
    cmd = carveme_command(
        genes.file_with_suffix(".faa"),
        output,
        cpus=config.resources.carveme,
        media_db=config.media_db,
        media=",".join(config.media_names) or None,
        tools=config.tools,
    )
    ctx.runner(cmd)

    return Artifact(sample_id, (_require_output(output, "carve"),))


def build_gapseq_model(ctx: StageContext, assembly: Artifact) -> Artifact:
    """Reconstruct a draft model directly from the assembly with gapseq."""
    sample_id = assembly.sample_id
    config = ctx.config
    medium = config.media_db if config.media_db is not None else locate_gapseq_medium(config.tools)

    work_dir = ctx.layout.work / "gapseq" / sample_id
    work_dir.mkdir(parents=True, exist_ok=True)

    ctx.runner(gapseq_command(assembly.path.resolve(), medium, config.tools), cwd=work_dir)

    # gapseq names its output after the assembly stem
    produced = work_dir / f"{assembly.path.stem}.xml"
    _require_output(produced, "gapseq")

    output = compress_file(produced, ctx.layout.gapseq_models / f"{sample_id}{MODEL_SUFFIX}")
    return Artifact(sample_id, (output,))


def annotate_model(ctx: StageContext, model: Artifact, db: UniversalDatabase) -> Artifact:
    """Annotate a draft model from the universal reaction database."""
    sample_id = model.sample_id
    output = ctx.layout.annotated_models / f"{sample_id}{MODEL_SUFFIX}"

    summary = annotate_model_file(model.path, db, output)

    return Artifact(sample_id, (output,), {
        "reactions_annotated": summary.n_reactions_annotated,
        "metabolites_annotated": summary.n_metabolites_annotated,
    })


def score_quality(ctx: StageContext, model: Artifact) -> Artifact:
    """Write a memote snapshot report for one model."""
    sample_id = model.sample_id
    out_dir = ctx.layout.qualities
    out_dir.mkdir(parents=True, exist_ok=True)
    report = out_dir / f"{sample_id}.html"

    ctx.runner(memote_snapshot_command(model.path, report, ctx.config.tools))

    return Artifact(sample_id, (_require_output(report, "memote"),))


def clean_work_dir(ctx: StageContext) -> None:
    """Remove the scratch directory unless intermediates are kept."""
    if ctx.config.keep_intermediates or not ctx.layout.work.exists():
        return
    shutil.rmtree(ctx.layout.work)
    logger.debug(f"Removed work directory {ctx.layout.work}")
