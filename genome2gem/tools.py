"""
External Tool Adapters

Thin command-line wrappers around the external programs the pipeline drives.
Each builder returns an argument list; ``run_command`` executes it. Stages
receive the runner as a parameter so that tests can substitute a fake that
writes the files a tool would have written.

Tools:
- Prodigal: gene prediction (single-genome mode)
- CarveMe: draft model reconstruction from protein sequences (strategy A)
- carveme_init / DIAMOND: reference protein database bootstrap and stats
- gapseq: draft model reconstruction from the assembly (strategy B)
- memote: model quality snapshot report

CarveMe Invocation Variants:
    The three media variants are built by one function from the capability
    set {media database present, media names present}:

    db + names  ->  --mediadb DB --gapfill NAMES
    names only  ->  --gapfill NAMES
    otherwise   ->  (no media flags)

    Every variant requests SBML FBC2 output and verbose diagnostics, and
    passes the task's CPU units to DIAMOND.
"""

from pathlib import Path
from typing import Callable, List, Optional, Union
import importlib.util
import logging
import shutil
import subprocess

from .config import ToolConfig, PipelineConfig, CARVEME, GAPSEQ

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

CommandRunner = Callable[..., subprocess.CompletedProcess]

CARVEME_INDEX_NAME = "bigg_proteins.dmnd"
GAPSEQ_DEFAULT_MEDIUM = Path("dat") / "media" / "ALLmed.csv"


class ToolError(RuntimeError):
    """An external tool could not be started or exited with an error."""

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 returncode: Optional[int] = None, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


# ============================================================================
# Execution
# ============================================================================

def run_command(
    cmd: List[str],
    cwd: Optional[PathLike] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external command and capture its output.

    Parameters
    ----------
    cmd : List[str]
        Argument list; the first element is the executable
    cwd : PathLike, optional
        Working directory for the command

    Returns
    -------
    subprocess.CompletedProcess
        Completed process with text stdout/stderr

    Raises
    ------
    ToolError
        If the executable is missing or exits with a non-zero status
    """
    logger.debug(f"Running: {' '.join(cmd)}")

    try:
        return subprocess.run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=True,
        )
    except FileNotFoundError as e:
        raise ToolError(f"Executable not found: {cmd[0]}", command=cmd) from e
    except subprocess.CalledProcessError as e:
        stderr_tail = "\n".join((e.stderr or "").strip().splitlines()[-20:])
        error_msg = f"{cmd[0]} exited with status {e.returncode}:\n{stderr_tail}"
        raise ToolError(error_msg, command=cmd, returncode=e.returncode, stderr=e.stderr or "") from e


# ============================================================================
# Command Builders
# ============================================================================

def prodigal_command(
    assembly: PathLike,
    gff: PathLike,
    nucleotides: PathLike,
    proteins: PathLike,
    tools: ToolConfig = ToolConfig(),
) -> List[str]:
    """Prodigal in single-genome mode writing GFF, gene nucleotides and proteins."""
    return [
        tools.prodigal,
        "-p", "single",
        "-i", str(assembly),
        "-f", "gff",
        "-o", str(gff),
        "-d", str(nucleotides),
        "-a", str(proteins),
    ]


def carveme_command(
    proteins: PathLike,
    output: PathLike,
    cpus: int,
    media_db: Optional[PathLike] = None,
    media: Optional[str] = None,
    tools: ToolConfig = ToolConfig(),
) -> List[str]:
    """
    Build the CarveMe argument list for one sample.

    Parameters
    ----------
    proteins : PathLike
        Protein FASTA from the gene finder
    output : PathLike
        Compressed SBML output path (``.xml.gz``)
    cpus : int
        CPU units granted to the task; forwarded to DIAMOND
    media_db : PathLike, optional
        Media database file
    media : str, optional
        Comma-separated media names

    Returns
    -------
    List[str]
        Argument list
    """
    cmd = [
        tools.carve, str(proteins),
        "--output", str(output),
        "--fbc2",
        "--verbose",
        "--diamond-args", f"-p {cpus} --more-sensitive --top 10",
    ]

    has_media_db = media_db is not None
    has_media = bool(media)

    if has_media_db and has_media:
        cmd += ["--mediadb", str(media_db), "--gapfill", media]
    elif has_media:
        cmd += ["--gapfill", media]
    elif has_media_db:
        logger.warning(f"Media database {media_db} given without media names; ignoring it")

    return cmd


def carveme_init_command(tools: ToolConfig = ToolConfig()) -> List[str]:
    """First-run bootstrap that (re)builds CarveMe's DIAMOND database."""
    return [tools.carveme_init]


def diamond_dbinfo_command(index: PathLike, tools: ToolConfig = ToolConfig()) -> List[str]:
    """Query basic statistics of a DIAMOND database."""
    return [tools.diamond, "dbinfo", "--db", str(index)]


def gapseq_command(
    assembly: PathLike,
    medium: PathLike,
    tools: ToolConfig = ToolConfig(),
) -> List[str]:
    """Full gapseq reconstruction (find, transport, draft, fill) of one assembly."""
    return [tools.gapseq, "doall", str(assembly), str(medium)]


def memote_snapshot_command(
    model: PathLike,
    report: PathLike,
    tools: ToolConfig = ToolConfig(),
) -> List[str]:
    """memote snapshot report of a single model."""
    return [tools.memote, "report", "snapshot", "--filename", str(report), str(model)]


# ============================================================================
# Bundled Data Discovery
# ============================================================================

def locate_carveme_index(tools: ToolConfig = ToolConfig()) -> Path:
    """
    Path of CarveMe's DIAMOND protein database.

    Raises
    ------
    ToolError
        If no data directory is configured and CarveMe is not installed
    """
    data_dir = tools.carveme_data_dir
    if data_dir is None:
        found = importlib.util.find_spec("carveme")
        if found is None or found.origin is None:
            raise ToolError(
                "CarveMe is not installed and tools.carveme_data_dir is not set"
            )
        data_dir = Path(found.origin).parent / "data"
    return Path(data_dir) / "generated" / CARVEME_INDEX_NAME


def locate_gapseq_medium(tools: ToolConfig = ToolConfig()) -> Path:
    """
    Default growth medium shipped with gapseq.

    Raises
    ------
    ToolError
        If no default is configured and gapseq is not on PATH
    """
    if tools.gapseq_media_default is not None:
        return tools.gapseq_media_default

    executable = shutil.which(tools.gapseq)
    if executable is None:
        raise ToolError(f"Executable not found: {tools.gapseq}")
    return Path(executable).resolve().parent / GAPSEQ_DEFAULT_MEDIUM


def required_tools(config: PipelineConfig) -> List[str]:
    """Executables the selected strategy invokes, in pipeline order."""
    tools = config.tools
    if config.method == CARVEME:
        return [tools.carveme_init, tools.diamond, tools.prodigal, tools.carve, tools.memote]
    if config.method == GAPSEQ:
        return [tools.gapseq, tools.memote]
    return []
