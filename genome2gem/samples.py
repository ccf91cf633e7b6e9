"""
Sample Discovery

Scans ``<data_dir>/raw`` for genome assemblies and derives a stable sample
identifier from each file name. The identifier is the part of the file name
before the first occurrence of the extension marker (``.f``, which begins both
``.fna`` and ``.fasta``):

    A.fna              -> A
    B.fasta            -> B
    E_coli_K12.fna     -> E_coli_K12
    strain7.final.fna  -> strain7

Every downstream artifact is keyed by this identifier, so two files that map
to the same identifier are a naming conflict and are rejected before the run
starts.

Example Usage:
    >>> from genome2gem.samples import discover_samples
    >>> samples = discover_samples("genomes")
    >>> [s.id for s in samples]
    ['A', 'B']
"""

from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Tuple, Union
import logging

logger = logging.getLogger(__name__)


ASSEMBLY_EXTENSIONS: Tuple[str, ...] = (".fna", ".fasta")
EXTENSION_MARKER = ".f"
RAW_SUBDIR = "raw"


class SampleError(ValueError):
    """Raised when a file name does not yield a usable sample id."""


class DuplicateSampleError(SampleError):
    """Raised when two assemblies derive the same sample id."""

    def __init__(self, collisions: Dict[str, List[Path]]):
        self.collisions = collisions
        details = "; ".join(
            f"'{sample_id}': {', '.join(p.name for p in paths)}"
            for sample_id, paths in sorted(collisions.items())
        )
        super().__init__(f"Duplicate sample ids derived from assembly file names: {details}")


@dataclass(frozen=True)
class Sample:
    """One genome assembly and the id every stage tags its artifacts with."""
    id: str
    assembly: Path


def derive_sample_id(filename: str, marker: str = EXTENSION_MARKER) -> str:
    """
    Derive the sample id from an assembly file name.

    Parameters
    ----------
    filename : str
        File name (a path is accepted; only its final component is used)
    marker : str, optional
        Substring that starts the extension (default: ".f")

    Returns
    -------
    str
        Text before the first occurrence of ``marker``; the whole name when the
        marker does not occur

    Raises
    ------
    SampleError
        If the derived id is empty (e.g. ".fna" or ".fasta")
    """
    name = Path(filename).name
    sample_id = name.split(marker, 1)[0]
    if not sample_id:
        raise SampleError(f"Cannot derive a sample id from file name '{name}'")
    return sample_id


def find_assemblies(
    raw_dir: Path,
    extensions: Sequence[str] = ASSEMBLY_EXTENSIONS,
) -> List[Path]:
    """List assembly files directly under ``raw_dir`` (non-recursive)."""
    return sorted(
        path for path in raw_dir.iterdir()
        if path.is_file()
        and not path.name.startswith('.')
        and path.name.endswith(tuple(extensions))
    )


def discover_samples(
    data_dir: Union[str, Path],
    extensions: Sequence[str] = ASSEMBLY_EXTENSIONS,
    marker: str = EXTENSION_MARKER,
) -> List[Sample]:
    """
    Discover samples in ``<data_dir>/raw``.

    Parameters
    ----------
    data_dir : Union[str, Path]
        Run data directory
    extensions : Sequence[str], optional
        Recognized assembly extensions (default: .fna, .fasta)
    marker : str, optional
        Extension marker used for id derivation

    Returns
    -------
    List[Sample]
        Samples sorted by id. Empty when no assembly matches.

    Raises
    ------
    FileNotFoundError
        If ``<data_dir>/raw`` does not exist
    DuplicateSampleError
        If two assemblies derive the same id
    """
    raw_dir = Path(data_dir) / RAW_SUBDIR
    if not raw_dir.is_dir():
        raise FileNotFoundError(f"Assembly directory not found: {raw_dir}")

    by_id: Dict[str, List[Path]] = defaultdict(list)
    for path in find_assemblies(raw_dir, extensions):
        by_id[derive_sample_id(path.name, marker)].append(path)

    collisions = {sample_id: paths for sample_id, paths in by_id.items() if len(paths) > 1}
    if collisions:
        raise DuplicateSampleError(collisions)

    samples = [Sample(id=sample_id, assembly=paths[0]) for sample_id, paths in sorted(by_id.items())]

    if not samples:
        logger.warning(
            f"No assemblies ({', '.join(extensions)}) found in {raw_dir}; nothing to process"
        )
    else:
        logger.info(f"Discovered {len(samples)} samples in {raw_dir}")
        for sample in samples:
            logger.debug(f"  {sample.id}: {sample.assembly.name}")

    return samples
