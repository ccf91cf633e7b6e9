"""
Model file I/O

SBML reading and writing through cobrapy, with transparent gzip handling.
All published model artifacts use the ``.xml.gz`` convention regardless of
which builder produced them.
"""

from pathlib import Path
from typing import Union
import gzip
import logging
import shutil

import cobra

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def is_gzipped(path: PathLike) -> bool:
    return Path(path).suffix == ".gz"


def read_model(path: PathLike) -> cobra.Model:
    """Read an SBML model, decompressing ``.gz`` files on the fly."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")

    if is_gzipped(path):
        with gzip.open(path, "rt", encoding="utf-8") as handle:
            model = cobra.io.read_sbml_model(handle)
    else:
        model = cobra.io.read_sbml_model(str(path))

    logger.debug(
        f"Read model {model.id} from {path}: {len(model.reactions)} reactions, "
        f"{len(model.metabolites)} metabolites, {len(model.genes)} genes"
    )
    return model


def write_model(model: cobra.Model, path: PathLike) -> Path:
    """Write an SBML model, compressing when the path ends with ``.gz``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if is_gzipped(path):
        with gzip.open(path, "wt", encoding="utf-8") as handle:
            cobra.io.write_sbml_model(model, handle)
    else:
        cobra.io.write_sbml_model(model, str(path))

    logger.debug(f"Wrote model {model.id} to {path}")
    return path


def compress_file(source: PathLike, target: PathLike, remove_source: bool = True) -> Path:
    """Gzip ``source`` into ``target``."""
    source = Path(source)
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)

    with open(source, "rb") as src, gzip.open(target, "wb") as dst:
        shutil.copyfileobj(src, dst)

    if remove_source:
        source.unlink()

    return target
