"""
genome2gem: Batch Reconstruction of Genome-Scale Metabolic Models

genome2gem is a Python package that turns a directory of bacterial genome
assemblies into draft genome-scale metabolic models (GEMs) and scores their
quality. Each assembly is processed as an independent sample; samples run
concurrently within a shared CPU budget.

Core functionality includes:
- Sample discovery and id derivation from assembly file names
- Gene prediction with Prodigal
- Draft model reconstruction with CarveMe (from proteins) or gapseq (from the
  assembly), optionally gap-filled on user media
- Optional annotation of CarveMe models from the BiGG universal model
- Model quality snapshots with memote
- A TSV/HTML run summary of every task
"""

__version__ = "0.1.0"

# Import main modules for easy access
from . import config
from . import samples
from . import dataflow
from . import tools
from . import stages
from . import annotation
from . import pipeline
from . import utils

__all__ = [
    "config",
    "samples",
    "dataflow",
    "tools",
    "stages",
    "annotation",
    "pipeline",
    "utils",
]
