"""
Configuration Management for genome2gem

This module provides the configuration system for the reconstruction pipeline
using frozen dataclasses. The configuration system supports:

1. Default parameter values matching the upstream tool conventions
2. Loading configuration from YAML/JSON files
3. Environment variable overrides
4. Validation in ``__post_init__``
5. Hierarchical configuration with component-specific settings

Configuration Structure:
- ResourceConfig: Declared CPU units per stage
- ToolConfig: External executable names and bundled data locations
- PipelineConfig: Master configuration (data directory, strategy, media,
  optional annotation, failure policy)

Example Usage:
    >>> from genome2gem.config import get_default_config
    >>> config = get_default_config().update(
    ...     data_dir="genomes",
    ...     method="carveme",
    ...     resources__carveme=4,
    ... )
    >>> config.resources.carveme
    4

``method`` is not validated here: the pipeline driver
owns strategy selection and rejects unknown tags before any stage starts.
"""

from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Optional, List, Dict, Any, Union
import os
import json
import logging

import yaml

logger = logging.getLogger(__name__)


CARVEME = "carveme"
GAPSEQ = "gapseq"
RECOGNIZED_METHODS = (CARVEME, GAPSEQ)

FAILURE_POLICIES = ("abort", "isolate")

# BiGG universal model; reactions and metabolites carry identifiers.org links
DEFAULT_UNIVERSAL_DB_URL = "http://bigg.ucsd.edu/static/namespace/universal_model.json"


class ConfigurationError(ValueError):
    """Raised for invalid run parameters (unknown strategy, bad values)."""


# ============================================================================
# Resource Configuration
# ============================================================================

@dataclass(frozen=True)
class ResourceConfig:
    """
    Declared compute units per stage.

    The dataflow engine admits a task only when its declared units are free
    in the global budget (``PipelineConfig.max_cpus``). The CarveMe value is
    also forwarded to DIAMOND as its thread count.

    Attributes
    ----------
    gene_finder : int
        Units per Prodigal invocation (default: 1)
    carveme : int
        Units per CarveMe invocation (default: 2)
    gapseq : int
        Units per gapseq invocation (default: 1)
    annotation : int
        Units per annotation task (default: 1)
    quality : int
        Units per memote invocation (default: 1)
    """
    gene_finder: int = 1
    carveme: int = 2
    gapseq: int = 1
    annotation: int = 1
    quality: int = 1

    def __post_init__(self):
        """Validate configuration parameters."""
        for name, value in asdict(self).items():
            if value < 1:
                raise ConfigurationError(f"resources.{name} must be at least 1")


# ============================================================================
# External Tool Configuration
# ============================================================================

@dataclass(frozen=True)
class ToolConfig:
    """
    Names of external executables and bundled data locations.

    Attributes
    ----------
    prodigal, carve, carveme_init, diamond, gapseq, memote : str
        Executable names (resolved on PATH)
    carveme_data_dir : Optional[Path]
        CarveMe ``data`` directory. When None it is located from the installed
        ``carveme`` package.
    gapseq_media_default : Optional[Path]
        Growth medium used by gapseq when no media database is configured.
        When None, ``dat/media/ALLmed.csv`` next to the gapseq executable.
    """
    prodigal: str = "prodigal"
    carve: str = "carve"
    carveme_init: str = "carveme_init"
    diamond: str = "diamond"
    gapseq: str = "gapseq"
    memote: str = "memote"
    carveme_data_dir: Optional[Path] = None
    gapseq_media_default: Optional[Path] = None

    def __post_init__(self):
        """Normalize path fields."""
        for name in ("carveme_data_dir", "gapseq_media_default"):
            value = getattr(self, name)
            if value is not None and isinstance(value, str):
                object.__setattr__(self, name, Path(value))


# ============================================================================
# Master Pipeline Configuration
# ============================================================================

@dataclass(frozen=True)
class PipelineConfig:
    """
    Master configuration for a genome2gem run.

    Attributes
    ----------
    data_dir : Path
        Directory holding ``raw/`` assemblies; outputs are written beside it
    method : str
        Model building strategy: "carveme" or "gapseq"
    media_db : Optional[Path]
        Growth media database (CarveMe TSV, or gapseq medium CSV)
    media : Optional[str]
        Comma-separated media names for CarveMe gap-filling
    annotate : bool
        Add the annotation stage to the carveme topology (default: False)
    universal_db_url : str
        Source of the universal reaction database used by annotation
    failure_policy : str
        "abort" stops the run on the first task failure; "isolate" lets the
        remaining samples finish (default: "abort")
    max_cpus : int
        Global CPU unit budget shared by all running tasks (default: CPU count)
    log_level : str
        Logging level (default: "INFO")
    keep_intermediates : bool
        Keep the ``work/`` scratch directory after the run (default: False)
    resources : ResourceConfig
    tools : ToolConfig
    """
    data_dir: Path = field(default_factory=lambda: Path("data"))
    method: str = CARVEME
    media_db: Optional[Path] = None
    media: Optional[str] = None
    annotate: bool = False
    universal_db_url: str = DEFAULT_UNIVERSAL_DB_URL
    failure_policy: str = "abort"
    max_cpus: int = field(default_factory=lambda: os.cpu_count() or 1)
    log_level: str = "INFO"
    keep_intermediates: bool = False
    resources: ResourceConfig = field(default_factory=ResourceConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)

    def __post_init__(self):
        """Validate and normalize configuration."""
        if isinstance(self.data_dir, str):
            object.__setattr__(self, 'data_dir', Path(self.data_dir))
        if self.media_db is not None and isinstance(self.media_db, str):
            object.__setattr__(self, 'media_db', Path(self.media_db))
        if self.media is not None and not isinstance(self.media, str):
            object.__setattr__(self, 'media', str(self.media))
        if self.media is not None and not self.media.strip():
            object.__setattr__(self, 'media', None)

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_levels:
            raise ConfigurationError(f"log_level must be one of {valid_levels}")

        if self.failure_policy not in FAILURE_POLICIES:
            raise ConfigurationError(
                f"failure_policy must be one of {list(FAILURE_POLICIES)}, "
                f"got '{self.failure_policy}'"
            )

        if self.max_cpus < 1:
            raise ConfigurationError("max_cpus must be at least 1")

    @property
    def media_names(self) -> List[str]:
        """Media names split from the comma-separated ``media`` value."""
        if not self.media:
            return []
        return [m.strip() for m in self.media.split(',') if m.strip()]

    def update(self, **kwargs) -> 'PipelineConfig':
        """
        Create a new configuration with updated values.

        Supports nested updates using double underscore notation:
        ``config.update(resources__carveme=4)``
        """
        top_level = {}
        nested = {}

        for key, value in kwargs.items():
            if '__' in key:
                component, param = key.split('__', 1)
                nested.setdefault(component, {})[param] = value
            else:
                top_level[key] = value

        for component, updates in nested.items():
            current = getattr(self, component)
            top_level[component] = replace(current, **updates)

        return replace(self, **top_level)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a nested dictionary."""
        return asdict(self)

    def to_yaml(self, output_path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        config_dict = _convert_paths_to_strings(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {path}")

    def to_json(self, output_path: Union[str, Path]) -> None:
        """Save configuration to JSON file."""
        config_dict = _convert_paths_to_strings(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(config_dict, f, indent=2)

        logger.info(f"Configuration saved to {path}")


# ============================================================================
# Helper Functions
# ============================================================================

def get_default_config() -> PipelineConfig:
    """Get default pipeline configuration."""
    return PipelineConfig()


def load_config_from_file(config_path: Union[str, Path]) -> PipelineConfig:
    """
    Load configuration from YAML or JSON file.

    Automatically detects file format based on extension.

    Parameters
    ----------
    config_path : Union[str, Path]
        Path to configuration file (.yaml, .yml, or .json)

    Returns
    -------
    PipelineConfig
        Loaded configuration

    Raises
    ------
    FileNotFoundError
        If configuration file doesn't exist
    ValueError
        If file format is not supported
    """
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()

    if suffix in ['.yaml', '.yml']:
        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}
    elif suffix == '.json':
        with open(path, 'r') as f:
            config_dict = json.load(f)
    else:
        raise ValueError(f"Unsupported config file format: {suffix}")

    logger.info(f"Loaded configuration from {path}")
    return _dict_to_config(config_dict)


def _dict_to_config(config_dict: Dict[str, Any]) -> PipelineConfig:
    """Convert dictionary to PipelineConfig object."""
    config_dict = dict(config_dict)
    nested_configs = {}

    if 'resources' in config_dict:
        nested_configs['resources'] = ResourceConfig(**config_dict.pop('resources'))

    if 'tools' in config_dict:
        nested_configs['tools'] = ToolConfig(**config_dict.pop('tools'))

    return PipelineConfig(**nested_configs, **config_dict)


def _convert_paths_to_strings(obj: Any) -> Any:
    """Recursively convert Path objects to strings for serialization."""
    if isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, dict):
        return {k: _convert_paths_to_strings(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_convert_paths_to_strings(item) for item in obj]
    else:
        return obj


def load_config_from_env() -> Dict[str, Any]:
    """
    Load configuration overrides from environment variables.

    Environment variables are prefixed with GENOME2GEM_ and use double
    underscores for nesting:

    GENOME2GEM_METHOD=gapseq
    GENOME2GEM_RESOURCES__CARVEME=4

    Returns
    -------
    Dict[str, Any]
        Keyword arguments suitable for ``PipelineConfig.update``
    """
    prefix = "GENOME2GEM_"
    overrides = {}

    for key, value in os.environ.items():
        if key.startswith(prefix):
            config_key = key[len(prefix):].lower()
            overrides[config_key] = _parse_env_value(value)

    if overrides:
        logger.debug(f"Loaded {len(overrides)} configuration overrides from environment")

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    if value.lower() in ['true', 'yes']:
        return True
    if value.lower() in ['false', 'no']:
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def validate_config(config: PipelineConfig) -> List[str]:
    """
    Validate configuration and return list of warnings.

    Checks for missing files and parameter combinations that are accepted
    but probably not what the user meant.
    """
    warnings = []

    if config.media_db is not None and not config.media_db.exists():
        warnings.append(f"Media database not found: {config.media_db}")

    if config.method == CARVEME and config.media_db is not None and not config.media_names:
        warnings.append(
            "A media database was given without media names; "
            "CarveMe will run without gap-filling media."
        )

    if config.method == GAPSEQ and config.media:
        warnings.append("Media names are only used by the carveme strategy and will be ignored.")

    if config.method == GAPSEQ and config.annotate:
        warnings.append("Annotation is only wired into the carveme strategy and will be skipped.")

    largest = max(asdict(config.resources).values())
    if largest > config.max_cpus:
        warnings.append(
            f"A stage requests {largest} CPU units but max_cpus is {config.max_cpus}; "
            "the request will be clamped."
        )

    cpu_count = os.cpu_count() or 1
    if config.max_cpus > cpu_count:
        warnings.append(
            f"max_cpus ({config.max_cpus}) exceeds available CPUs ({cpu_count})"
        )

    return warnings


def create_config_template(output_path: Union[str, Path], format: str = "yaml") -> None:
    """Create a configuration template file with the default values."""
    config = get_default_config()

    if format.lower() == "yaml":
        config.to_yaml(output_path)
    elif format.lower() == "json":
        config.to_json(output_path)
    else:
        raise ValueError(f"Unsupported format: {format}")

    logger.info(f"Created configuration template: {output_path}")
