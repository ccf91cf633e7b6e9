"""
Helper Functions and Utilities

This module provides common utility functions used throughout the genome2gem
package: logging configuration, external tool discovery, and
formatting helpers.

Key Utilities:
1. Logging Configuration
   - Centralized logging setup for the ``genome2gem`` logger
   - Console and optional file output

2. External Tool Management
   - Check for required tools (Prodigal, CarveMe, DIAMOND, gapseq, memote)
   - Installation hints for missing tools

3. Formatting Helpers
   - Human-readable elapsed times

Example Usage:
    >>> from genome2gem.utils import check_external_tool
    >>> if check_external_tool("prodigal"):
    ...     print("Prodigal is available")
"""

from typing import Optional
from pathlib import Path
import logging
import sys
import shutil

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Logging Configuration
# ============================================================================

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for genome2gem.

    Sets up the package logger with console and optional file output.

    Parameters
    ----------
    log_level : str, optional
        Logging level: DEBUG, INFO, WARNING, ERROR, or CRITICAL (default: INFO)
    log_file : str, optional
        Path to log file. If None, logs only to console (default: None)
    format_string : str, optional
        Custom format string for log messages. If None, uses default format

    Returns
    -------
    logging.Logger
        Configured logger instance

    Notes
    -----
    The default format includes timestamp, level, and message:
    [2025-11-03 10:30:45] INFO: Starting run
    """
    package_logger = logging.getLogger("genome2gem")
    package_logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers to avoid duplicates
    package_logger.handlers.clear()

    if format_string is None:
        format_string = "[%(asctime)s] %(levelname)s: %(message)s"

    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

        package_logger.info(f"Logging to file: {log_file}")

    return package_logger


# ============================================================================
# External Tool Management
# ============================================================================

def check_external_tool(tool_name: str) -> bool:
    """
    Check that an external executable is on PATH.

    A missing tool is logged with installation hints rather than raised; the
    stages that need it fail with a ``ToolError`` when they run.

    Parameters
    ----------
    tool_name : str
        Executable name (e.g., 'prodigal', 'carve', 'memote')

    Returns
    -------
    bool
        True if the executable resolves on PATH
    """
    tool_path = shutil.which(tool_name)

    if tool_path is None:
        logger.warning(f"Tool '{tool_name}' not found in PATH")
        logger.info(get_tool_installation_instructions(tool_name))
        return False

    logger.debug(f"Found {tool_name} at: {tool_path}")
    return True


def get_tool_installation_instructions(tool_name: str) -> str:
    """Get installation instructions for missing external tools."""
    instructions = {
        "prodigal": """
Prodigal Installation:
  Via conda: conda install -c bioconda prodigal
  Via apt:   sudo apt-get install prodigal
  Website:   https://github.com/hyattpd/Prodigal
""",
        "carve": """
CarveMe Installation:
  Via pip:   pip install carveme
  Requires DIAMOND and a MILP solver (CPLEX, Gurobi or SCIP)
  Website:   https://github.com/cdanielmachado/carveme
""",
        "carveme_init": """
CarveMe Installation:
  Via pip:   pip install carveme
  Website:   https://github.com/cdanielmachado/carveme
""",
        "diamond": """
DIAMOND Installation:
  Via conda: conda install -c bioconda diamond
  Website:   https://github.com/bbuchfink/diamond
""",
        "gapseq": """
gapseq Installation:
  Via conda: conda install -c conda-forge -c bioconda gapseq
  Website:   https://github.com/jotech/gapseq
""",
        "memote": """
memote Installation:
  Via pip:   pip install memote
  Website:   https://memote.readthedocs.io/
""",
    }

    return instructions.get(
        tool_name.lower(),
        f"Please install {tool_name} and ensure it is in your system PATH"
    )


# ============================================================================
# Formatting Helpers
# ============================================================================

def format_elapsed_time(seconds: float) -> str:
    """
    Format elapsed time in human-readable format.

    Examples
    --------
    >>> format_elapsed_time(45)
    '45s'
    >>> format_elapsed_time(3700)
    '1h 1m'
    """
    if seconds < 60:
        return f"{seconds:.0f}s"

    minutes = seconds / 60
    if minutes < 60:
        return f"{minutes:.1f}m"

    hours = minutes / 60
    minutes_remainder = minutes % 60

    if hours < 24:
        return f"{int(hours)}h {int(minutes_remainder)}m"

    days = hours / 24
    hours_remainder = hours % 24
    return f"{int(days)}d {int(hours_remainder)}h"


