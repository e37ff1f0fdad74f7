"""
Canonical path resolution for the IMD crime analysis project.

This module is the single source of truth for project paths. Scripts and
library modules import directories from here instead of building relative
'../' paths.

The project root is detected from a `.project-root` marker (primary) with
`pyproject.toml` and `.git` as fallbacks.
"""

from pathlib import Path
from typing import Optional

# Markers to detect project root (in priority order)
ROOT_MARKERS = [".project-root", "pyproject.toml", ".git"]


def find_project_root(start_path: Optional[Path] = None) -> Path:
    """
    Find the project root by searching upward for marker files.

    Args:
        start_path: Starting directory for search. Defaults to this file's location.

    Returns:
        Path to project root directory.

    Raises:
        FileNotFoundError: If no root marker is found.
    """
    if start_path is None:
        start_path = Path(__file__).resolve().parent

    current = start_path

    while current != current.parent:
        for marker in ROOT_MARKERS:
            if (current / marker).exists():
                return current
        current = current.parent

    for marker in ROOT_MARKERS:
        if (current / marker).exists():
            return current

    raise FileNotFoundError(
        f"Could not find project root. Searched for markers {ROOT_MARKERS} "
        f"starting from {start_path}"
    )


def _resolve_project_root() -> Path:
    """Resolve the root from the package location, then from the working directory."""
    try:
        return find_project_root()
    except FileNotFoundError:
        # Non-editable installs live in site-packages, away from the repo
        return find_project_root(Path.cwd().resolve())


# =============================================================================
# Canonical paths (resolved at import time)
# =============================================================================

PROJECT_ROOT = _resolve_project_root()

# Config
CONFIG_DIR = PROJECT_ROOT / "configs"
PARAMS_PATH = CONFIG_DIR / "params.yml"

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
RAW_DIR = DATA_DIR / "raw"
INTERIM_DIR = DATA_DIR / "interim"
PROCESSED_DIR = DATA_DIR / "processed"

# Raw subdirectories
BOUNDARIES_DIR = RAW_DIR / "boundaries"
DEPRIVATION_DIR = RAW_DIR / "deprivation"
CRIME_DIR = RAW_DIR / "crime"

# Processed subdirectories
JOINED_DIR = PROCESSED_DIR / "joined"
INDEX_DIR = PROCESSED_DIR / "index"
MODELS_DIR = PROCESSED_DIR / "models"
METADATA_DIR = PROCESSED_DIR / "metadata"

# Logs
LOGS_DIR = PROJECT_ROOT / "logs"

# Source, scripts and tests
SRC_DIR = PROJECT_ROOT / "src"
SCRIPTS_DIR = PROJECT_ROOT / "scripts"
TESTS_DIR = PROJECT_ROOT / "tests"


def ensure_dirs_exist() -> None:
    """Create all canonical output directories if they don't exist."""
    dirs = [
        CONFIG_DIR,
        RAW_DIR, INTERIM_DIR,
        BOUNDARIES_DIR, DEPRIVATION_DIR, CRIME_DIR,
        JOINED_DIR, INDEX_DIR, MODELS_DIR, METADATA_DIR,
        LOGS_DIR,
    ]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)


if __name__ == "__main__":
    print(f"PROJECT_ROOT:  {PROJECT_ROOT}")
    print(f"RAW_DIR:       {RAW_DIR}")
    print(f"PROCESSED_DIR: {PROCESSED_DIR}")
    print(f"CONFIG_DIR:    {CONFIG_DIR}")
    print(f"LOGS_DIR:      {LOGS_DIR}")
