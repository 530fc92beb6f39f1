"""
Canonical path resolution for the spatial typology project.

Single source of truth for every on-disk location the pipeline script touches.
The numeric core never imports this module; only orchestration code does.

- Detect root via `.project-root` (primary) and fallback markers
- Expose canonical Paths: CONFIG_DIR, PROCESSED_DIR, TYPOLOGY_DIR, LOGS_DIR, ...
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
    
    current = Path(start_path).resolve()
    
    while True:
        for marker in ROOT_MARKERS:
            if (current / marker).exists():
                return current
        if current == current.parent:
            break
        current = current.parent
    
    raise FileNotFoundError(
        f"Could not find project root. Searched for markers {ROOT_MARKERS} "
        f"starting from {start_path}"
    )


# =============================================================================
# Canonical paths (resolved at import time)
# =============================================================================

PROJECT_ROOT = find_project_root()

CONFIG_DIR = PROJECT_ROOT / "configs"
PARAMS_FILE = CONFIG_DIR / "params.yml"

DATA_DIR = PROJECT_ROOT / "data"
RAW_DIR = DATA_DIR / "raw"
PROCESSED_DIR = DATA_DIR / "processed"

FEATURES_DIR = PROCESSED_DIR / "features"
TYPOLOGY_DIR = PROCESSED_DIR / "typology"
METADATA_DIR = PROCESSED_DIR / "metadata"

LOGS_DIR = PROJECT_ROOT / "logs"

SRC_DIR = PROJECT_ROOT / "src"
SCRIPTS_DIR = PROJECT_ROOT / "scripts"
TESTS_DIR = PROJECT_ROOT / "tests"


def ensure_dirs_exist() -> None:
    """Create all canonical output directories if they don't exist."""
    dirs = [
        CONFIG_DIR,
        RAW_DIR, FEATURES_DIR,
        TYPOLOGY_DIR, METADATA_DIR,
        LOGS_DIR,
    ]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)


if __name__ == "__main__":
    print(f"PROJECT_ROOT:  {PROJECT_ROOT}")
    print(f"CONFIG_DIR:    {CONFIG_DIR}")
    print(f"TYPOLOGY_DIR:  {TYPOLOGY_DIR}")
    print(f"LOGS_DIR:      {LOGS_DIR}")
