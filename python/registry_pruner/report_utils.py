"""
Utility functions for report formatting and saving.
"""

import json
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Sequence

from tabulate import tabulate

from registry_pruner.logging_utils import get_logger

logger = get_logger(__name__)


# ============================================================================
# Formatting Utilities
# ============================================================================

def sizeof_fmt(num: float, suffix: str = "B") -> str:
    """Format bytes into human-readable size.

    Args:
        num: Number of bytes
        suffix: Suffix to append (default: "B")

    Returns:
        Formatted string like "1.5GiB", "500.0MiB", etc.
    """
    for unit in ("", "Ki", "Mi", "Gi", "Ti", "Pi", "Ei", "Zi"):
        if abs(num) < 1024.0:
            return f"{num:3.1f}{unit}{suffix}"
        num /= 1024.0
    return f"{num:.1f}Yi{suffix}"


def format_table(rows: Sequence[Sequence[Any]], headers: List[str], tablefmt: str = "grid") -> str:
    """Render rows with tabulate; an empty table renders as '(none)'."""
    if not rows:
        return "(none)"
    return tabulate(rows, headers=headers, tablefmt=tablefmt)


# ============================================================================
# Timestamp Utilities
# ============================================================================

def get_timestamp_suffix() -> str:
    """
    Generate a timestamp suffix for report filenames.

    Returns:
        String in format: YYYY-MM-DD-HH-MM-SS
    """
    return datetime.now().strftime("%Y-%m-%d-%H-%M-%S")


def add_timestamp_to_path(path: str, timestamp: Optional[str] = None) -> str:
    """
    Add a timestamp to a file path before the extension.

    Args:
        path: Original file path (e.g., 'reports/prune-report.json')
        timestamp: Optional timestamp string (defaults to current time)

    Returns:
        Path with timestamp inserted (e.g., 'reports/prune-report-2026-01-15-14-30-00.json')
    """
    if timestamp is None:
        timestamp = get_timestamp_suffix()
    p = Path(path)
    return str(p.parent / f"{p.stem}-{timestamp}{p.suffix}")


# ============================================================================
# Report Saving Functions
# ============================================================================

def _to_json_compatible(data: Any) -> Any:
    """Recursively convert values json cannot serialize."""
    if isinstance(data, (datetime, date)):
        return data.isoformat()
    if isinstance(data, timedelta):
        return data.total_seconds()
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, (set, frozenset)):
        try:
            return [_to_json_compatible(item) for item in sorted(data)]
        except TypeError:
            return [_to_json_compatible(item) for item in data]
    if isinstance(data, dict):
        return {k: _to_json_compatible(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_to_json_compatible(item) for item in data]
    return data


def save_json(path: str, data: Any, timestamp: bool = False) -> str:
    """
    Write JSON data to a file with indentation.

    Args:
        path: Path to save the JSON file
        data: Data to save
        timestamp: If True, add timestamp to filename

    Returns:
        Path to the saved file
    """
    p = Path(add_timestamp_to_path(path) if timestamp else path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w") as f:
        json.dump(_to_json_compatible(data), f, indent=2)
    logger.info(f"Saved JSON to {p}")
    return str(p)
