"""
Storage Probe: aggregate on-disk size of the registry storage root.

Only used to log how much a confirm run reclaimed; never part of a pruning
decision, so a failed measurement is logged and reported as unknown.
"""

import os
import subprocess
from pathlib import Path
from typing import Optional

from registry_pruner.config_manager import ConfigManager, config_manager
from registry_pruner.logging_utils import get_logger
from registry_pruner.report_utils import sizeof_fmt

logger = get_logger(__name__)


def _walk_size(root: Path) -> int:
    total = 0
    for dirpath, _, filenames in os.walk(root):
        for filename in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, filename)).st_size
            except FileNotFoundError:
                continue
    return total


class StorageProbe:
    def __init__(self, root: Optional[str] = None, timeout: Optional[int] = None, config: Optional[ConfigManager] = None):
        config = config or config_manager
        self.root = Path(root or config.get_storage_root())
        self.timeout = timeout or config.get_timeout()

    def measure(self) -> Optional[int]:
        """Return the size in bytes of the storage root, or None if it cannot be measured."""
        if not self.root.exists():
            logger.warning(f"Storage root {self.root} does not exist; skipping size probe")
            return None
        command = ["du", "--bytes", "--summarize", str(self.root)]
        try:
            completed = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout, check=True)
            return int(completed.stdout.split()[0])
        except FileNotFoundError:
            # No du binary in the image
            return _walk_size(self.root)
        except (subprocess.SubprocessError, ValueError, IndexError) as e:
            logger.warning(f"Could not measure {self.root} with du: {e}")
            return None


def log_reclaimed(before: Optional[int], after: Optional[int]) -> Optional[int]:
    """Log and return the bytes reclaimed between two probes."""
    if before is None or after is None:
        logger.info("Storage size before/after pruning unavailable")
        return None
    reclaimed = before - after
    logger.info(
        f"Storage size: {sizeof_fmt(before)} before, {sizeof_fmt(after)} after "
        f"({sizeof_fmt(reclaimed)} reclaimed)"
    )
    return reclaimed
