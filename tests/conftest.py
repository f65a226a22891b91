"""
Pytest configuration file.

Sets up the Python path so test files can import from the python/ directory,
and skips config validation of the module-level config manager.
"""
import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("SKIP_CONFIG_VALIDATION", "true")

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)


@pytest.fixture
def test_config(tmp_path):
    """ConfigManager over defaults, with fast retries and reports under tmp_path."""
    from registry_pruner.config_manager import ConfigManager

    config = ConfigManager(config_file=str(tmp_path / "missing-config.yaml"), validate=False)
    config.config["retry"].update({"max_retries": 1, "initial_delay": 0.0, "max_delay": 0.0, "jitter": False})
    config.config["analysis"]["output_dir"] = str(tmp_path / "reports")
    config.config["registry"]["storage_root"] = str(tmp_path / "storage")
    config.config["kubernetes"]["check_workloads"] = False
    config.config["storage"]["probe_enabled"] = False
    return config
