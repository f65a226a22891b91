"""Tests for registry_pruner/storage_probe.py"""

import subprocess
from unittest.mock import patch

from registry_pruner.storage_probe import StorageProbe, log_reclaimed


class TestStorageProbe:
    """Tests for the du-based storage probe"""

    def test_parses_du_output(self, tmp_path):
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout=f"4096\t{tmp_path}\n", stderr="")
        with patch("registry_pruner.storage_probe.subprocess.run", return_value=completed) as run:
            assert StorageProbe(root=str(tmp_path), timeout=5).measure() == 4096

        command = run.call_args.args[0]
        assert command == ["du", "--bytes", "--summarize", str(tmp_path)]

    def test_walks_tree_when_du_missing(self, tmp_path):
        (tmp_path / "a").write_bytes(b"x" * 10)
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b").write_bytes(b"y" * 5)

        with patch("registry_pruner.storage_probe.subprocess.run", side_effect=FileNotFoundError("du")):
            assert StorageProbe(root=str(tmp_path), timeout=5).measure() == 15

    def test_failed_du_is_unknown_not_fatal(self, tmp_path):
        error = subprocess.CalledProcessError(1, ["du"])
        with patch("registry_pruner.storage_probe.subprocess.run", side_effect=error):
            assert StorageProbe(root=str(tmp_path), timeout=5).measure() is None

    def test_missing_root(self, tmp_path):
        assert StorageProbe(root=str(tmp_path / "missing"), timeout=5).measure() is None

    def test_log_reclaimed(self):
        assert log_reclaimed(1000, 400) == 600
        assert log_reclaimed(None, 400) is None
