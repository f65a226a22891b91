"""Tests for the registry-pruner command line"""

import argparse
import json
from unittest.mock import patch

import pytest
from pymongo.errors import AutoReconnect

from graph_fixtures import FakeMetadataClient, ago, digest, image_doc, repository_doc
from registry_pruner import cli


class TestParseArgs:
    """Tests for argument parsing"""

    def test_defaults_are_unset(self):
        args = cli.parse_args([])

        assert args.keep_tag_revisions is None
        assert args.keep_younger_than is None
        assert args.prune_externally_imported is None
        assert args.confirm is False

    def test_all_flag_takes_boolean(self):
        args = cli.parse_args(["--keep-tag-revisions", "3", "--keep-younger-than", "60m", "--all", "false", "--confirm"])

        assert args.keep_tag_revisions == 3
        assert args.keep_younger_than == "60m"
        assert args.prune_externally_imported is False
        assert args.confirm is True

    @pytest.mark.parametrize("value,expected", [("true", True), ("Yes", True), ("0", False), ("n", False)])
    def test_parse_bool(self, value, expected):
        assert cli.parse_bool(value) is expected

    def test_parse_bool_rejects_garbage(self):
        with pytest.raises(argparse.ArgumentTypeError):
            cli.parse_bool("maybe")


def two_revision_metadata():
    return FakeMetadataClient(
        repositories=[repository_doc("team/app", {"latest": ["new", "old"]})],
        images=[
            image_doc("old", ago(days=10), layers=["L0", "L1"]),
            image_doc("new", ago(days=1), layers=["L0", "L2"]),
        ],
    )


class TestMain:
    """Tests for main() against an in-memory metadata store"""

    @pytest.fixture
    def metadata(self):
        return two_revision_metadata()

    @pytest.fixture(autouse=True)
    def wire(self, test_config, metadata):
        with patch.object(cli, "config_manager", test_config), patch.object(cli, "MetadataClient", return_value=metadata):
            yield

    def test_report_mode_deletes_nothing(self, metadata, tmp_path, capsys):
        output = tmp_path / "report.json"

        code = cli.main(["--keep-tag-revisions", "1", "--keep-younger-than", "0", "--output", str(output)])

        assert code == 0
        printed = capsys.readouterr().out
        assert digest("old") in printed
        assert "Report only" in printed
        assert metadata.deleted == []
        document = json.loads(output.read_text())
        assert document["mode"] == "report"
        assert "result" not in document

    def test_default_report_path_is_timestamped(self, tmp_path):
        assert cli.main(["--keep-tag-revisions", "1", "--keep-younger-than", "0"]) == 0

        reports = list((tmp_path / "reports").glob("prune-report-*.json"))
        assert len(reports) == 1

    def test_confirm_mode_deletes_old_image(self, metadata, test_config, tmp_path):
        (tmp_path / "storage").mkdir()
        output = tmp_path / "report.json"

        code = cli.main(["--keep-tag-revisions", "1", "--keep-younger-than", "0", "--confirm", "--output", str(output)])

        assert code == 0
        assert metadata.deleted == [digest("old")]
        document = json.loads(output.read_text())
        assert document["mode"] == "confirm"
        assert "result" in document

    def test_age_exemption_keeps_everything(self, metadata, tmp_path):
        (tmp_path / "storage").mkdir()

        assert cli.main(["--keep-tag-revisions", "1", "--keep-younger-than", "3650d", "--confirm"]) == 0
        assert metadata.deleted == []

    def test_item_failures_do_not_fail_the_run(self, metadata, tmp_path):
        (tmp_path / "storage").mkdir()
        metadata.fail_deletes[digest("old")] = OSError("disk on fire")

        assert cli.main(["--keep-tag-revisions", "1", "--keep-younger-than", "0", "--confirm"]) == 0
        assert metadata.deleted == []

    def test_invalid_policy_exits_without_report(self, tmp_path, capsys):
        code = cli.main(["--keep-tag-revisions", "-1"])

        assert code == 1
        assert "Invalid retention policy" in capsys.readouterr().err
        assert not (tmp_path / "reports").exists()

    def test_invalid_duration_exits(self):
        assert cli.main(["--keep-younger-than", "soon"]) == 1

    def test_unreachable_metadata_exits(self, metadata):
        def unreachable():
            raise AutoReconnect("connection refused")

        metadata.list_repositories = unreachable

        assert cli.main(["--keep-tag-revisions", "1"]) == 1
