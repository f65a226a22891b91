#!/usr/bin/env python3
"""
registry-pruner: prune images, blobs and repository links from a registry.

Report-only by default; pass --confirm to delete.
"""

import argparse
import sys
from datetime import datetime, timezone
from typing import List, Optional

from pymongo.errors import PyMongoError

from registry_pruner.blob_store import FilesystemBlobStore
from registry_pruner.config_manager import ConfigManager, ConfigValidationError, UNTAGGED_POLICIES, config_manager
from registry_pruner.error_utils import ActionableError, create_metadata_connection_error
from registry_pruner.executor import PruneExecutor, PruneRun
from registry_pruner.graph import GraphBuilder
from registry_pruner.logging_utils import get_logger, log_exception, setup_logging
from registry_pruner.metadata import MetadataClient
from registry_pruner.report_utils import save_json
from registry_pruner.retention import RetentionPolicy
from registry_pruner.storage_probe import StorageProbe, log_reclaimed
from registry_pruner.workload import NOTHING_IN_USE, WorkloadCollector

logger = get_logger(__name__)

EPILOG = """
Configuration:
  Defaults come from config.yaml (or the file named by CONFIG_FILE / --config).
  Environment variables: MONGODB_HOST, MONGODB_USERNAME, MONGODB_PASSWORD,
  REGISTRY_URL, REGISTRY_STORAGE_ROOT, PRUNE_NAMESPACE, LOG_LEVEL

Examples:
  # Report what would be pruned (no changes)
  registry-pruner --keep-tag-revisions 3 --keep-younger-than 60m

  # Prune for real, including images imported from other registries
  registry-pruner --keep-tag-revisions 3 --keep-younger-than 60m --all true --confirm

  # Only prune repositories of one namespace
  registry-pruner --namespace team-a --confirm
"""


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes", "y"):
        return True
    if lowered in ("false", "0", "no", "n"):
        return False
    raise argparse.ArgumentTypeError(f"expected a boolean, got {value!r}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="registry-pruner",
        description="Prune unreachable images, blobs and repository links from the image registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument("--keep-tag-revisions", type=int, help="Revisions kept per tag (default from config: 3)")
    parser.add_argument(
        "--keep-younger-than",
        help="Keep images younger than this duration, e.g. 60m, 1h30m, 7d; 0 disables (default from config: 60m)",
    )
    parser.add_argument(
        "--all",
        dest="prune_externally_imported",
        type=parse_bool,
        metavar="BOOL",
        help="Also prune images imported from other registries (default from config: true)",
    )
    parser.add_argument(
        "--untagged",
        choices=UNTAGGED_POLICIES,
        help="Untagged images: prune by age, always prune, or always keep (default from config: age)",
    )
    parser.add_argument("--namespace", help="Only prune repositories of this namespace")
    parser.add_argument("--confirm", action="store_true", help="Actually delete (default is report-only)")
    parser.add_argument("--config", dest="config_file", help="Path to the configuration file")
    parser.add_argument("--max-workers", type=int, help="Concurrent reads and deletes (default from config)")
    parser.add_argument("--output", help="Where to save the JSON report (default: timestamped file in output_dir)")
    return parser.parse_args(argv)


def _policy_from_args(args: argparse.Namespace, config: ConfigManager) -> RetentionPolicy:
    return RetentionPolicy.from_values(
        keep_tag_revisions=(
            args.keep_tag_revisions if args.keep_tag_revisions is not None else config.get_keep_tag_revisions()
        ),
        keep_younger_than=(
            args.keep_younger_than if args.keep_younger_than is not None else config.get_keep_younger_than()
        ),
        prune_externally_imported=(
            args.prune_externally_imported
            if args.prune_externally_imported is not None
            else config.get_prune_externally_imported()
        ),
        untagged=args.untagged or config.get_untagged_policy(),
    )


def run(args: argparse.Namespace, config: ConfigManager) -> str:
    """Execute one pruning run and return the text to print.

    Raises:
        ActionableError: for fatal errors (policy, fetch, authorization)
    """
    policy = _policy_from_args(args, config)
    namespace = args.namespace or config.get_prune_namespace()
    max_workers = args.max_workers or config.get_max_workers()

    try:
        metadata = MetadataClient(config=config)
    except PyMongoError as e:
        raise create_metadata_connection_error(config.get_mongo_host(), config.get_mongo_port(), e) from e

    try:
        blob_store = FilesystemBlobStore(config=config)
        graph = GraphBuilder(
            metadata,
            namespace=namespace,
            max_workers=max_workers,
            config=config,
            blob_store=blob_store if config.is_unreferenced_sweep_enabled() else None,
        ).build()

        if config.is_workload_check_enabled():
            in_use = WorkloadCollector(config=config).collect().resolve(graph)
        else:
            logger.warning("Workload check disabled: images used by running workloads are not protected")
            in_use = NOTHING_IN_USE

        executor = PruneExecutor(metadata, blob_store, max_workers=max_workers, timeout=config.get_timeout())
        prune_run = PruneRun(graph, executor)
        plan = prune_run.classify(policy, in_use.is_in_use, datetime.now(timezone.utc))
        output = [prune_run.report()]
        document = {"mode": "confirm" if args.confirm else "report", "plan": plan.to_dict()}

        if args.confirm:
            probe = StorageProbe(config=config) if config.is_storage_probe_enabled() else None
            before = probe.measure() if probe else None
            result = prune_run.confirm()
            if probe:
                log_reclaimed(before, probe.measure())
            output += ["", result.format_table()]
            document["result"] = result.to_dict()
        else:
            output += ["", "Report only: nothing was deleted. Re-run with --confirm to prune."]
    finally:
        metadata.close()

    if args.output:
        save_json(args.output, document)
    else:
        save_json(config.get_prune_report_path(), document, timestamp=True)
    return "\n".join(output)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = ConfigManager(config_file=args.config_file) if args.config_file else config_manager
    except ConfigValidationError as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1
    setup_logging(config.get_log_level())

    try:
        text = run(args, config)
    except ActionableError as e:
        log_exception(logger, "Pruning aborted", e)
        print(e.format_message(), file=sys.stderr)
        return 1
    except ConfigValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    print(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
