#!/usr/bin/env python3
"""
Configuration Manager for the registry pruner

This module handles loading and managing configuration from config.yaml
and environment variables.
"""

import logging
import os
import re
from typing import Any, Dict, List, Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""


UNTAGGED_POLICIES = ("age", "prune", "keep")


class ConfigManager:
    """Manages configuration for the registry pruner"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to config.yaml or CONFIG_FILE env var)
            validate: If True, validate configuration on initialization
        """
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "metadata": {
                "host": "mongodb",
                "port": 27017,
                "replicaset": "",
                "db": "registry",
                "images_collection": "images",
                "repositories_collection": "image_repositories",
                "timeout": 30,  # Seconds, applied to server selection and socket reads
            },
            "registry": {"url": "docker-registry:5000", "storage_root": "/registry"},
            "kubernetes": {"check_workloads": True, "namespaces": []},
            "prune": {
                "keep_tag_revisions": 3,
                "keep_younger_than": "60m",
                "prune_externally_imported": True,
                "untagged_images": "age",
                "namespace": "",
            },
            "analysis": {"max_workers": 4, "timeout": 300, "output_dir": "reports"},
            "retry": {
                "max_retries": 3,
                "initial_delay": 1.0,
                "max_delay": 60.0,
                "exponential_base": 2.0,
                "jitter": True,
            },
            "reports": {"prune_report": "prune-report.json"},
            "storage": {"probe_enabled": True, "sweep_unreferenced": True},
            "logging": {"level": "INFO"},
        }

        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r") as f:
                    user_config = yaml.safe_load(f) or {}
                return self._merge_config(default_config, user_config)
            else:
                logging.debug(f"Config file {self.config_file} not found, using defaults")
                return default_config
        except (OSError, yaml.YAMLError) as e:
            logging.error(f"Error loading config file: {e}")
            return default_config

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def _get_int(self, section: str, key: str, default: int) -> int:
        value = self.config.get(section, {}).get(key, default)
        if isinstance(value, bool):
            raise ConfigValidationError(f"{section}.{key} must be an integer, got: {value} (type: bool)")
        try:
            return int(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be an integer, got: {value} (type: {type(value).__name__})"
            )

    def _get_float(self, section: str, key: str, default: float) -> float:
        value = self.config.get(section, {}).get(key, default)
        try:
            return float(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be a number, got: {value} (type: {type(value).__name__})"
            )

    def _get_bool(self, section: str, key: str, default: bool) -> bool:
        value = self.config.get(section, {}).get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes")
        return bool(value)

    # Metadata (MongoDB) configuration
    def get_mongo_host(self) -> str:
        return os.environ.get("MONGODB_HOST") or self.config["metadata"]["host"]

    def get_mongo_port(self) -> int:
        """Get MongoDB port from config, with type coercion"""
        return self._get_int("metadata", "port", 27017)

    def get_mongo_replicaset(self) -> str:
        return self.config["metadata"].get("replicaset") or ""

    def get_mongo_db(self) -> str:
        return self.config["metadata"]["db"]

    def get_images_collection(self) -> str:
        return self.config["metadata"]["images_collection"]

    def get_repositories_collection(self) -> str:
        return self.config["metadata"]["repositories_collection"]

    def get_metadata_timeout(self) -> int:
        return self._get_int("metadata", "timeout", 30)

    def get_mongo_connection_string(self) -> str:
        """Build the MongoDB URI; credentials come from the environment only"""
        username = os.environ.get("MONGODB_USERNAME", "admin")
        password = os.environ.get("MONGODB_PASSWORD")
        auth = f"{username}:{password}@" if password else ""
        uri = f"mongodb://{auth}{self.get_mongo_host()}:{self.get_mongo_port()}/"
        replicaset = self.get_mongo_replicaset()
        if replicaset:
            uri += f"?replicaSet={replicaset}"
        return uri

    # Registry configuration
    def get_registry_url(self) -> str:
        """Get registry URL from environment or config"""
        return os.environ.get("REGISTRY_URL") or self.config["registry"]["url"]

    def get_storage_root(self) -> str:
        """Root directory of the registry's filesystem storage driver"""
        return os.environ.get("REGISTRY_STORAGE_ROOT") or self.config["registry"]["storage_root"]

    # Kubernetes configuration
    def is_workload_check_enabled(self) -> bool:
        return self._get_bool("kubernetes", "check_workloads", True)

    def get_workload_namespaces(self) -> List[str]:
        """Namespaces scanned for active workloads; empty means all namespaces"""
        namespaces = self.config["kubernetes"].get("namespaces") or []
        if isinstance(namespaces, str):
            namespaces = [ns.strip() for ns in namespaces.split(",") if ns.strip()]
        return list(namespaces)

    # Prune policy defaults
    def get_keep_tag_revisions(self) -> int:
        return self._get_int("prune", "keep_tag_revisions", 3)

    def get_keep_younger_than(self) -> str:
        return str(self.config["prune"].get("keep_younger_than", "60m"))

    def get_prune_externally_imported(self) -> bool:
        return self._get_bool("prune", "prune_externally_imported", True)

    def get_untagged_policy(self) -> str:
        return str(self.config["prune"].get("untagged_images", "age")).lower()

    def get_prune_namespace(self) -> Optional[str]:
        """Namespace restriction for the run; None means cluster-wide"""
        namespace = os.environ.get("PRUNE_NAMESPACE") or self.config["prune"].get("namespace") or ""
        return namespace or None

    # Analysis configuration
    def get_max_workers(self) -> int:
        """Get max workers from config, with type coercion"""
        return self._get_int("analysis", "max_workers", 4)

    def get_timeout(self) -> int:
        """Per-item timeout in seconds for confirm-phase deletions"""
        return self._get_int("analysis", "timeout", 300)

    def get_output_dir(self) -> str:
        """Get output directory from config"""
        return self.config["analysis"]["output_dir"]

    # Retry configuration
    def get_max_retries(self) -> int:
        return self._get_int("retry", "max_retries", 3)

    def get_retry_initial_delay(self) -> float:
        return self._get_float("retry", "initial_delay", 1.0)

    def get_retry_max_delay(self) -> float:
        return self._get_float("retry", "max_delay", 60.0)

    def get_retry_exponential_base(self) -> float:
        return self._get_float("retry", "exponential_base", 2.0)

    def get_retry_jitter(self) -> bool:
        return self._get_bool("retry", "jitter", True)

    # Storage probe
    def is_storage_probe_enabled(self) -> bool:
        return self._get_bool("storage", "probe_enabled", True)

    def is_unreferenced_sweep_enabled(self) -> bool:
        """Also collect blobs and links on disk that no image record references"""
        return self._get_bool("storage", "sweep_unreferenced", True)

    # Logging
    def get_log_level(self) -> str:
        return os.environ.get("LOG_LEVEL") or str(self.config.get("logging", {}).get("level", "INFO"))

    # Report configuration
    def _resolve_report_path(self, path: str) -> str:
        """Resolve report file path under the configured output_dir unless absolute or already a path."""
        if os.path.isabs(path) or os.path.basename(path) != path:
            return path
        return os.path.join(self.get_output_dir(), path)

    def get_prune_report_path(self) -> str:
        return self._resolve_report_path(self.config["reports"]["prune_report"])

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors = []
        warnings = []

        try:
            mongo_host = self.get_mongo_host()
            if not mongo_host or not str(mongo_host).strip():
                errors.append("MongoDB host is required and cannot be empty")

            mongo_port = self.get_mongo_port()
            if mongo_port < 1 or mongo_port > 65535:
                errors.append(f"MongoDB port must be an integer between 1 and 65535, got: {mongo_port}")

            if not self.get_mongo_db() or not str(self.get_mongo_db()).strip():
                errors.append("MongoDB database name is required and cannot be empty")

            if self.get_metadata_timeout() < 1:
                errors.append(f"metadata.timeout must be a positive integer (seconds), got: {self.get_metadata_timeout()}")

            registry_url = self.get_registry_url()
            if not registry_url or not registry_url.strip():
                errors.append("Registry URL is required and cannot be empty")
            elif not self._is_valid_registry_url(registry_url):
                warnings.append(f"Registry URL '{registry_url}' may be invalid (expected format: hostname[:port])")

            storage_root = self.get_storage_root()
            if not storage_root or not str(storage_root).strip():
                errors.append("registry.storage_root is required and cannot be empty")

            for namespace in self.get_workload_namespaces():
                if not self._is_valid_k8s_name(namespace):
                    errors.append(f"Namespace '{namespace}' is not a valid Kubernetes name")

            prune_namespace = self.get_prune_namespace()
            if prune_namespace and not self._is_valid_k8s_name(prune_namespace):
                errors.append(f"prune.namespace '{prune_namespace}' is not a valid Kubernetes name")

            keep_revisions = self.get_keep_tag_revisions()
            if keep_revisions < 0:
                errors.append(f"prune.keep_tag_revisions must be a non-negative integer, got: {keep_revisions}")

            if self.get_untagged_policy() not in UNTAGGED_POLICIES:
                errors.append(
                    f"prune.untagged_images must be one of {', '.join(UNTAGGED_POLICIES)}, "
                    f"got: {self.get_untagged_policy()}"
                )

            max_workers = self.get_max_workers()
            if max_workers < 1:
                errors.append(f"max_workers must be a positive integer, got: {max_workers}")
            elif max_workers > 100:
                warnings.append(f"max_workers is very high ({max_workers}), this may overwhelm the metadata API")

            timeout = self.get_timeout()
            if timeout < 1:
                errors.append(f"timeout must be a positive integer (seconds), got: {timeout}")

            output_dir = self.get_output_dir()
            if not output_dir or not str(output_dir).strip():
                errors.append("output_dir is required and cannot be empty")

            max_retries = self.get_max_retries()
            if max_retries < 0:
                errors.append(f"retry.max_retries must be a non-negative integer, got: {max_retries}")
            elif max_retries > 10:
                warnings.append(f"max_retries is very high ({max_retries}), operations may take a long time")

            initial_delay = self.get_retry_initial_delay()
            max_delay = self.get_retry_max_delay()
            if initial_delay < 0:
                errors.append(f"retry.initial_delay must be a non-negative number, got: {initial_delay}")
            if max_delay < initial_delay:
                errors.append(f"retry.max_delay ({max_delay}) must be >= retry.initial_delay ({initial_delay})")

            if self.get_retry_exponential_base() < 1.0:
                errors.append(f"retry.exponential_base must be >= 1.0, got: {self.get_retry_exponential_base()}")
        except ConfigValidationError as e:
            errors.append(str(e))

        for warning in warnings:
            logging.warning(f"Configuration warning: {warning}")

        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            logging.error(error_msg)
            raise ConfigValidationError(error_msg)

    def _is_valid_registry_url(self, url: str) -> bool:
        """Validate registry URL format"""
        url = url.replace("http://", "").replace("https://", "")
        pattern = r"^[a-zA-Z0-9]([a-zA-Z0-9\-\.]*[a-zA-Z0-9])?(:[0-9]{1,5})?$"
        return bool(re.match(pattern, url))

    def _is_valid_k8s_name(self, name: str) -> bool:
        """Validate Kubernetes resource name format"""
        pattern = r"^[a-z0-9]([a-z0-9\-]*[a-z0-9])?$"
        return bool(re.match(pattern, name)) and len(name) <= 253


# Global config manager instance
# Validation can be disabled by setting SKIP_CONFIG_VALIDATION=true environment variable
config_manager = ConfigManager(
    validate=os.environ.get("SKIP_CONFIG_VALIDATION", "").lower() not in ("true", "1", "yes")
)
