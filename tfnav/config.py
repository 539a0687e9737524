"""Environment-driven configuration."""

import os
from pathlib import Path
from typing import Any, Dict, List

from .indexer.build_index import BuildOptions
from .indexer.files import DEFAULT_IGNORE_PATTERNS


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def get_env_config() -> Dict[str, Any]:
    """Get configuration from environment variables."""
    return {
        "workspace_path": os.getenv("WORKSPACE_PATH", "."),
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
        "log_file": os.getenv("LOG_FILE", "/tmp/tfnav-server.log"),
        "ignore_patterns": _list("IGNORE_PATTERNS", DEFAULT_IGNORE_PATTERNS),
        "include_terraform_cache": _flag("INCLUDE_TERRAFORM_CACHE", "false"),
        "include_data_sources": _flag("INCLUDE_DATA_SOURCES", "true"),
        "include_variables": _flag("INCLUDE_VARIABLES", "true"),
        "include_outputs": _flag("INCLUDE_OUTPUTS", "true"),
        "include_locals": _flag("INCLUDE_LOCALS", "true"),
        "expand_modules": _flag("EXPAND_MODULES", "false"),
        "enable_watcher": _flag("ENABLE_FILE_WATCHER", "true"),
        "watcher_debounce": float(os.getenv("WATCHER_DEBOUNCE_SECONDS", "0.25")),
        "worker_threshold": int(os.getenv("WORKER_THRESHOLD", "500")),
        "worker_cancel_timeout": float(os.getenv("WORKER_CANCEL_TIMEOUT_SECONDS", "1.0")),
        "cache_max_entries": int(os.getenv("CACHE_MAX_ENTRIES", "1000")),
        "cache_max_age": float(os.getenv("CACHE_MAX_AGE_SECONDS", "600")),
        "continue_on_error": _flag("CONTINUE_ON_ERROR", "true"),
        "state_path": Path(os.getenv("STATE_PATH", ".tfnav")),
    }


def build_options_from_config(config: Dict[str, Any]) -> BuildOptions:
    return BuildOptions(
        include_data_sources=config["include_data_sources"],
        include_variables=config["include_variables"],
        include_outputs=config["include_outputs"],
        include_locals=config["include_locals"],
        continue_on_error=config["continue_on_error"],
        expand_modules=config["expand_modules"],
    )
