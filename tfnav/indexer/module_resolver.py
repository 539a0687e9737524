"""Resolve Terraform module sources to local directories."""

import json
import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

TERRAFORM_DIR = ".terraform"
MODULES_MANIFEST = os.path.join("modules", "modules.json")
SKIP_DIRS = {".terraform", ".git", "node_modules"}
TERRAFORM_SUFFIXES = (".tf", ".tf.json")


@dataclass
class ModuleResolution:
    """Outcome of resolving one module source string."""

    resolved: bool
    resolution_type: str  # local | registry | git | unknown
    module_path: Optional[str] = None
    error: Optional[str] = None


def is_local_source(source: str) -> bool:
    return source.startswith("./") or source.startswith("../") or source.startswith("/")


def module_scope(parent_scope: Tuple[str, ...], name: str) -> Tuple[str, ...]:
    """Module path of blocks declared inside module ``name`` nested in ``parent_scope``."""
    return tuple(parent_scope) + (f"module.{name}",)


class ModuleResolver:
    """Resolves module ``source`` strings against the filesystem.

    Local paths are resolved relative to the declaring directory. Anything
    else is looked up in the ``.terraform/modules/modules.json`` manifest
    written by ``terraform init``; sources that are found in neither place
    are classified but left unresolved.
    """

    def resolve(self, source: str, base_dir: str) -> ModuleResolution:
        """Resolve a module source.

        Args:
            source: The module block's ``source`` value
            base_dir: Directory of the file declaring the module

        Returns:
            ModuleResolution; unresolved outcomes carry a descriptive error
        """
        logger.debug(f"Resolving module source {source!r} from {base_dir}")

        if is_local_source(source):
            try:
                resolved_path = os.path.abspath(os.path.join(base_dir, source))
            except Exception as e:
                return ModuleResolution(
                    resolved=False,
                    resolution_type="local",
                    error=f"Failed to resolve local path: {e}",
                )
            if os.path.isdir(resolved_path):
                return ModuleResolution(
                    resolved=True, resolution_type="local", module_path=resolved_path
                )
            return ModuleResolution(
                resolved=False,
                resolution_type="local",
                error=f"Module directory does not exist: {resolved_path}",
            )

        cached = self._resolve_from_manifest(source, base_dir)
        if cached is not None:
            return cached

        if source.startswith("git::") or "://" in source:
            return ModuleResolution(
                resolved=False,
                resolution_type="git",
                error="Git modules cannot be resolved locally without terraform init",
            )

        if "/" in source:
            return ModuleResolution(
                resolved=False,
                resolution_type="registry",
                error="Registry modules cannot be resolved locally without terraform init",
            )

        return ModuleResolution(
            resolved=False,
            resolution_type="unknown",
            error=f"Unknown module source format: {source}",
        )

    def find_terraform_dir(self, base_dir: str) -> Optional[str]:
        """Walk upward from ``base_dir`` to the nearest ``.terraform`` directory."""
        current = os.path.abspath(base_dir)
        while True:
            candidate = os.path.join(current, TERRAFORM_DIR)
            if os.path.isdir(candidate):
                return candidate
            parent = os.path.dirname(current)
            if parent == current:
                return None
            current = parent

    def _resolve_from_manifest(self, source: str, base_dir: str) -> Optional[ModuleResolution]:
        terraform_dir = self.find_terraform_dir(base_dir)
        if terraform_dir is None:
            return None

        manifest_path = os.path.join(terraform_dir, MODULES_MANIFEST)
        if not os.path.isfile(manifest_path):
            return None

        try:
            with open(manifest_path, "r", encoding="utf-8") as f:
                manifest = json.load(f)
            modules = manifest.get("Modules") or []
        except Exception as e:
            logger.warning(f"Failed to read Terraform modules manifest {manifest_path}: {e}")
            return None

        root_dir = os.path.dirname(terraform_dir)
        for record in modules:
            if not isinstance(record, dict):
                continue
            if record.get("Source") != source and record.get("Key") != source:
                continue

            module_dir = record.get("Dir") or ""
            # terraform writes Dir relative to the working directory holding .terraform
            for candidate in (
                os.path.join(root_dir, module_dir),
                os.path.join(terraform_dir, "modules", module_dir),
            ):
                candidate = os.path.abspath(candidate)
                if os.path.isdir(candidate):
                    return ModuleResolution(
                        resolved=True,
                        resolution_type=self._classify_cached(record.get("Source") or ""),
                        module_path=candidate,
                    )
            logger.debug(f"Manifest entry for {source!r} points at missing directory {module_dir}")

        return None

    @staticmethod
    def _classify_cached(source: str) -> str:
        if "://" in source or source.startswith("git::"):
            return "git"
        if "/" in source and not is_local_source(source):
            return "registry"
        return "local"

    def find_module_files(self, module_dir: str) -> List[str]:
        """Recursively collect ``.tf``/``.tf.json`` files under a module directory.

        Cache, VCS and dependency directories are skipped; unreadable
        directories are logged and skipped.
        """
        files: List[str] = []

        def on_error(error: OSError) -> None:
            logger.warning(f"Failed to scan directory {error.filename}: {error}")

        for root, dirs, names in os.walk(module_dir, onerror=on_error):
            dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS)
            for name in names:
                if name.endswith(TERRAFORM_SUFFIXES):
                    files.append(os.path.abspath(os.path.join(root, name)))

        return sorted(files)
