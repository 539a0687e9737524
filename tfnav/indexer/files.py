"""Terraform file discovery and raw text reads."""

import fnmatch
import logging
import os
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_PATTERNS = ["**/.terraform/**"]
TERRAFORM_CACHE_PATTERNS = ["**/.terraform/**", "**/.terraform/*"]
TERRAFORM_SUFFIXES = (".tf", ".tf.json")


def is_terraform_file(file_path: str) -> bool:
    return file_path.endswith(TERRAFORM_SUFFIXES)


def read_text(file_path: str) -> str:
    """Read a file as UTF-8 text with line endings preserved.

    Block ranges are character offsets into exactly this string.
    """
    with open(file_path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def effective_ignore_patterns(
    ignore_patterns: Optional[Iterable[str]] = None, include_terraform_cache: bool = False
) -> List[str]:
    """Combine configured ignore globs with the Terraform cache toggle."""
    patterns = list(DEFAULT_IGNORE_PATTERNS if ignore_patterns is None else ignore_patterns)

    if include_terraform_cache:
        return [p for p in patterns if ".terraform" not in p]

    for pattern in TERRAFORM_CACHE_PATTERNS:
        if pattern not in patterns:
            patterns.append(pattern)
    return patterns


def is_ignored(relative_path: str, patterns: List[str]) -> bool:
    # Anchor with a leading slash so "**/" also matches at the root
    candidates = (relative_path, "/" + relative_path)
    return any(fnmatch.fnmatchcase(c, p) for p in patterns for c in candidates)


def find_terraform_files(
    roots: Iterable[str],
    ignore_patterns: Optional[Iterable[str]] = None,
    include_terraform_cache: bool = False,
) -> List[str]:
    """Find all ``.tf`` and ``.tf.json`` files under the given roots.

    Args:
        roots: Workspace directories to scan
        ignore_patterns: Glob patterns matched against root-relative paths
        include_terraform_cache: Whether ``.terraform`` directories are scanned

    Returns:
        Sorted, de-duplicated absolute paths
    """
    patterns = effective_ignore_patterns(ignore_patterns, include_terraform_cache)
    logger.debug(f"Ignore patterns: {patterns}")

    found = set()
    for root in roots:
        root = os.path.abspath(root)
        if not os.path.isdir(root):
            logger.warning(f"Workspace root is not a directory: {root}")
            continue

        logger.info(f"Scanning workspace: {root}")

        def on_error(error: OSError) -> None:
            logger.warning(f"Cannot read directory {error.filename}: {error}")

        count = 0
        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            kept = []
            for dirname in dirnames:
                if dirname == ".git":
                    continue
                if dirname == ".terraform" and not include_terraform_cache:
                    continue
                rel_dir = os.path.relpath(os.path.join(dirpath, dirname), root).replace(os.sep, "/")
                if is_ignored(rel_dir + "/", patterns):
                    continue
                kept.append(dirname)
            dirnames[:] = kept

            for filename in filenames:
                if not is_terraform_file(filename):
                    continue
                full_path = os.path.join(dirpath, filename)
                rel_path = os.path.relpath(full_path, root).replace(os.sep, "/")
                if is_ignored(rel_path, patterns):
                    continue
                logger.debug(f"Discovered {rel_path}")
                found.add(os.path.abspath(full_path))
                count += 1

        logger.info(f"Found {count} Terraform files in {root}")

    files = sorted(found)
    logger.info(f"Total Terraform files discovered: {len(files)}")
    return files
