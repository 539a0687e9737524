"""Apply debounced file-change batches to an existing ProjectIndex."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .build_index import BuildOptions, FileError, IndexBuilder
from .cache import ParseCache
from .models import Block, ProjectIndex

logger = logging.getLogger(__name__)


@dataclass
class ChangeBatch:
    """Coalesced file paths from one debounce window."""

    changed: Set[str] = field(default_factory=set)
    created: Set[str] = field(default_factory=set)
    deleted: Set[str] = field(default_factory=set)

    def __post_init__(self):
        self.changed = set(self.changed)
        self.created = set(self.created)
        self.deleted = set(self.deleted)

    def is_empty(self) -> bool:
        return not (self.changed or self.created or self.deleted)

    def all_paths(self) -> Set[str]:
        return self.changed | self.created | self.deleted


@dataclass
class UpdateResult:
    updated_files: List[str] = field(default_factory=list)
    added_files: List[str] = field(default_factory=list)
    deleted_files: List[str] = field(default_factory=list)
    errors: List[FileError] = field(default_factory=list)


class IncrementalUpdater:
    """Patches ``index.blocks`` for a change batch and rebuilds the derived maps.

    Edges are not patched: ``index.refs`` is reset to None and the caller is
    expected to re-extract them.
    """

    def __init__(self, builder: IndexBuilder, cache: Optional[ParseCache] = None):
        self.builder = builder
        self.cache = cache if cache is not None else builder.cache

    def apply(
        self, index: ProjectIndex, batch: ChangeBatch, options: Optional[BuildOptions] = None
    ) -> UpdateResult:
        """Apply a batch to ``index`` in place.

        Args:
            index: Index to update
            batch: Changed, created and deleted paths
            options: Parse options; defaults to BuildOptions()

        Returns:
            UpdateResult listing what was touched and any per-file errors
        """
        options = options or BuildOptions()
        result = UpdateResult()

        # Module scopes each file was previously parsed in, in first-seen order
        scopes: Dict[str, List[Tuple[str, ...]]] = {}
        for block in index.blocks:
            file_scopes = scopes.setdefault(block.file, [])
            if block.module_path not in file_scopes:
                file_scopes.append(block.module_path)

        deleted = sorted(batch.deleted)
        if deleted:
            deleted_set = set(deleted)
            index.blocks = [b for b in index.blocks if b.file not in deleted_set]
            for file_path in deleted:
                if self.cache is not None:
                    self.cache.evict(file_path)
                result.deleted_files.append(file_path)
            logger.debug(f"Removed blocks for {len(deleted)} deleted files")

        to_parse = sorted((batch.changed | batch.created) - batch.deleted)
        for file_path in to_parse:
            new_blocks, errors = self._reparse(file_path, scopes.get(file_path) or [()], options)
            result.errors.extend(errors)

            index.blocks = [b for b in index.blocks if b.file != file_path]
            index.blocks.extend(new_blocks)

            if file_path in batch.created and file_path not in scopes:
                result.added_files.append(file_path)
            else:
                result.updated_files.append(file_path)

        index.rebuild_maps()
        index.refs = None

        logger.info(
            f"Incremental update: {len(result.updated_files)} updated, "
            f"{len(result.added_files)} added, {len(result.deleted_files)} deleted, "
            f"{len(result.errors)} errors"
        )
        return result

    def _reparse(
        self, file_path: str, scopes: Iterable[Tuple[str, ...]], options: BuildOptions
    ) -> Tuple[List[Block], List[FileError]]:
        blocks: List[Block] = []
        errors: List[FileError] = []

        for scope in scopes:
            try:
                parsed = self.builder.parse_file(file_path, options, scope)
            except Exception as e:
                # unreadable now: the file's old blocks are dropped with nothing in their place
                logger.warning(f"Failed to reparse {file_path}: {e}")
                return [], [FileError(file=file_path, error=f"Failed to process file: {e}")]

            blocks.extend(parsed.blocks)
            if errors:
                # the same text produces the same errors in every scope
                continue
            errors.extend(FileError(file=file_path, error=err.message) for err in parsed.errors)

        return blocks, errors
