"""Indexing session: one workspace's index and the components that maintain it."""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from ..graph.refs import ReferenceExtractor

from .build_index import BuildOptions, BuildResult, FileError, IndexBuilder
from .cache import DEFAULT_MAX_AGE_SECONDS, DEFAULT_MAX_ENTRIES, CacheStats, ParseCache
from .file_state import FileStateTracker
from .file_watcher import DEFAULT_DEBOUNCE_SECONDS, TerraformWatcher
from .files import find_terraform_files
from .files import read_text as default_read_text
from .incremental import ChangeBatch, IncrementalUpdater, UpdateResult
from .models import ProjectIndex
from .module_resolver import ModuleResolver
from .parser import ParserRegistry
from .worker import (
    DEFAULT_CANCEL_TIMEOUT,
    DEFAULT_WORKER_THRESHOLD,
    BuildCancelledError,
    WorkerManager,
)

logger = logging.getLogger(__name__)

EVENTS = ("index_built", "files_updated", "files_added", "files_deleted", "parse_errors")

Listener = Callable[[Any], None]


def _module_signature(index: ProjectIndex) -> Set[Tuple[Tuple[str, ...], Optional[str], Optional[str]]]:
    return {
        (b.module_path, b.name, b.source_expr)
        for b in index.by_type.get("module", [])
    }


class IndexingSession:
    """Owns the parse cache, parser registry, resolver, builder, updater,
    reference extractor and worker manager for one set of workspace roots.

    ``index`` is replaced, never mutated in place, so readers holding a
    reference always see a consistent snapshot.
    """

    def __init__(
        self,
        roots: Union[str, Iterable[str]],
        options: Optional[BuildOptions] = None,
        ignore_patterns: Optional[List[str]] = None,
        include_terraform_cache: bool = False,
        cache: Optional[ParseCache] = None,
        registry: Optional[ParserRegistry] = None,
        resolver: Optional[ModuleResolver] = None,
        worker_threshold: int = DEFAULT_WORKER_THRESHOLD,
        cancel_timeout: float = DEFAULT_CANCEL_TIMEOUT,
        cache_max_entries: int = DEFAULT_MAX_ENTRIES,
        cache_max_age: float = DEFAULT_MAX_AGE_SECONDS,
        state_path: Optional[Path] = None,
        read_text: Callable[[str], str] = default_read_text,
    ):
        if isinstance(roots, str):
            roots = [roots]
        self.roots = [str(Path(r).resolve()) for r in roots]
        self.options = options or BuildOptions(continue_on_error=True)
        self.ignore_patterns = ignore_patterns
        self.include_terraform_cache = include_terraform_cache

        self.cache = cache if cache is not None else ParseCache(cache_max_entries, cache_max_age)
        self.registry = registry or ParserRegistry()
        self.resolver = resolver or ModuleResolver()
        self.extractor = ReferenceExtractor(read_text)
        self.builder = IndexBuilder(self.registry, self.cache, self.resolver, self.extractor, read_text)
        self.updater = IncrementalUpdater(self.builder, self.cache)
        self.worker_manager = WorkerManager(self.builder, worker_threshold, cancel_timeout)
        self.state = FileStateTracker(state_path) if state_path is not None else None

        self.index = ProjectIndex.empty()
        self.last_build: Optional[BuildResult] = None
        self.last_errors: List[FileError] = []
        # files the index has processed, including ones with no blocks or errors
        self.known_files: Set[str] = set()
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in EVENTS}

    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        """Subscribe to a session event.

        Returns:
            A function that removes the subscription
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown event: {event}")
        self._listeners[event].append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        return unsubscribe

    def _emit(self, event: str, payload: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Error in {event} listener: {e}", exc_info=True)

    def discover_files(self) -> List[str]:
        return find_terraform_files(self.roots, self.ignore_patterns, self.include_terraform_cache)

    async def start(self) -> BuildResult:
        """Build the initial index."""
        logger.info(f"Starting indexing session for {', '.join(self.roots)}")
        return await self.rebuild_index()

    async def rebuild_index(self, on_progress=None) -> BuildResult:
        """Discover files and build a fresh index.

        Raises:
            BuildCancelledError: superseded by a newer build; the index is left as is
            WorkerBuildError: the build failed; the index is reset to empty
        """
        files = self.discover_files()
        try:
            result = await self.worker_manager.build_index(files, self.options, on_progress)
        except BuildCancelledError:
            logger.info("Index build superseded by a newer build")
            raise
        except Exception as e:
            logger.error(f"Index build failed: {e}", exc_info=True)
            self.index = ProjectIndex.empty()
            raise

        self.index = result.index
        self.last_build = result
        self.last_errors = list(result.errors)
        self.known_files = set(result.stats.block_file_counts) | {e.file for e in result.errors}

        if self.state is not None:
            self.state.record_index(result.stats.block_file_counts)

        self._emit("index_built", result)
        if result.errors:
            self._emit("parse_errors", result.errors)
        return result

    def _needs_rebuild(self, before: ProjectIndex, after: ProjectIndex, batch: ChangeBatch) -> bool:
        if not self.options.expand_modules:
            return False
        # new files may belong to an expanded module's scope
        return bool(batch.created) or _module_signature(before) != _module_signature(after)

    async def process_changes(self, batch: ChangeBatch) -> UpdateResult:
        """Apply a change batch, re-extract edges and notify listeners.

        Raises:
            Exception: whatever stopped the update; the index is reset to empty
        """
        if batch.is_empty():
            return UpdateResult()

        for file_path in batch.all_paths():
            self.cache.evict(file_path)

        before = self.index
        working = ProjectIndex(blocks=list(before.blocks))
        try:
            result = self.updater.apply(working, batch, self.options)
        except Exception as e:
            logger.error(f"Error processing file changes: {e}", exc_info=True)
            self.index = ProjectIndex.empty()
            raise

        if self._needs_rebuild(before, working, batch):
            logger.info("Module layout changed, rebuilding index")
            await self.rebuild_index()
            self._notify(result)
            return result

        try:
            working.refs = self.extractor.extract(working)
        except Exception as e:
            logger.error(f"Error extracting references: {e}", exc_info=True)
            self.index = ProjectIndex.empty()
            raise

        self.index = working
        self.last_errors = list(result.errors)
        self.known_files.difference_update(result.deleted_files)
        self.known_files.update(result.updated_files + result.added_files)
        self._record_state(result)
        self._notify(result)
        return result

    def _record_state(self, result: UpdateResult) -> None:
        if self.state is None:
            return
        for file_path in result.deleted_files:
            self.state.remove_file_record(file_path)
        for file_path in result.updated_files + result.added_files:
            self.state.update_file_record(file_path, len(self.index.by_file.get(file_path, [])))
        self.state.commit()

    def _notify(self, result: UpdateResult) -> None:
        if result.updated_files:
            self._emit("files_updated", result.updated_files)
        if result.added_files:
            self._emit("files_added", result.added_files)
        if result.deleted_files:
            self._emit("files_deleted", result.deleted_files)
        if result.errors:
            self._emit("parse_errors", result.errors)

    async def rescan(self) -> UpdateResult:
        """Rediscover files and apply only the differences to the index.

        Content hashes from the file-state tracker let unchanged files be
        skipped; without a tracker every known file is treated as changed.
        """
        files = self.discover_files()
        current = set(files)
        known = set(self.known_files)

        if self.state is not None:
            to_index, to_remove = self.state.plan_incremental_update(files)
        else:
            to_index, to_remove = files, []

        batch = ChangeBatch(
            changed={p for p in to_index if p in known},
            created=current - known,
            deleted=(set(to_remove) | known) - current,
        )
        logger.info(
            f"Rescan: {len(batch.changed)} changed, {len(batch.created)} new, "
            f"{len(batch.deleted)} removed"
        )
        return await self.process_changes(batch)

    def create_watcher(self, debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS) -> TerraformWatcher:
        """Create a watcher over the session roots that feeds ``process_changes``."""
        return TerraformWatcher(
            self.roots,
            self.process_changes,
            debounce_seconds=debounce_seconds,
            include_terraform_cache=self.include_terraform_cache,
            ignore_patterns=self.ignore_patterns,
        )

    def get_current_index(self) -> ProjectIndex:
        return self.index

    def get_cache_stats(self) -> CacheStats:
        return self.cache.get_stats()

    async def dispose(self) -> None:
        await self.worker_manager.dispose()
