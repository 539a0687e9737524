"""Index builder for Terraform projects."""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

from ..graph.refs import ReferenceExtractor

from .cache import ParseCache
from .files import read_text as default_read_text
from .models import Block, ParseResult, ParserConfig, ProjectIndex
from .module_resolver import ModuleResolver, module_scope
from .parser import ParserRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]

DEFAULT_MAX_MODULE_DEPTH = 10


@dataclass
class BuildOptions(ParserConfig):
    """Parser filters plus build behaviour.

    Holds plain values only so it can be sent to a worker process.
    """

    continue_on_error: bool = False
    max_files: Optional[int] = None
    expand_modules: bool = False
    max_module_depth: int = DEFAULT_MAX_MODULE_DEPTH

    def parser_config(self, module_path: Tuple[str, ...] = ()) -> ParserConfig:
        return ParserConfig(
            include_data_sources=self.include_data_sources,
            include_variables=self.include_variables,
            include_outputs=self.include_outputs,
            include_locals=self.include_locals,
            module_path=tuple(module_path),
            use_cache=self.use_cache,
        )


@dataclass
class FileError:
    """A per-file failure recorded during a build or update."""

    file: str
    error: str


@dataclass
class BuildStats:
    files_processed: int = 0
    files_with_errors: int = 0
    total_blocks: int = 0
    block_type_counts: Dict[str, int] = field(default_factory=dict)
    block_file_counts: Dict[str, int] = field(default_factory=dict)
    build_time_ms: int = 0
    build_start_time: Optional[datetime] = None
    build_end_time: Optional[datetime] = None


@dataclass
class BuildResult:
    index: ProjectIndex
    stats: BuildStats
    errors: List[FileError] = field(default_factory=list)
    cancelled: bool = False


class IndexBuilder:
    """Builds a ProjectIndex from a list of Terraform files.

    The parser registry, parse cache and module resolver are injected so
    that one session's components can be shared between the initial build
    and later incremental updates.
    """

    def __init__(
        self,
        registry: Optional[ParserRegistry] = None,
        cache: Optional[ParseCache] = None,
        resolver: Optional[ModuleResolver] = None,
        extractor: Optional[ReferenceExtractor] = None,
        read_text: Callable[[str], str] = default_read_text,
    ):
        self.registry = registry or ParserRegistry()
        self.cache = cache
        self.resolver = resolver or ModuleResolver()
        self.read_text = read_text
        self.extractor = extractor or ReferenceExtractor(read_text)

    def parse_file(
        self, file_path: str, options: BuildOptions, module_path: Tuple[str, ...] = ()
    ) -> ParseResult:
        """Read and parse one file in the given module scope.

        Raises:
            OSError, UnicodeDecodeError: if the file cannot be read
        """
        content = self.read_text(file_path)
        return self.registry.parse_file(
            file_path,
            content,
            options.parser_config(module_path),
            cache=self.cache if options.use_cache else None,
        )

    def build(
        self,
        files: Sequence[str],
        options: Optional[BuildOptions] = None,
        progress_callback: Optional[ProgressCallback] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> BuildResult:
        """Build a complete index.

        Args:
            files: Absolute file paths, in processing order
            options: Build options
            progress_callback: Called as (processed, total, current_file)
                before each file and once more as (total, total, "Complete")
            should_cancel: Polled before each file; a True result stops the
                build and marks the result cancelled

        Returns:
            BuildResult with the index (maps sorted, refs extracted), stats
            and per-file errors
        """
        options = options or BuildOptions()
        start_time = datetime.now()
        start = time.perf_counter()

        files_to_process = list(files[: options.max_files] if options.max_files else files)
        total = len(files_to_process)
        stats = BuildStats(build_start_time=start_time, build_end_time=start_time)
        errors: List[FileError] = []
        blocks: List[Block] = []
        parsed_files: List[str] = []
        cancelled = False
        stopped = False

        logger.info(f"Building index for {total} files")

        for i, file_path in enumerate(files_to_process):
            if should_cancel is not None and should_cancel():
                logger.info(f"Build cancelled after {i} of {total} files")
                cancelled = True
                break

            if progress_callback:
                progress_callback(i, total, file_path)

            if not self._process_file(file_path, options, (), blocks, parsed_files, stats, errors):
                if not options.continue_on_error:
                    stopped = True
                    break

        if options.expand_modules and not (cancelled or stopped):
            blocks = self._expand_modules(blocks, options, parsed_files, stats, errors)

        index = ProjectIndex(blocks=blocks)
        index.rebuild_maps()

        if cancelled:
            index.refs = []
        else:
            index.refs = self.extractor.extract(index)

        stats.total_blocks = len(blocks)
        stats.block_type_counts = get_block_type_counts(index)
        stats.block_file_counts = {path: 0 for path in parsed_files}
        stats.block_file_counts.update(get_file_block_counts(index))
        stats.build_time_ms = round((time.perf_counter() - start) * 1000)
        stats.build_end_time = datetime.now()

        if progress_callback and not cancelled:
            progress_callback(total, total, "Complete")

        logger.info(
            f"Index built: {stats.total_blocks} blocks from {stats.files_processed} files "
            f"in {stats.build_time_ms}ms ({len(index.refs)} reference edges, "
            f"{len(errors)} errors)"
        )

        return BuildResult(index=index, stats=stats, errors=errors, cancelled=cancelled)

    def _process_file(
        self,
        file_path: str,
        options: BuildOptions,
        module_path: Tuple[str, ...],
        blocks: List[Block],
        parsed_files: List[str],
        stats: BuildStats,
        errors: List[FileError],
    ) -> bool:
        """Parse one file into ``blocks``. Returns False if the file had errors.

        When the file has errors and the build is not continuing on error,
        its blocks are not added.
        """
        try:
            logger.debug(f"Parsing: {file_path}")
            result = self.parse_file(file_path, options, module_path)
        except Exception as e:
            stats.files_with_errors += 1
            errors.append(FileError(file=file_path, error=f"Failed to process file: {e}"))
            logger.warning(f"Failed to process {file_path}: {e}")
            return False

        stats.files_processed += 1

        if result.errors:
            stats.files_with_errors += 1
            for parse_error in result.errors:
                errors.append(FileError(file=file_path, error=parse_error.message))
            if not options.continue_on_error:
                return False

        blocks.extend(result.blocks)
        if file_path not in parsed_files:
            parsed_files.append(file_path)
        return not result.errors

    def _expand_modules(
        self,
        blocks: List[Block],
        options: BuildOptions,
        parsed_files: List[str],
        stats: BuildStats,
        errors: List[FileError],
    ) -> List[Block]:
        """Parse the files of every resolvable module in its nested module scope.

        Expansion starts from module blocks whose file is not itself inside a
        module directory. Root-scope copies of files that live in an expanded
        module directory are dropped, since the same declarations now appear
        in module scope.
        """
        module_dirs: Set[str] = set()
        for b in blocks:
            if b.block_kind == "module" and b.source_expr:
                resolution = self.resolver.resolve(
                    b.source_expr, os.path.dirname(os.path.abspath(b.file))
                )
                if resolution.resolved:
                    module_dirs.add(os.path.abspath(resolution.module_path))

        queue: List[Tuple[Block, FrozenSet[str]]] = [
            (b, frozenset([os.path.dirname(os.path.abspath(b.file))]))
            for b in blocks
            if b.block_kind == "module" and not _in_any_dir(b.file, module_dirs)
        ]
        expanded_dirs: Set[str] = set()
        expanded_scopes: Set[Tuple[str, ...]] = set()

        while queue:
            module_block, ancestors = queue.pop(0)
            if not module_block.source_expr or not module_block.name:
                continue

            scope = module_scope(module_block.module_path, module_block.name)
            if scope in expanded_scopes:
                continue
            if len(scope) > options.max_module_depth:
                logger.warning(f"Not expanding {'.'.join(scope)}: module depth limit reached")
                continue

            resolution = self.resolver.resolve(
                module_block.source_expr, os.path.dirname(os.path.abspath(module_block.file))
            )
            if not resolution.resolved:
                logger.debug(f"Module {'.'.join(scope)} not expanded: {resolution.error}")
                continue

            module_dir = os.path.abspath(resolution.module_path)
            if module_dir in ancestors:
                logger.warning(f"Module cycle detected at {'.'.join(scope)} ({module_dir})")
                continue

            expanded_scopes.add(scope)
            expanded_dirs.add(module_dir)
            logger.debug(f"Expanding {'.'.join(scope)} from {module_dir}")

            module_blocks: List[Block] = []
            for file_path in self.resolver.find_module_files(module_dir):
                ok = self._process_file(
                    file_path, options, scope, module_blocks, parsed_files, stats, errors
                )
                if not ok and not options.continue_on_error:
                    break

            blocks.extend(module_blocks)
            queue.extend(
                (b, ancestors | {module_dir}) for b in module_blocks if b.block_kind == "module"
            )

        if not expanded_dirs:
            return blocks

        kept = [b for b in blocks if b.module_path or not _in_any_dir(b.file, expanded_dirs)]
        logger.info(
            f"Expanded {len(expanded_scopes)} modules; dropped {len(blocks) - len(kept)} "
            "root-scope duplicates"
        )
        return kept


def _in_any_dir(file_path: str, directories: Set[str]) -> bool:
    path = os.path.abspath(file_path)
    return any(path.startswith(d.rstrip(os.sep) + os.sep) for d in directories)


def build_index(
    files: Sequence[str],
    options: Optional[BuildOptions] = None,
    progress_callback: Optional[ProgressCallback] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
    cache: Optional[ParseCache] = None,
) -> BuildResult:
    """Build an index with a fresh builder."""
    return IndexBuilder(cache=cache).build(files, options, progress_callback, should_cancel)


def get_block_type_counts(index: ProjectIndex) -> Dict[str, int]:
    return {block_kind: len(blocks) for block_kind, blocks in index.by_type.items()}


def get_file_block_counts(index: ProjectIndex) -> Dict[str, int]:
    return {file_path: len(blocks) for file_path, blocks in index.by_file.items()}


def find_blocks(
    index: ProjectIndex,
    block_kind: Optional[str] = None,
    provider: Optional[str] = None,
    kind: Optional[str] = None,
    name: Optional[str] = None,
    file: Optional[str] = None,
) -> List[Block]:
    """Find blocks matching every given criterion."""
    blocks = index.blocks
    if block_kind:
        blocks = [b for b in blocks if b.block_kind == block_kind]
    if provider:
        blocks = [b for b in blocks if b.provider_hint == provider]
    if kind:
        blocks = [b for b in blocks if b.kind == kind]
    if name:
        blocks = [b for b in blocks if b.name == name]
    if file:
        blocks = [b for b in blocks if b.file == file]
    return list(blocks)


def create_index_summary(index: ProjectIndex) -> str:
    """Human-readable summary of block counts by type and by file."""
    lines = [f"Total blocks: {len(index.blocks)}", "", "Blocks by type:"]
    for block_kind, count in sorted(get_block_type_counts(index).items()):
        lines.append(f"  {block_kind}: {count}")

    lines.append("")
    lines.append("Blocks by file:")
    for file_path, count in sorted(get_file_block_counts(index).items()):
        lines.append(f"  {os.path.basename(file_path)}: {count}")

    return "\n".join(lines)
