"""File system watcher delivering debounced Terraform change batches."""

import asyncio
import logging
import os
import threading
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .files import effective_ignore_patterns, is_ignored, is_terraform_file
from .incremental import ChangeBatch

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.25

ChangeCallback = Callable[[ChangeBatch], Awaitable[None]]


class TerraformFileEventHandler(FileSystemEventHandler):
    """Accumulates coalesced changed/created/deleted Terraform paths.

    Events arrive on the observer thread; the pending sets are guarded by a
    lock and drained by the debounce processor on the event loop. Paths are
    filtered with the same ignore globs as workspace discovery, matched
    against the path relative to each watched root.
    """

    def __init__(
        self,
        include_terraform_cache: bool = False,
        clock: Callable[[], float] = time.monotonic,
        roots: Optional[Iterable[str]] = None,
        ignore_patterns: Optional[Iterable[str]] = None,
    ):
        """Initialize the handler.

        Args:
            include_terraform_cache: Whether ``.terraform`` paths are reported
            clock: Monotonic time source, injectable for tests
            roots: Watched roots that ignore globs are relative to
            ignore_patterns: Discovery ignore globs; None uses the defaults
        """
        super().__init__()
        self.include_terraform_cache = include_terraform_cache
        self._clock = clock
        self._lock = threading.Lock()

        self.roots = [os.path.abspath(r) for r in roots or []]
        self.ignore_patterns = effective_ignore_patterns(ignore_patterns, include_terraform_cache)

        self.changed_files = set()
        self.created_files = set()
        self.deleted_files = set()
        self.last_change_time = 0.0

        self.exclude_dirs = {".git", "node_modules"}
        if not include_terraform_cache:
            self.exclude_dirs.add(".terraform")

    def _is_ignored(self, file_path: str) -> bool:
        path = os.path.abspath(file_path)
        for root in self.roots:
            if not path.startswith(root.rstrip(os.sep) + os.sep):
                continue
            relative_path = os.path.relpath(path, root).replace(os.sep, "/")
            if is_ignored(relative_path, self.ignore_patterns):
                return True
        return False

    def _should_process_file(self, file_path: str) -> bool:
        path = Path(file_path)
        if any(part in self.exclude_dirs for part in path.parts):
            return False
        if not is_terraform_file(path.name):
            return False
        return not self._is_ignored(file_path)

    def _touch(self) -> None:
        self.last_change_time = self._clock()

    def record_changed(self, file_path: str) -> None:
        with self._lock:
            # a file created in this window stays "created"
            if file_path not in self.created_files:
                self.deleted_files.discard(file_path)
                self.changed_files.add(file_path)
            self._touch()

    def record_created(self, file_path: str) -> None:
        with self._lock:
            if file_path in self.deleted_files:
                # deleted then recreated within one window: net change
                self.deleted_files.discard(file_path)
                self.changed_files.add(file_path)
            elif file_path not in self.changed_files:
                self.created_files.add(file_path)
            self._touch()

    def record_deleted(self, file_path: str) -> None:
        with self._lock:
            self.changed_files.discard(file_path)
            if file_path in self.created_files:
                # created then deleted within one window: nothing to report
                self.created_files.discard(file_path)
            else:
                self.deleted_files.add(file_path)
            self._touch()

    def on_modified(self, event: FileSystemEvent) -> None:
        """Record a modified Terraform file as changed."""
        if event.is_directory or not self._should_process_file(event.src_path):
            return
        logger.debug(f"File modified: {event.src_path}")
        self.record_changed(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        """Record a new Terraform file as created."""
        if event.is_directory or not self._should_process_file(event.src_path):
            return
        logger.debug(f"File created: {event.src_path}")
        self.record_created(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Record a removed Terraform file as deleted."""
        if event.is_directory or not self._should_process_file(event.src_path):
            return
        logger.debug(f"File deleted: {event.src_path}")
        self.record_deleted(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle a move as delete + create."""
        if event.is_directory:
            return

        if self._should_process_file(event.src_path):
            logger.debug(f"File moved from: {event.src_path}")
            self.record_deleted(event.src_path)

        dest_path = getattr(event, "dest_path", None)
        if dest_path and self._should_process_file(dest_path):
            logger.debug(f"File moved to: {dest_path}")
            self.record_created(dest_path)

    def get_pending_changes(self) -> ChangeBatch:
        """Get pending changes as one batch and clear the buffers."""
        with self._lock:
            batch = ChangeBatch(
                changed=set(self.changed_files),
                created=set(self.created_files),
                deleted=set(self.deleted_files),
            )
            self.changed_files.clear()
            self.created_files.clear()
            self.deleted_files.clear()
        return batch

    def has_pending_changes(self) -> bool:
        with self._lock:
            return bool(self.changed_files or self.created_files or self.deleted_files)

    def time_since_last_change(self) -> float:
        return self._clock() - self.last_change_time


class TerraformWatcher:
    """Watches workspace roots and delivers one ChangeBatch per quiet period."""

    def __init__(
        self,
        watch_paths: Union[str, Iterable[str]],
        on_change_callback: ChangeCallback,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        recursive: bool = True,
        include_terraform_cache: bool = False,
        ignore_patterns: Optional[Iterable[str]] = None,
    ):
        """Initialize the watcher.

        Args:
            watch_paths: Directory or directories to watch
            on_change_callback: Async callback receiving each ChangeBatch
            debounce_seconds: Quiet period required before a batch is delivered
            recursive: Whether to watch subdirectories recursively
            include_terraform_cache: Whether ``.terraform`` changes are reported
            ignore_patterns: Globs, relative to the watched paths, to skip
        """
        if isinstance(watch_paths, str):
            watch_paths = [watch_paths]
        self.watch_paths: List[Path] = [Path(p) for p in watch_paths]
        self.on_change_callback = on_change_callback
        self.debounce_seconds = debounce_seconds
        self.recursive = recursive
        self.check_interval = max(0.01, min(0.5, debounce_seconds / 2))

        self.event_handler = TerraformFileEventHandler(
            include_terraform_cache,
            roots=[str(p) for p in self.watch_paths],
            ignore_patterns=ignore_patterns,
        )
        self.observer = Observer()
        for path in self.watch_paths:
            self.observer.schedule(self.event_handler, str(path), recursive=self.recursive)

        self._running = False
        self.batches_delivered = 0

        logger.info(f"Initialized file watcher for: {', '.join(str(p) for p in self.watch_paths)}")

    def start(self) -> None:
        if not self._running:
            self.observer.start()
            self._running = True
            logger.info(f"Started watching: {', '.join(str(p) for p in self.watch_paths)}")

    def stop(self) -> None:
        if self._running:
            self._running = False
            self.observer.stop()
            self.observer.join(timeout=5.0)
            logger.info("Stopped file watcher")

    def is_running(self) -> bool:
        return self._running

    async def flush(self) -> bool:
        """Deliver pending changes now, regardless of the quiet period.

        Returns:
            True if a batch was delivered
        """
        batch = self.event_handler.get_pending_changes()
        if batch.is_empty():
            return False

        logger.info(
            f"Processing changes: {len(batch.changed)} changed, {len(batch.created)} created, "
            f"{len(batch.deleted)} deleted"
        )
        try:
            await self.on_change_callback(batch)
            self.batches_delivered += 1
        except Exception as e:
            logger.error(f"Error processing file changes: {e}", exc_info=True)
        return True

    async def start_debounce_processor(self) -> None:
        """Deliver batches whenever the quiet period has elapsed."""
        logger.info("Started debounce processor")

        while self._running:
            try:
                if (
                    self.event_handler.has_pending_changes()
                    and self.event_handler.time_since_last_change() >= self.debounce_seconds
                ):
                    await self.flush()

                await asyncio.sleep(self.check_interval)

            except asyncio.CancelledError:
                logger.info("Debounce processor cancelled")
                break
            except Exception as e:
                logger.error(f"Error in debounce processor: {e}")
                await asyncio.sleep(1.0)

    def get_status(self) -> Dict[str, object]:
        return {
            "running": self._running,
            "watch_paths": [str(p) for p in self.watch_paths],
            "debounce_seconds": self.debounce_seconds,
            "pending_changes": self.event_handler.has_pending_changes(),
            "batches_delivered": self.batches_delivered,
        }
