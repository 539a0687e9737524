"""Persisted content-hash state for detecting changed Terraform files between runs."""

import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import blake3

logger = logging.getLogger(__name__)


@dataclass
class FileRecord:
    """Record of a file's indexing state."""

    path: str
    content_hash: str
    last_indexed: float  # timestamp
    block_count: int


class FileStateTracker:
    """Tracks Blake3 hashes of indexed files in ``index_state.json``."""

    def __init__(self, state_path: Path):
        """Initialize the tracker.

        Args:
            state_path: Directory holding the state file; created if missing
        """
        self.state_path = Path(state_path)
        self.state_path.mkdir(parents=True, exist_ok=True)

        self.state_file = self.state_path / "index_state.json"
        self.file_records: Dict[str, FileRecord] = {}
        self._load_state()

    def _load_state(self) -> None:
        if not self.state_file.exists():
            logger.info("No existing index state found, starting fresh")
            return
        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)
            self.file_records = {path: FileRecord(**record) for path, record in data.items()}
            logger.info(f"Loaded index state with {len(self.file_records)} files")
        except Exception as e:
            logger.error(f"Error loading index state: {e}")
            self.file_records = {}

    def _save_state(self) -> None:
        try:
            data = {path: asdict(record) for path, record in self.file_records.items()}
            with open(self.state_file, "w") as f:
                json.dump(data, f, indent=2)
            logger.debug(f"Saved index state with {len(self.file_records)} files")
        except Exception as e:
            logger.error(f"Error saving index state: {e}")

    def compute_file_hash(self, file_path: str) -> str:
        """Blake3 hex digest of a file's bytes, or "" if it cannot be read."""
        try:
            with open(file_path, "rb") as f:
                return blake3.blake3(f.read()).hexdigest()
        except OSError as e:
            logger.warning(f"Error computing hash for {file_path}: {e}")
            return ""

    def has_file_changed(self, file_path: str) -> bool:
        record = self.file_records.get(file_path)
        if record is None:
            return True
        if not Path(file_path).exists():
            return True
        return self.compute_file_hash(file_path) != record.content_hash

    def plan_incremental_update(self, current_files: Iterable[str]) -> Tuple[List[str], List[str]]:
        """Plan which files need to be reparsed and which were removed.

        Args:
            current_files: All currently discovered file paths

        Returns:
            Tuple of (files_to_index, files_to_remove)
        """
        current_files = list(current_files)
        current_set: Set[str] = set(current_files)

        to_index = [path for path in current_files if self.has_file_changed(path)]
        to_remove = sorted(path for path in self.file_records if path not in current_set)

        logger.info(
            f"Incremental update plan: {len(to_index)} to index, {len(to_remove)} to remove, "
            f"{len(current_files) - len(to_index)} unchanged"
        )
        return to_index, to_remove

    def is_tracked(self, file_path: str) -> bool:
        return file_path in self.file_records

    def update_file_record(
        self, file_path: str, block_count: int, timestamp: Optional[float] = None
    ) -> None:
        self.file_records[file_path] = FileRecord(
            path=file_path,
            content_hash=self.compute_file_hash(file_path),
            last_indexed=time.time() if timestamp is None else timestamp,
            block_count=block_count,
        )

    def remove_file_record(self, file_path: str) -> bool:
        return self.file_records.pop(file_path, None) is not None

    def record_index(self, block_counts: Dict[str, int]) -> None:
        """Replace all records with the files of a freshly built index and commit."""
        now = time.time()
        self.file_records = {}
        for file_path, count in block_counts.items():
            self.update_file_record(file_path, count, now)
        self.commit()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "indexed_files": len(self.file_records),
            "total_blocks": sum(r.block_count for r in self.file_records.values()),
            "state_size_bytes": self.state_file.stat().st_size if self.state_file.exists() else 0,
        }

    def commit(self) -> None:
        """Commit current state to disk."""
        self._save_state()
