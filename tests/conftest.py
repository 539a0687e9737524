from pathlib import Path
from typing import Callable, Iterable, List, Tuple

import pytest

from tfnav.graph.refs import ReferenceExtractor
from tfnav.indexer.files import read_text
from tfnav.indexer.models import Block, ParserConfig, ProjectIndex
from tfnav.indexer.parser import HCL2Parser


@pytest.fixture
def write_tf(tmp_path: Path) -> Callable[[str, str], str]:
    """Write a file under tmp_path and return its absolute path."""

    def write(relative_path: str, content: str) -> str:
        path = tmp_path / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return str(path.resolve())

    return write


def parse_blocks(file_path: str, module_path: Tuple[str, ...] = ()) -> List[Block]:
    result = HCL2Parser().parse_file(
        file_path, read_text(file_path), ParserConfig(module_path=module_path)
    )
    assert result.errors == []
    return result.blocks


def index_of(blocks: Iterable[Block], with_refs: bool = True) -> ProjectIndex:
    index = ProjectIndex(blocks=list(blocks))
    index.rebuild_maps()
    if with_refs:
        index.refs = ReferenceExtractor().extract(index)
    return index


def assert_maps_consistent(index: ProjectIndex) -> None:
    total = len(index.blocks)
    assert sum(len(v) for v in index.by_type.values()) == total
    assert sum(len(v) for v in index.by_file.values()) == total

    for blocks in index.by_file.values():
        keys = [(b.byte_range.start, b.byte_range.end) for b in blocks]
        assert keys == sorted(keys)

    for blocks in index.by_type.values():
        keys = [(b.name or "", b.kind or "", b.file) for b in blocks]
        assert keys == sorted(keys)
