"""Data models for Terraform block indexing."""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

BLOCK_KINDS = ("resource", "data", "module", "variable", "output", "locals")

# Block kinds whose body can refer to other blocks
REFERENCING_KINDS = ("resource", "data", "module", "locals")

_PROVIDER_RE = re.compile(r"^([^_]+)_")


@dataclass(frozen=True)
class ByteRange:
    """Half-open [start, end) range of character offsets into a file's decoded text."""

    start: int
    end: int

    def slice(self, text: str) -> str:
        return text[self.start : self.end]


@dataclass(frozen=True)
class Block:
    """One declared Terraform block (resource, data, module, variable, output, locals)."""

    block_kind: str
    file: str
    byte_range: ByteRange
    kind: Optional[str] = None  # resource/data type, e.g. aws_instance
    name: Optional[str] = None  # block label, absent for locals
    provider_hint: Optional[str] = None
    module_path: Tuple[str, ...] = ()
    source_expr: Optional[str] = None  # module blocks only
    local_names: Tuple[str, ...] = ()  # locals blocks only

    @property
    def address(self) -> str:
        return build_address(self)


@dataclass
class ParseError:
    """A problem encountered while parsing one file."""

    message: str
    file: str
    line: Optional[int] = None  # 1-based
    column: Optional[int] = None  # 1-based
    range: Optional[ByteRange] = None


@dataclass
class ParseResult:
    """Blocks and errors produced by parsing a single file."""

    blocks: List[Block] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)


@dataclass
class ParserConfig:
    """Parse-time filters and module scope."""

    include_data_sources: bool = True
    include_variables: bool = True
    include_outputs: bool = True
    include_locals: bool = True
    module_path: Tuple[str, ...] = ()
    use_cache: bool = True

    def includes(self, block_kind: str) -> bool:
        if block_kind == "data":
            return self.include_data_sources
        if block_kind == "variable":
            return self.include_variables
        if block_kind == "output":
            return self.include_outputs
        if block_kind == "locals":
            return self.include_locals
        return True


@dataclass(frozen=True)
class Edge:
    """Directed dependency between two blocks.

    Blocks are compared by value; two edges are duplicates when their
    (source address, target address) pairs are equal.
    """

    source: Block
    target: Block
    edge_type: str  # reference | contains
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def source_address(self) -> str:
        return build_address(self.source)

    @property
    def target_address(self) -> str:
        return build_address(self.target)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source_address, self.target_address)

    @property
    def reference_type(self) -> Optional[str]:
        return self.attributes.get("referenceType")


def _by_type_sort_key(block: Block) -> Tuple[str, str, str]:
    return (block.name or "", block.kind or "", block.file)


def _by_file_sort_key(block: Block) -> Tuple[int, int]:
    return (block.byte_range.start, block.byte_range.end)


@dataclass
class ProjectIndex:
    """All indexed blocks plus two sorted views and the edge list."""

    blocks: List[Block] = field(default_factory=list)
    by_type: Dict[str, List[Block]] = field(default_factory=dict)
    by_file: Dict[str, List[Block]] = field(default_factory=dict)
    refs: Optional[List[Edge]] = None

    @classmethod
    def empty(cls) -> "ProjectIndex":
        return cls(blocks=[], by_type={}, by_file={}, refs=[])

    def rebuild_maps(self) -> None:
        """Re-partition ``blocks`` into ``by_type`` and ``by_file``.

        by_type is sorted by (name, kind, file) and by_file by (start, end).
        Missing names/kinds sort as empty strings.
        """
        type_groups: Dict[str, List[Block]] = {}
        file_groups: Dict[str, List[Block]] = {}
        for block in self.blocks:
            type_groups.setdefault(block.block_kind, []).append(block)
            file_groups.setdefault(block.file, []).append(block)

        self.by_type = {
            block_kind: sorted(blocks, key=_by_type_sort_key)
            for block_kind, blocks in type_groups.items()
        }
        self.by_file = {
            file_path: sorted(blocks, key=_by_file_sort_key)
            for file_path, blocks in file_groups.items()
        }

    def files(self) -> List[str]:
        """Sorted paths of the files that contributed at least one block."""
        return sorted(self.by_file)


def extract_provider(kind: Optional[str]) -> Optional[str]:
    """Return the provider prefix of a resource type (aws_instance -> aws)."""
    if not kind:
        return None
    match = _PROVIDER_RE.match(kind)
    return match.group(1) if match else None


def build_address(block: Block) -> str:
    """Build the fully-qualified address of a block.

    Module path segments come first, followed by a kind-specific suffix:
    ``kind.name`` for resources, ``data.kind.name``, ``module.name``,
    ``var.name``, the bare name for outputs and ``local.name`` (or ``local``)
    for locals.
    """
    parts: List[str] = list(block.module_path)

    if block.block_kind == "resource":
        if block.kind and block.name:
            parts.append(f"{block.kind}.{block.name}")
    elif block.block_kind == "data":
        if block.kind and block.name:
            parts.append(f"data.{block.kind}.{block.name}")
    elif block.block_kind == "module":
        if block.name:
            parts.append(f"module.{block.name}")
    elif block.block_kind == "variable":
        if block.name:
            parts.append(f"var.{block.name}")
    elif block.block_kind == "output":
        if block.name:
            parts.append(block.name)
    elif block.block_kind == "locals":
        parts.append(f"local.{block.name}" if block.name else "local")

    return ".".join(parts)


def module_paths_match(left: Tuple[str, ...], right: Tuple[str, ...]) -> bool:
    """Exact scope match: equal length and equal segment at every position."""
    if len(left) != len(right):
        return False
    return all(a == b for a, b in zip(left, right))
