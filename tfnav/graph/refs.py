"""Reference extraction for Terraform dependency graphs.

References are found lexically: each block's source slice is scanned with a
handful of regular expressions and every match is resolved against the
blocks of the index. There is no expression evaluation, so the result is a
best-effort approximation. Every edge records the pattern that produced it
under ``attributes["pattern"]``.
"""

import logging
import os
import re
from collections import deque
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from ..indexer.files import read_text as default_read_text
from ..indexer.models import (
    REFERENCING_KINDS,
    Block,
    Edge,
    ProjectIndex,
    build_address,
    module_paths_match,
)

logger = logging.getLogger(__name__)

IDENT = r"[a-zA-Z_][a-zA-Z0-9_]*"

VAR_PATTERN = re.compile(rf"var\.({IDENT})")
RESOURCE_PATTERN = re.compile(rf"({IDENT})\.({IDENT})\.")
DATA_PATTERN = re.compile(rf"data\.({IDENT})\.({IDENT})")
LOCAL_PATTERN = re.compile(rf"local\.({IDENT})")
MODULE_PATTERN = re.compile(rf"module\.({IDENT})(?:\.({IDENT}))?")

# Leading identifiers the generic type.name pattern must not claim
NON_RESOURCE_PREFIXES = {"var", "local", "data"}

Scope = Tuple[str, ...]


class _BlockLookup:
    """Per-extraction lookup tables; the first block in index order wins each key."""

    def __init__(self, blocks: Iterable[Block]):
        self.variables: Dict[Tuple[Scope, str], Block] = {}
        self.resources: Dict[Tuple[Scope, str, str], Block] = {}
        self.data: Dict[Tuple[Scope, str, str], Block] = {}
        self.modules: Dict[Tuple[Scope, str], Block] = {}
        self.locals: Dict[Tuple[Scope, str], Block] = {}

        for block in blocks:
            scope = tuple(block.module_path)
            if block.block_kind == "variable" and block.name:
                self.variables.setdefault((scope, block.name), block)
            elif block.block_kind == "resource" and block.kind and block.name:
                self.resources.setdefault((scope, block.kind, block.name), block)
            elif block.block_kind == "data" and block.kind and block.name:
                self.data.setdefault((scope, block.kind, block.name), block)
            elif block.block_kind == "module" and block.name:
                self.modules.setdefault((scope, block.name), block)
            elif block.block_kind == "locals":
                for local_name in block.local_names:
                    self.locals.setdefault((scope, local_name), block)


def _in_source_directory(file_path: str, declaring_file: str, source: str) -> bool:
    """Whether ``file_path`` lives in the directory named by a local module source."""
    file_path = file_path.replace("\\", "/")
    resolved = os.path.normpath(os.path.join(os.path.dirname(declaring_file), source))
    if file_path.startswith(resolved.replace("\\", "/").rstrip("/") + "/"):
        return True

    directory = (source[2:] if source.startswith("./") else source).strip("/")
    if not directory or directory.startswith(".."):
        return False
    return f"/{directory}/" in "/" + file_path


class ReferenceExtractor:
    """Extracts ``contains`` and ``reference`` edges from a ProjectIndex."""

    def __init__(self, read_text: Callable[[str], str] = default_read_text):
        self._read_text = read_text

    def extract(self, index: ProjectIndex) -> List[Edge]:
        """Extract deduplicated edges.

        Edges are produced in three passes (module containment, module to
        module references, per-block reference scan); when two edges share a
        (source address, target address) pair the earlier one is kept.
        """
        blocks = list(index.blocks)
        logger.info(f"Starting reference extraction for {len(blocks)} blocks")

        lookup = _BlockLookup(blocks)
        texts: Dict[str, Optional[str]] = {}
        edges: List[Edge] = []
        seen: Set[Tuple[str, str]] = set()

        def add(candidates: Iterable[Edge]) -> None:
            for edge in candidates:
                key = edge.key
                if key in seen:
                    continue
                seen.add(key)
                edges.append(edge)

        modules = [b for b in blocks if b.block_kind == "module"]

        for module_block in modules:
            add(self._containment_edges(module_block, blocks))

        for module_block in modules:
            content = self._block_source(module_block, texts)
            if content is not None:
                add(self._module_reference_edges(module_block, content, lookup))

        for block in blocks:
            if block.block_kind not in REFERENCING_KINDS:
                continue
            content = self._block_source(block, texts)
            if content is not None:
                add(self._block_reference_edges(block, content, lookup))

        logger.info(f"Extracted {len(edges)} reference edges")
        return edges

    def _block_source(self, block: Block, texts: Dict[str, Optional[str]]) -> Optional[str]:
        if block.file not in texts:
            try:
                texts[block.file] = self._read_text(block.file)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not read {block.file} for reference extraction: {e}")
                texts[block.file] = None

        text = texts[block.file]
        if text is None:
            return None
        return block.byte_range.slice(text)

    def _containment_edges(self, module_block: Block, blocks: List[Block]) -> List[Edge]:
        segment = f"module.{module_block.name}"
        others = [b for b in blocks if b != module_block]

        strategy = "last_segment"
        members = [b for b in others if b.module_path and b.module_path[-1] == segment]

        if not members:
            strategy = "any_segment"
            members = [b for b in others if segment in b.module_path]

        source = module_block.source_expr or ""
        if not members and (source.startswith("./") or source.startswith("../")):
            strategy = "source_directory"
            members = [b for b in others if _in_source_directory(b.file, module_block.file, source)]

        if members:
            logger.debug(
                f"Module {build_address(module_block)} contains {len(members)} blocks ({strategy})"
            )

        return [
            Edge(
                source=module_block,
                target=member,
                edge_type="contains",
                attributes={
                    "referenceType": "module_containment",
                    "relationship": "contains",
                    "pattern": strategy,
                },
            )
            for member in members
        ]

    def _module_reference_edges(
        self, module_block: Block, content: str, lookup: _BlockLookup
    ) -> List[Edge]:
        edges = []
        scope = tuple(module_block.module_path)
        for match in MODULE_PATTERN.finditer(content):
            target = lookup.modules.get((scope, match.group(1)))
            if target is None or target == module_block:
                continue
            attributes = {"referenceType": "module_reference", "pattern": "module_reference"}
            if match.group(2):
                attributes["attribute"] = match.group(2)
            edges.append(Edge(module_block, target, "reference", attributes))
        return edges

    def _block_reference_edges(
        self, block: Block, content: str, lookup: _BlockLookup
    ) -> List[Edge]:
        edges = []
        scope = tuple(block.module_path)

        def reference(target: Optional[Block], reference_type: str, attribute: str) -> None:
            if target is None or target == block:
                return
            if not module_paths_match(block.module_path, target.module_path):
                return
            edges.append(
                Edge(
                    block,
                    target,
                    "reference",
                    {"referenceType": reference_type, "attribute": attribute, "pattern": reference_type},
                )
            )

        for match in VAR_PATTERN.finditer(content):
            reference(lookup.variables.get((scope, match.group(1))), "var", "variable")

        for match in RESOURCE_PATTERN.finditer(content):
            type_name, name = match.group(1), match.group(2)
            if type_name in NON_RESOURCE_PREFIXES:
                continue
            reference(lookup.resources.get((scope, type_name, name)), "resource", "resource")

        for match in DATA_PATTERN.finditer(content):
            reference(lookup.data.get((scope, match.group(1), match.group(2))), "data", "data")

        for match in LOCAL_PATTERN.finditer(content):
            reference(lookup.locals.get((scope, match.group(1))), "local", "local")

        if block.block_kind != "module":
            for match in MODULE_PATTERN.finditer(content):
                target = lookup.modules.get((scope, match.group(1)))
                if target is None:
                    continue
                attributes = {"referenceType": "module", "pattern": "module"}
                if match.group(2):
                    attributes["attribute"] = match.group(2)
                edges.append(Edge(block, target, "reference", attributes))

        return edges


AddressLike = Union[str, Block]


def _address(value: AddressLike) -> str:
    return value if isinstance(value, str) else build_address(value)


def get_edges_for_address(
    address: AddressLike, edges: Iterable[Edge]
) -> Tuple[List[Edge], List[Edge]]:
    """Return the (incoming, outgoing) edges of an address."""
    target = _address(address)
    incoming = []
    outgoing = []
    for edge in edges:
        if edge.target_address == target:
            incoming.append(edge)
        if edge.source_address == target:
            outgoing.append(edge)
    return incoming, outgoing


def get_neighbors(address: AddressLike, edges: Iterable[Edge]) -> List[Block]:
    """First-degree neighbours in either direction, de-duplicated by address."""
    incoming, outgoing = get_edges_for_address(address, edges)
    neighbors: Dict[str, Block] = {}
    for edge in incoming:
        neighbors.setdefault(edge.source_address, edge.source)
    for edge in outgoing:
        neighbors.setdefault(edge.target_address, edge.target)
    return list(neighbors.values())


def get_neighbors_with_depth(
    address: AddressLike, edges: Iterable[Edge], depth: int = 2
) -> List[Block]:
    """Blocks reachable within ``depth`` hops in either direction, excluding the start."""
    edges = list(edges)
    start = _address(address)
    visited = {start}
    found: List[Block] = []
    queue = deque([(start, 0)])

    while queue:
        current, current_depth = queue.popleft()
        if current_depth >= depth:
            continue
        for neighbor in get_neighbors(current, edges):
            key = build_address(neighbor)
            if key in visited:
                continue
            visited.add(key)
            found.append(neighbor)
            queue.append((key, current_depth + 1))

    logger.debug(f"Found {len(found)} neighbors within {depth} degrees of {start}")
    return found
