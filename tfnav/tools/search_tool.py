"""MCP tool for searching indexed Terraform blocks."""

import logging
from typing import Callable, Dict, List, Optional

from ..indexer.build_index import find_blocks
from ..indexer.files import read_text as default_read_text
from ..indexer.models import Block
from ..indexer.session import IndexingSession

logger = logging.getLogger(__name__)


def line_span(text: str, block: Block) -> Dict[str, int]:
    """1-based first and last line of a block's range."""
    start = block.byte_range.start
    end = max(start, block.byte_range.end - 1)
    return {
        "start_line": text.count("\n", 0, start) + 1,
        "end_line": text.count("\n", 0, end) + 1,
    }


def format_block(block: Block, text: Optional[str] = None) -> dict:
    """Convert a block to a JSON-friendly dictionary."""
    result = {
        "address": block.address,
        "block_kind": block.block_kind,
        "kind": block.kind,
        "name": block.name,
        "provider": block.provider_hint,
        "module_path": list(block.module_path),
        "file": block.file,
        "range": {"start": block.byte_range.start, "end": block.byte_range.end},
    }
    if block.source_expr is not None:
        result["source"] = block.source_expr
    if block.block_kind == "locals":
        result["local_names"] = list(block.local_names)
    if text is not None:
        result.update(line_span(text, block))
    return result


class BlockSearchTool:
    """Tool for structured block lookup over the current index."""

    def __init__(
        self, session: IndexingSession, read_text: Callable[[str], str] = default_read_text
    ):
        """Initialize search tool.

        Args:
            session: Indexing session whose current index is searched
            read_text: Reader used to turn ranges into line numbers
        """
        self.session = session
        self.read_text = read_text

    def find_blocks(
        self,
        block_kind: Optional[str] = None,
        provider: Optional[str] = None,
        kind: Optional[str] = None,
        name: Optional[str] = None,
        file_path_filter: Optional[str] = None,
        module_path: Optional[str] = None,
        limit: int = 50,
    ) -> dict:
        """Find blocks by kind, provider, type, name, file or module scope.

        Args:
            block_kind: resource, data, module, variable, output or locals
            provider: Provider prefix (e.g. 'aws')
            kind: Resource or data source type (e.g. 'aws_instance')
            name: Block name
            file_path_filter: Substring the file path must contain
            module_path: Dotted module path (e.g. 'module.vpc'); '' for root scope
            limit: Maximum number of results to return (default: 50)

        Returns:
            Dictionary with matching blocks
        """
        try:
            index = self.session.get_current_index()
            blocks = find_blocks(index, block_kind=block_kind, provider=provider, kind=kind, name=name)

            if file_path_filter:
                blocks = [b for b in blocks if file_path_filter in b.file]
            if module_path is not None:
                blocks = [b for b in blocks if ".".join(b.module_path) == module_path]

            total = len(blocks)
            texts: Dict[str, Optional[str]] = {}
            results: List[dict] = []
            for block in blocks[:limit]:
                if block.file not in texts:
                    try:
                        texts[block.file] = self.read_text(block.file)
                    except (OSError, UnicodeDecodeError) as e:
                        logger.debug(f"Cannot read {block.file} for line numbers: {e}")
                        texts[block.file] = None
                results.append(format_block(block, texts[block.file]))

            return {
                "success": True,
                "total_results": total,
                "returned": len(results),
                "results": results,
                "filters": {
                    "block_kind": block_kind,
                    "provider": provider,
                    "kind": kind,
                    "name": name,
                    "file_path": file_path_filter,
                    "module_path": module_path,
                },
            }

        except Exception as e:
            logger.error(f"Error during block search: {e}")
            return {"success": False, "error": str(e)}
