"""MCP tool for dependency graph queries."""

import logging

from ..graph.refs import get_edges_for_address, get_neighbors_with_depth
from ..indexer.models import Edge
from ..indexer.session import IndexingSession
from .search_tool import format_block

logger = logging.getLogger(__name__)


def format_edge(edge: Edge) -> dict:
    return {
        "from": edge.source_address,
        "to": edge.target_address,
        "type": edge.edge_type,
        "attributes": dict(edge.attributes),
    }


class GraphTool:
    """Tool for querying reference edges of the current index."""

    def __init__(self, session: IndexingSession):
        self.session = session

    def get_references(self, address: str, depth: int = 1) -> dict:
        """Get incoming and outgoing edges of a block, plus neighbours up to ``depth``.

        Args:
            address: Fully-qualified block address (e.g. 'aws_subnet.public')
            depth: Degrees of separation for the neighbour list (default: 1)

        Returns:
            Dictionary with edges and neighbouring blocks
        """
        try:
            index = self.session.get_current_index()
            edges = index.refs or []

            known = {b.address for b in index.blocks}
            if address not in known:
                return {"success": False, "error": f"No block with address {address}"}

            incoming, outgoing = get_edges_for_address(address, edges)
            neighbors = get_neighbors_with_depth(address, edges, max(1, depth))

            return {
                "success": True,
                "address": address,
                "incoming": [format_edge(e) for e in incoming],
                "outgoing": [format_edge(e) for e in outgoing],
                "depth": max(1, depth),
                "neighbors": [format_block(b) for b in neighbors],
            }

        except Exception as e:
            logger.error(f"Error getting references: {e}")
            return {"success": False, "error": str(e)}

    def get_graph_stats(self) -> dict:
        index = self.session.get_current_index()
        edges = index.refs or []
        by_type = {}
        for edge in edges:
            reference_type = edge.reference_type or edge.edge_type
            by_type[reference_type] = by_type.get(reference_type, 0) + 1
        return {"success": True, "total_edges": len(edges), "edges_by_reference_type": by_type}
