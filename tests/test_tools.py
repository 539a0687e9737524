import asyncio

import pytest

from tfnav.indexer.session import IndexingSession
from tfnav.tools.graph_tool import GraphTool
from tfnav.tools.index_tool import IndexingTool
from tfnav.tools.search_tool import BlockSearchTool

NETWORK_TF = """\
resource "aws_vpc" "main" {
  cidr_block = "10.0.0.0/16"
}

resource "aws_subnet" "public" {
  vpc_id = aws_vpc.main.id
}
"""


@pytest.fixture
def session(write_tf, tmp_path) -> IndexingSession:
    write_tf("network.tf", NETWORK_TF)
    write_tf("variables.tf", 'variable "region" {}\n')
    return IndexingSession(str(tmp_path))


class TestIndexingTool:
    def test_full_then_incremental(self, session) -> None:
        tool = IndexingTool(session)

        full = asyncio.run(tool.index_workspace())
        assert full["success"]
        assert full["mode"] == "full"
        assert full["total_blocks"] == 3
        assert full["reference_edges"] == 1

        incremental = asyncio.run(tool.index_workspace(incremental=True))
        assert incremental["mode"] == "incremental"
        assert incremental["total_blocks"] == 3

    def test_summary_and_cache_stats(self, session) -> None:
        tool = IndexingTool(session)
        asyncio.run(tool.index_workspace())

        summary = tool.get_index_summary()
        assert summary["total_files"] == 2
        assert summary["block_type_counts"] == {"resource": 2, "variable": 1}
        assert "Total blocks: 3" in summary["summary"]

        stats = tool.get_cache_stats()
        assert stats["success"]
        assert stats["total_entries"] == 2
        assert stats["hit_rate"].endswith("%")

    def test_summary_includes_file_state(self, write_tf, tmp_path) -> None:
        write_tf("ws/network.tf", NETWORK_TF)
        session = IndexingSession(str(tmp_path / "ws"), state_path=tmp_path / "state")
        tool = IndexingTool(session)

        assert "file_state" not in IndexingTool(IndexingSession(str(tmp_path))).get_index_summary()

        asyncio.run(tool.index_workspace())
        file_state = tool.get_index_summary()["file_state"]
        assert file_state["indexed_files"] == 1
        assert file_state["total_blocks"] == 2
        assert file_state["state_size_bytes"] > 0


class TestBlockSearchTool:
    def test_find_with_line_numbers(self, session) -> None:
        asyncio.run(session.start())
        result = BlockSearchTool(session).find_blocks(kind="aws_subnet")

        assert result["total_results"] == 1
        block = result["results"][0]
        assert block["address"] == "aws_subnet.public"
        assert block["provider"] == "aws"
        assert (block["start_line"], block["end_line"]) == (5, 7)

    def test_filters_and_limit(self, session) -> None:
        asyncio.run(session.start())
        tool = BlockSearchTool(session)

        limited = tool.find_blocks(provider="aws", limit=1)
        assert limited["total_results"] == 2
        assert limited["returned"] == 1

        assert tool.find_blocks(file_path_filter="variables")["total_results"] == 1
        assert tool.find_blocks(module_path="")["total_results"] == 3
        assert tool.find_blocks(module_path="module.vpc")["total_results"] == 0


class TestGraphTool:
    def test_references(self, session) -> None:
        asyncio.run(session.start())
        result = GraphTool(session).get_references("aws_vpc.main")

        assert result["success"]
        assert result["outgoing"] == []
        assert [e["from"] for e in result["incoming"]] == ["aws_subnet.public"]
        assert [n["address"] for n in result["neighbors"]] == ["aws_subnet.public"]

    def test_unknown_address(self, session) -> None:
        asyncio.run(session.start())
        result = GraphTool(session).get_references("aws_vpc.nope")
        assert not result["success"]

    def test_graph_stats(self, session) -> None:
        asyncio.run(session.start())
        stats = GraphTool(session).get_graph_stats()
        assert stats["total_edges"] == 1
        assert stats["edges_by_reference_type"] == {"resource": 1}
