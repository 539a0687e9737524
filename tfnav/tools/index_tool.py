"""MCP tool for indexing Terraform workspaces."""

import logging
from dataclasses import asdict

from ..indexer.build_index import BuildResult, create_index_summary, get_block_type_counts
from ..indexer.incremental import UpdateResult
from ..indexer.session import IndexingSession
from ..indexer.worker import BuildCancelledError

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 50


class IndexingTool:
    """Tool for (re)building and inspecting a session's index."""

    def __init__(self, session: IndexingSession):
        """Initialize indexing tool.

        Args:
            session: Indexing session to drive
        """
        self.session = session

    async def index_workspace(self, incremental: bool = True) -> dict:
        """Index the session's workspace.

        Args:
            incremental: Only reparse files whose content changed since the
                last run; falls back to a full build when nothing is indexed yet

        Returns:
            Dictionary with indexing results
        """
        try:
            if incremental and self.session.get_current_index().blocks:
                logger.info("Starting incremental workspace rescan")
                update = await self.session.rescan()
                return self._format_update(update)

            logger.info("Starting full workspace index build")
            result = await self.session.rebuild_index()
            return self._format_build(result)

        except BuildCancelledError as e:
            return {"success": False, "error": f"Build cancelled: {e}"}
        except Exception as e:
            logger.error(f"Error indexing workspace: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    def _format_build(self, result: BuildResult) -> dict:
        index = result.index
        return {
            "success": True,
            "mode": "full",
            "files_processed": result.stats.files_processed,
            "files_with_errors": result.stats.files_with_errors,
            "total_blocks": result.stats.total_blocks,
            "block_type_counts": result.stats.block_type_counts,
            "reference_edges": len(index.refs or []),
            "build_time_ms": result.stats.build_time_ms,
            "cancelled": result.cancelled,
            "errors": [asdict(e) for e in result.errors[:MAX_REPORTED_ERRORS]],
            "total_errors": len(result.errors),
        }

    def _format_update(self, update: UpdateResult) -> dict:
        index = self.session.get_current_index()
        return {
            "success": True,
            "mode": "incremental",
            "updated_files": update.updated_files,
            "added_files": update.added_files,
            "deleted_files": update.deleted_files,
            "total_blocks": len(index.blocks),
            "block_type_counts": get_block_type_counts(index),
            "reference_edges": len(index.refs or []),
            "errors": [asdict(e) for e in update.errors[:MAX_REPORTED_ERRORS]],
            "total_errors": len(update.errors),
        }

    def get_index_summary(self) -> dict:
        """Get a summary of the current index."""
        try:
            index = self.session.get_current_index()
            summary = {
                "success": True,
                "roots": self.session.roots,
                "total_blocks": len(index.blocks),
                "total_files": len(index.by_file),
                "block_type_counts": get_block_type_counts(index),
                "reference_edges": len(index.refs or []),
                "last_errors": len(self.session.last_errors),
                "summary": create_index_summary(index),
            }
            if self.session.state is not None:
                summary["file_state"] = self.session.state.get_stats()
            return summary
        except Exception as e:
            logger.error(f"Error getting index summary: {e}")
            return {"success": False, "error": str(e)}

    def get_cache_stats(self) -> dict:
        """Get parse cache statistics."""
        stats = self.session.get_cache_stats()
        return {
            "success": True,
            **asdict(stats),
            "hit_rate": f"{stats.hit_rate:.2f}%",
        }
