#!/usr/bin/env python3
"""Standalone indexer script - indexes a Terraform workspace, logs a summary and exits."""

import asyncio
import logging
import os
import sys
from pathlib import Path

# Setup logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def main():
    """Main indexer function."""
    try:
        from tfnav.config import build_options_from_config, get_env_config
        from tfnav.indexer.build_index import create_index_summary
        from tfnav.indexer.session import IndexingSession

        config = get_env_config()
        workspace_path = Path(config["workspace_path"]).resolve()

        if not workspace_path.exists():
            logger.error(f"Workspace path does not exist: {workspace_path}")
            sys.exit(1)

        logger.info(f"Starting indexer for workspace: {workspace_path}")
        logger.info(f"Ignore patterns: {config['ignore_patterns']}")
        logger.info(f"Expand modules: {config['expand_modules']}")

        session = IndexingSession(
            roots=[str(workspace_path)],
            options=build_options_from_config(config),
            ignore_patterns=config["ignore_patterns"],
            include_terraform_cache=config["include_terraform_cache"],
            worker_threshold=config["worker_threshold"],
            cancel_timeout=config["worker_cancel_timeout"],
        )

        def report(progress):
            if progress.total and progress.processed % 100 == 0:
                logger.info(f"[{progress.processed}/{progress.total}] {progress.current_file}")

        try:
            result = await session.rebuild_index(on_progress=report)
        finally:
            await session.dispose()

        index = result.index

        logger.info("=" * 80)
        logger.info("Indexing Complete!")
        logger.info(f"Workspace: {workspace_path}")
        logger.info(f"Files processed: {result.stats.files_processed}")
        logger.info(f"Files with errors: {result.stats.files_with_errors}")
        logger.info(f"Reference edges: {len(index.refs or [])}")
        logger.info(f"Build time: {result.stats.build_time_ms}ms")
        for line in create_index_summary(index).splitlines():
            logger.info(line)
        logger.info("=" * 80)

        if result.errors:
            logger.warning(f"{len(result.errors)} errors:")
            for error in result.errors:
                logger.warning(f"  - {error.file}: {error.error}")

        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal error during indexing: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
