"""FastMCP server exposing the Terraform block index and dependency graph."""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Coroutine, Optional

from mcp.server.fastmcp import FastMCP

from .config import build_options_from_config, get_env_config
from .indexer.file_watcher import TerraformWatcher
from .indexer.session import IndexingSession
from .tools.graph_tool import GraphTool
from .tools.index_tool import IndexingTool
from .tools.search_tool import BlockSearchTool

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("tfnav")

# Global components (initialized on startup)
session: Optional[IndexingSession] = None
index_tool: Optional[IndexingTool] = None
search_tool: Optional[BlockSearchTool] = None
graph_tool: Optional[GraphTool] = None
file_watcher: Optional[TerraformWatcher] = None
watcher_task: Optional["asyncio.Future"] = None

# The session is only ever mutated from this loop, which runs in its own thread
session_loop: Optional[asyncio.AbstractEventLoop] = None
session_thread: Optional[threading.Thread] = None


def configure_logging(config: dict) -> None:
    """Install console and file handlers on the root logger."""
    log_level = config["log_level"]
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    file_handler = logging.FileHandler(config["log_file"])
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)


def start_session_loop() -> asyncio.AbstractEventLoop:
    """Start the background event loop that owns the indexing session."""
    global session_loop, session_thread

    if session_loop is not None:
        return session_loop

    loop = asyncio.new_event_loop()

    def run() -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            loop.close()

    session_thread = threading.Thread(target=run, daemon=True, name="IndexingSessionLoop")
    session_thread.start()
    session_loop = loop
    logger.info("Indexing session loop running")
    return loop


async def run_in_session(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a coroutine on the session loop and await its result from any loop."""
    loop = start_session_loop()
    return await asyncio.wrap_future(asyncio.run_coroutine_threadsafe(coro, loop))


def _log_parse_errors(errors) -> None:
    logger.warning(f"{len(errors)} parse errors in the last index update")
    for error in errors[:10]:
        logger.debug(f"  {error.file}: {error.error}")


def initialize_components(config: Optional[dict] = None) -> None:
    """Create the session and tools, build the initial index and start the watcher."""
    global session, index_tool, search_tool, graph_tool, file_watcher, watcher_task

    config = config or get_env_config()
    logger.info("Initializing tfnav...")

    workspace_path = Path(config["workspace_path"]).resolve()
    state_path = Path(config["state_path"])
    if not state_path.is_absolute():
        state_path = workspace_path / state_path

    session = IndexingSession(
        roots=[str(workspace_path)],
        options=build_options_from_config(config),
        ignore_patterns=config["ignore_patterns"],
        include_terraform_cache=config["include_terraform_cache"],
        worker_threshold=config["worker_threshold"],
        cancel_timeout=config["worker_cancel_timeout"],
        cache_max_entries=config["cache_max_entries"],
        cache_max_age=config["cache_max_age"],
        state_path=state_path,
    )
    session.on("index_built", lambda r: logger.info(f"Index built: {len(r.index.blocks)} blocks"))
    session.on("files_deleted", lambda files: logger.info(f"Removed {len(files)} deleted files"))
    session.on("parse_errors", _log_parse_errors)

    index_tool = IndexingTool(session)
    search_tool = BlockSearchTool(session)
    graph_tool = GraphTool(session)

    loop = start_session_loop()
    try:
        asyncio.run_coroutine_threadsafe(session.start(), loop).result()
    except Exception as e:
        logger.error(f"Initial index build failed: {e}")

    if config["enable_watcher"]:
        if workspace_path.exists():
            logger.info(
                f"Initializing file watcher for {workspace_path} "
                f"(debounce: {config['watcher_debounce']}s)"
            )
            file_watcher = session.create_watcher(config["watcher_debounce"])
            file_watcher.start()
            watcher_task = asyncio.run_coroutine_threadsafe(
                file_watcher.start_debounce_processor(), loop
            )
        else:
            logger.warning(
                f"Workspace path does not exist: {workspace_path}. "
                "File watcher will not be started."
            )
    else:
        logger.info("File watcher disabled (set ENABLE_FILE_WATCHER=true to enable)")

    logger.info("All components initialized successfully!")


def shutdown_components() -> None:
    """Stop the watcher, any worker build and the session loop."""
    global watcher_task

    if file_watcher is not None:
        logger.info("Stopping file watcher...")
        file_watcher.stop()
    if watcher_task is not None and not watcher_task.done():
        watcher_task.cancel()
    watcher_task = None

    if session is not None and session_loop is not None and session_loop.is_running():
        try:
            asyncio.run_coroutine_threadsafe(session.dispose(), session_loop).result(timeout=5)
        except Exception as e:
            logger.error(f"Error disposing session: {e}")
        session_loop.call_soon_threadsafe(session_loop.stop)


@mcp.tool()
async def index_workspace(incremental: bool = True) -> dict:
    """Index (or re-index) the Terraform workspace.

    Args:
        incremental: Only reparse files whose content changed (default: true)

    Returns:
        Dictionary with block counts, edge count and any per-file errors
    """
    if not index_tool:
        return {"success": False, "error": "Server not initialized"}

    return await run_in_session(index_tool.index_workspace(incremental))


@mcp.tool()
def find_blocks(
    block_kind: Optional[str] = None,
    provider: Optional[str] = None,
    kind: Optional[str] = None,
    name: Optional[str] = None,
    file_path_filter: Optional[str] = None,
    module_path: Optional[str] = None,
    limit: int = 50,
) -> dict:
    """Find Terraform blocks in the index.

    Args:
        block_kind: resource, data, module, variable, output or locals
        provider: Provider prefix (e.g. "aws", "google")
        kind: Resource or data source type (e.g. "aws_instance")
        name: Block name
        file_path_filter: Substring the file path must contain
        module_path: Dotted module path (e.g. "module.vpc"); empty string for root scope
        limit: Maximum number of results to return (default: 50)

    Returns:
        Dictionary with matching blocks, their addresses, files and line numbers
    """
    if not search_tool:
        return {"success": False, "error": "Server not initialized"}

    return search_tool.find_blocks(
        block_kind, provider, kind, name, file_path_filter, module_path, limit
    )


@mcp.tool()
def get_references(address: str, depth: int = 1) -> dict:
    """Get the dependency edges of a block.

    Args:
        address: Fully-qualified address (e.g. "aws_subnet.public", "module.vpc.aws_vpc.main")
        depth: Degrees of separation for the neighbour list (default: 1)

    Returns:
        Dictionary with incoming/outgoing edges and neighbouring blocks
    """
    if not graph_tool:
        return {"success": False, "error": "Server not initialized"}

    return graph_tool.get_references(address, depth)


@mcp.tool()
def get_index_summary() -> dict:
    """Get block counts by type and by file, plus the reference edge count.

    Returns:
        Dictionary with index summary
    """
    if not index_tool or not graph_tool:
        return {"success": False, "error": "Server not initialized"}

    summary = index_tool.get_index_summary()
    if summary.get("success"):
        summary["graph"] = graph_tool.get_graph_stats()
    return summary


@mcp.tool()
def get_cache_stats() -> dict:
    """Get parse cache statistics.

    Returns:
        Dictionary with entry count, hits, misses and hit rate
    """
    if not index_tool:
        return {"success": False, "error": "Server not initialized"}

    return index_tool.get_cache_stats()


@mcp.tool()
def get_watcher_status() -> dict:
    """Get status of the file watcher.

    Returns:
        Dictionary with watcher status
    """
    if file_watcher is None:
        config = get_env_config()
        return {
            "success": True,
            "enabled": False,
            "running": False,
            "watcher_enabled_in_config": config["enable_watcher"],
            "workspace_path": config["workspace_path"],
            "message": "File watcher not initialized (check ENABLE_FILE_WATCHER and workspace path)",
        }

    return {
        "success": True,
        "enabled": True,
        "task_active": watcher_task is not None and not watcher_task.done(),
        **file_watcher.get_status(),
    }


@mcp.tool()
def get_build_job_status(job_id: str) -> dict:
    """Get the status and progress of an index build job.

    Args:
        job_id: Job identifier (see list_build_jobs)

    Returns:
        Dictionary with job status and progress information
    """
    if not session:
        return {"success": False, "error": "Server not initialized"}

    job = session.worker_manager.get_job(job_id)
    if not job:
        return {"success": False, "error": f"Job {job_id} not found"}

    return {"success": True, **session.worker_manager.get_status_dict(job)}


@mcp.tool()
def list_build_jobs() -> dict:
    """List all index build jobs (past and present).

    Returns:
        Dictionary with list of all jobs and their statuses
    """
    if not session:
        return {"success": False, "error": "Server not initialized"}

    jobs = session.worker_manager.list_jobs()
    job_list = [session.worker_manager.get_status_dict(job) for job in jobs]
    return {"success": True, "total_jobs": len(job_list), "jobs": job_list}


@mcp.tool()
async def cancel_build() -> dict:
    """Cancel the in-flight worker build, if any.

    Returns:
        Dictionary indicating whether a build was cancelled
    """
    if not session:
        return {"success": False, "error": "Server not initialized"}

    cancelled = await run_in_session(session.worker_manager.cancel_current_build())
    if cancelled:
        return {"success": True, "message": "Build cancelled"}
    return {"success": False, "error": "No worker build in progress"}


@mcp.tool()
def health_check() -> dict:
    """Check health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    return {
        "success": True,
        "components": {
            "server": True,
            "session": session is not None,
            "session_loop": session_loop is not None and session_loop.is_running(),
            "watcher": file_watcher is not None and file_watcher.is_running(),
            "worker_busy": session is not None and session.worker_manager.is_busy(),
        },
    }


if __name__ == "__main__":
    import atexit

    env_config = get_env_config()
    configure_logging(env_config)

    logger.info("Starting tfnav MCP Server...")

    initialize_components(env_config)
    atexit.register(shutdown_components)

    logger.info("Server ready!")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
    except Exception as e:
        logger.error(f"Server error: {e}")
        raise
