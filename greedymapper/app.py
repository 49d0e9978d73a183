"""
Application composition root — start-up, polling loop, shutdown, main entry point.

This is the top-level module that wires everything together.
Depends on: everything (composition root)
"""

import contextlib
import signal
import socket
import sys
import time
from typing import Optional

import anyio
import httpx
import uvicorn
from starlette.applications import Starlette

from greedymapper.config import (
    BACKENDS,
    LIBMAPPER_AVAILABLE,
    LOG_PREFIX,
    READY_POLL_INTERVAL,
    READY_TIMEOUT,
    STATUS_LOOP_INTERVAL,
    STATUS_PORT_SEARCH,
    TOPOLOGY_THREE_HOP,
    TOPOLOGY_TWO_HOP,
)
from greedymapper.context import EngineContext
from greedymapper.mesh.backends import LibmapperNode, TopologyDatabase
from greedymapper.mesh.runtime import InitializationError, MeshRuntime
from greedymapper.models import AgentConfig, MapRecord
from greedymapper.reroute import make_dispatcher
from greedymapper.restore import Restorer
from greedymapper.status import create_status_app


# =============================================================================
# Start-up
# =============================================================================

def create_runtime(config: AgentConfig, database: Optional[TopologyDatabase] = None) -> MeshRuntime:
    """Create the node handle for the configured backend."""
    if config.backend == "local":
        return (database or TopologyDatabase()).node(config.name, port=config.port)
    if config.backend == "libmapper":
        return LibmapperNode(config.name, port=config.port)
    raise InitializationError(f"unknown backend '{config.backend}' (expected one of {', '.join(BACKENDS)})")


def wait_until_ready(runtime: MeshRuntime, timeout: float = READY_TIMEOUT) -> None:
    deadline = time.monotonic() + timeout
    while not runtime.ready():
        if time.monotonic() > deadline:
            raise InitializationError(f"node {runtime.name} not ready after {timeout:.0f}s")
        runtime.poll(0)
        if not runtime.ready():
            time.sleep(READY_POLL_INTERVAL)


def start(config: AgentConfig, runtime: Optional[MeshRuntime] = None) -> EngineContext:
    """Bring up the node and subscribe to topology changes.

    Raises InitializationError if anything fails; nothing has been rerouted then.
    """
    if config.topology not in (TOPOLOGY_TWO_HOP, TOPOLOGY_THREE_HOP):
        raise InitializationError(f"unknown topology '{config.topology}'")

    runtime = runtime or create_runtime(config)
    try:
        wait_until_ready(runtime)
    except InitializationError:
        runtime.release()
        raise

    ctx = EngineContext(runtime=runtime, config=config)
    runtime.subscribe(make_dispatcher(ctx))
    print(f"{LOG_PREFIX} Node {ctx.node_name} ready ({runtime.backend} backend, {config.topology})",
          file=sys.stderr)
    return ctx


# =============================================================================
# Polling loop + shutdown
# =============================================================================

def run(ctx: EngineContext) -> None:
    """Poll until asked to stop. The flag is only checked between iterations."""
    while not ctx.done:
        ctx.runtime.poll(ctx.config.poll_timeout_ms)


def shutdown(ctx: EngineContext) -> list[MapRecord]:
    """Restore every split map and release the node."""
    ctx.done = True
    return Restorer(ctx).restore_all()


def run_forever(ctx: EngineContext) -> None:
    """Blocking mode: SIGINT/SIGTERM stop the loop, then restoration runs."""
    signal.signal(signal.SIGINT, ctx.request_stop)
    signal.signal(signal.SIGTERM, ctx.request_stop)
    try:
        run(ctx)
    finally:
        shutdown(ctx)


async def poll_loop(ctx: EngineContext) -> None:
    """Cooperative variant of run() for use inside the status server's event loop."""
    while not ctx.done:
        ctx.runtime.poll(0)
        await anyio.sleep(STATUS_LOOP_INTERVAL)


# =============================================================================
# App factory
# =============================================================================

def create_app(ctx: EngineContext) -> Starlette:
    """Status app whose lifespan owns the polling loop and the restore on exit."""

    @contextlib.asynccontextmanager
    async def lifespan(app):
        async with anyio.create_task_group() as tg:
            tg.start_soon(poll_loop, ctx)
            try:
                yield
            finally:
                ctx.request_stop()
        shutdown(ctx)

    return create_status_app(ctx, lifespan=lifespan)


# =============================================================================
# Startup banner + port utilities
# =============================================================================

def print_startup_banner(ctx: EngineContext, status_port: Optional[int]) -> None:
    """Print startup banner to stderr."""
    config = ctx.config
    print(f"{LOG_PREFIX} Intercepting new maps as {ctx.node_name}", file=sys.stderr)
    print(f"{LOG_PREFIX} Relay shape: {config.topology}", file=sys.stderr)
    print(f"{LOG_PREFIX} Link following: {'ENABLED' if config.follow_links else 'disabled'}", file=sys.stderr)
    print(f"{LOG_PREFIX} libmapper: {'AVAILABLE' if LIBMAPPER_AVAILABLE else 'not installed (pip install libmapper)'}",
          file=sys.stderr)
    if status_port is not None:
        print(f"{LOG_PREFIX} Status: http://{config.status_host}:{status_port}/status", file=sys.stderr)
    else:
        print(f"{LOG_PREFIX} Status: disabled", file=sys.stderr)


def check_port_owner(host: str, port: int) -> Optional[str]:
    """Return None if the port is free, the node name if another agent holds it, else 'unknown'."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return None
        except OSError:
            pass

    try:
        resp = httpx.get(f"http://{host}:{port}/.well-known/greedymapper.json", timeout=1.0)
        if resp.status_code == 200:
            return resp.json().get("node") or "unknown"
    except (httpx.HTTPError, ValueError):
        pass
    return "unknown"


def find_free_port(host: str, start: int) -> int:
    """Find a free port in start .. start+STATUS_PORT_SEARCH."""
    for port in range(start, start + STATUS_PORT_SEARCH + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue
    raise RuntimeError(f"No free ports in range {start}-{start + STATUS_PORT_SEARCH}")


# =============================================================================
# Main entry point
# =============================================================================

def main() -> None:
    """Entry point — start the node, serve status if enabled, restore on exit."""
    config = AgentConfig.from_env()
    try:
        ctx = start(config)
    except InitializationError as e:
        print(f"{LOG_PREFIX} Initialization failed: {e}", file=sys.stderr)
        sys.exit(1)

    if not config.status_enabled:
        print_startup_banner(ctx, None)
        run_forever(ctx)
        return

    port = config.status_port
    owner = check_port_owner(config.status_host, port)
    if owner is not None:
        port = find_free_port(config.status_host, config.status_port)
        print(f"{LOG_PREFIX} Status port {config.status_port} is taken by {owner}, using {port}",
              file=sys.stderr)
    print_startup_banner(ctx, port)

    try:
        uvicorn.run(create_app(ctx), host=config.status_host, port=port, log_level="warning")
    finally:
        if not ctx.restored:
            shutdown(ctx)


if __name__ == "__main__":
    main()
