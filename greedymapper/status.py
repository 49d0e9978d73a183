"""
Status endpoints — read-only JSON view of the agent for health checks and debugging.

Depends on: config, context
"""

from dataclasses import asdict

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from greedymapper.config import LIBMAPPER_AVAILABLE


def _get_ctx(request: Request):
    return getattr(request.app.state, "ctx", None)


# =============================================================================
# Well-Known Endpoint
# =============================================================================

async def handle_well_known(request: Request) -> JSONResponse:
    """Return /.well-known/greedymapper.json so siblings can identify this node."""
    ctx = _get_ctx(request)
    if ctx is None:
        return JSONResponse({"error": "Agent not initialized"}, status_code=503)

    identity = ctx.identity
    return JSONResponse({
        "greedymapper": True,
        "node": ctx.node_name,
        "logical_name": identity.logical,
        "ordinal": identity.ordinal,
        "backend": ctx.runtime.backend,
        "topology": ctx.config.topology,
        "mesh_port": ctx.config.port,
        "libmapper_available": LIBMAPPER_AVAILABLE,
    })


# =============================================================================
# Status
# =============================================================================

async def handle_status(request: Request) -> JSONResponse:
    """Return relay chains, mirrors and counters."""
    ctx = _get_ctx(request)
    if ctx is None:
        return JSONResponse({"error": "Agent not initialized"}, status_code=503)

    mirrors = [
        {
            "mirror": str(b.mirror.ref),
            "remote": str(b.remote),
            "role": b.role.value,
            "targets": [str(t) for t in b.targets],
        }
        for b in ctx.registry.bindings()
    ]
    return JSONResponse({
        "node": ctx.node_name,
        "ready": ctx.runtime.ready() if not ctx.restored else False,
        "stopping": ctx.done,
        "restored": ctx.restored,
        "started_at": ctx.started_at,
        "relays": [c.to_dict() for c in ctx.registry.chains()],
        "mirrors": mirrors,
        "counters": asdict(ctx.counters),
    })


def create_status_app(ctx, lifespan=None) -> Starlette:
    """Build the Starlette app serving the status routes for ctx."""
    app = Starlette(
        routes=[
            Route("/.well-known/greedymapper.json", handle_well_known, methods=["GET"]),
            Route("/status", handle_status, methods=["GET"]),
        ],
        lifespan=lifespan,
    )
    app.state.ctx = ctx
    return app
