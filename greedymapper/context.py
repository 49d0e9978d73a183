"""
Engine context — everything one agent instance owns, passed explicitly.

Depends on: models, registry, mesh/runtime
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from greedymapper.mesh.runtime import MeshRuntime
from greedymapper.models import AgentConfig, NodeName
from greedymapper.registry import MirrorRegistry


@dataclass
class Counters:
    """Event tallies, reported by the status endpoint."""
    events_seen: int = 0
    events_skipped: int = 0
    maps_rerouted: int = 0
    maps_deduplicated: int = 0
    links_followed: int = 0
    maps_restored: int = 0
    relays_abandoned: int = 0
    handler_errors: int = 0


@dataclass
class EngineContext:
    """The node handle, its mirror registry, and the cancellation flag."""
    runtime: MeshRuntime
    config: AgentConfig
    registry: MirrorRegistry = None
    done: bool = False
    restored: bool = False
    counters: Counters = field(default_factory=Counters)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self):
        if self.registry is None:
            self.registry = MirrorRegistry(self.runtime)

    @property
    def identity(self) -> NodeName:
        return NodeName.parse(self.runtime.name)

    @property
    def node_name(self) -> str:
        return self.runtime.name

    def request_stop(self, *_args) -> None:
        """Ask the polling loop to exit after the current iteration."""
        self.done = True
