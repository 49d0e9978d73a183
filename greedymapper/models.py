"""
Data models — pure data classes with no business logic.

Depends on: config
"""

import copy
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from greedymapper import config


# =============================================================================
# Enums
# =============================================================================

class Direction(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


class MapDirection(str, Enum):
    """Which side of a signal a map is attached to."""
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MapAction(str, Enum):
    """Topology-change actions broadcast by the mesh database."""
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class MapState(str, Enum):
    STAGED = "staged"        # built locally, not yet pushed
    ACTIVE = "active"        # present in the topology database
    RELEASED = "released"


class MirrorRole(str, Enum):
    """What a mirror signal stands in for."""
    RELAY_DESTINATION = "relay-destination"  # input mirror shadowing a map source
    RELAY_SOURCE = "relay-source"            # output mirror shadowing a map destination


class FilterAction(str, Enum):
    PROCESS = "process"
    SKIP = "skip"


# =============================================================================
# Signals
# =============================================================================

@dataclass(frozen=True)
class SignalRef:
    """Identity of a signal on the mesh: owning node + signal name."""
    node: str
    name: str

    @classmethod
    def parse(cls, path: str) -> "SignalRef":
        """Parse 'node/name' (a leading slash is tolerated). Names may contain '/'."""
        node, _, name = path.lstrip("/").partition("/")
        return cls(node=node, name=name)

    def __str__(self) -> str:
        return f"{self.node}/{self.name}"


@dataclass
class Signal:
    """A named, typed, directional data endpoint hosted by a node."""
    name: str
    direction: Direction
    node: str
    length: int = config.DEFAULT_SIGNAL_LENGTH
    value_type: str = config.DEFAULT_SIGNAL_TYPE   # 'f' | 'i' | 'd'
    minimum: Optional[Any] = None
    maximum: Optional[Any] = None

    @property
    def ref(self) -> SignalRef:
        return SignalRef(node=self.node, name=self.name)

    def __str__(self) -> str:
        return str(self.ref)


# =============================================================================
# Maps
# =============================================================================

@dataclass(frozen=True)
class Property:
    """One entry of a map's property bag, as the mesh reports it."""
    name: str
    length: int
    type: str
    value: Any

    @classmethod
    def of(cls, name: str, value: Any) -> "Property":
        """Build a property, inferring length and type code from the value."""
        if isinstance(value, (list, tuple)):
            items = list(value)
            sample = items[0] if items else 0.0
            return cls(name=name, length=len(items), type=_type_code(sample), value=tuple(items))
        return cls(name=name, length=1, type=_type_code(value), value=value)


def _type_code(value: Any) -> str:
    if isinstance(value, bool):
        return "b"
    if isinstance(value, int):
        return "i"
    if isinstance(value, float):
        return "f"
    return "s"


MapKey = tuple  # (tuple[SignalRef, ...], SignalRef)


@dataclass
class MapRecord:
    """A directed routing edge from one or more sources to a destination."""
    sources: list[Signal]
    destination: Signal
    properties: dict[str, Property] = field(default_factory=dict)
    state: MapState = MapState.STAGED

    @property
    def key(self) -> MapKey:
        return (tuple(s.ref for s in self.sources), self.destination.ref)

    @property
    def source(self) -> Signal:
        return self.sources[0]

    def endpoints(self) -> list[Signal]:
        return [*self.sources, self.destination]

    def snapshot(self) -> "MapRecord":
        return copy.deepcopy(self)

    def __str__(self) -> str:
        srcs = ", ".join(str(s) for s in self.sources)
        return f"{srcs} -> {self.destination}"


def map_key_str(key: MapKey) -> str:
    sources, destination = key
    return f"{', '.join(str(s) for s in sources)} -> {destination}"


# =============================================================================
# Topology events
# =============================================================================

@dataclass
class MapEvent:
    """A map change with the property snapshot taken at delivery time."""
    record: MapRecord
    action: MapAction


@dataclass
class LinkEvent:
    """A node-to-node link change."""
    source_node: str
    destination_node: str
    action: MapAction


@dataclass
class FilterDecision:
    """Result of classifying a topology event."""
    action: FilterAction
    reason: str

    @property
    def process(self) -> bool:
        return self.action == FilterAction.PROCESS


# =============================================================================
# Node identity
# =============================================================================

@dataclass(frozen=True)
class NodeName:
    """A node name split into its logical name and the mesh-assigned ordinal."""
    logical: str
    ordinal: Optional[int] = None

    @classmethod
    def parse(cls, name: str) -> "NodeName":
        """'relay.2' -> ('relay', 2). A non-numeric suffix is part of the logical name."""
        name = (name or "").lstrip("/")
        base, sep, suffix = name.rpartition(".")
        if sep and base and suffix.isdigit():
            return cls(logical=base, ordinal=int(suffix))
        return cls(logical=name)

    def __str__(self) -> str:
        if self.ordinal is None:
            return self.logical
        return f"{self.logical}.{self.ordinal}"


# =============================================================================
# Relay bookkeeping
# =============================================================================

@dataclass
class MirrorBinding:
    """Links one remote signal to the local mirror shadowing it."""
    remote: SignalRef
    role: MirrorRole
    mirror: Signal
    # Downstream mirrors the forwarding handler pushes to, in registration order
    targets: list[SignalRef] = field(default_factory=list)


@dataclass
class RelayChain:
    """One split map: the original endpoints and the hops that replaced it."""
    sources: tuple[SignalRef, ...]
    destination: SignalRef
    mirrors: list[SignalRef]
    bypass: list[MapKey]     # one per original source
    downstream: MapKey       # carries the original properties
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def key(self) -> MapKey:
        return (self.sources, self.destination)

    def to_dict(self) -> dict:
        return {
            "sources": [str(s) for s in self.sources],
            "destination": str(self.destination),
            "mirrors": [str(m) for m in self.mirrors],
            "bypass": [map_key_str(k) for k in self.bypass],
            "downstream": map_key_str(self.downstream),
            "created_at": self.created_at,
        }


# =============================================================================
# Agent configuration
# =============================================================================

@dataclass
class AgentConfig:
    """Runtime settings for one agent instance."""
    name: str = config.AGENT_NAME
    port: int = config.DEFAULT_PORT
    backend: str = config.MESH_BACKEND
    topology: str = config.TOPOLOGY_TWO_HOP
    follow_links: bool = False
    poll_timeout_ms: int = config.POLL_TIMEOUT_MS
    status_enabled: bool = False
    status_host: str = config.STATUS_HOST
    status_port: int = config.STATUS_PORT

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Snapshot the environment-derived settings from config."""
        return cls(
            name=os.environ.get("GREEDYMAPPER_NAME", config.AGENT_NAME),
            port=int(os.environ.get("GREEDYMAPPER_PORT", str(config.DEFAULT_PORT))),
            backend=config.MESH_BACKEND,
            topology=config.RELAY_TOPOLOGY,
            follow_links=config.FOLLOW_LINKS,
            poll_timeout_ms=config.POLL_TIMEOUT_MS,
            status_enabled=config.STATUS_ENABLED,
            status_host=config.STATUS_HOST,
            status_port=config.STATUS_PORT,
        )
