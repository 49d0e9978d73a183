"""
Mesh runtime interface — ABC for the node handle the engine drives.

Depends on: models
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional, Union

from greedymapper.models import (
    Direction,
    LinkEvent,
    MapDirection,
    MapEvent,
    MapRecord,
    Property,
    Signal,
    SignalRef,
)

SignalHandler = Callable[[Signal, Any], None]
TopologyCallback = Callable[[Union[MapEvent, LinkEvent]], None]


class InitializationError(RuntimeError):
    """The node or its topology subscription could not be created."""


class MeshRuntime(ABC):
    """A node on the mesh plus a view of the shared topology database.

    Backends are selected by name in app.create_runtime(). All calls are made
    from the polling thread; callbacks fire only inside poll().
    """

    # -- Node lifecycle --

    @property
    @abstractmethod
    def name(self) -> str:
        """Full node name as assigned by the mesh (e.g. 'greedyMapper.1')."""
        ...

    @property
    def backend(self) -> str:
        return type(self).__name__

    @abstractmethod
    def ready(self) -> bool:
        ...

    @abstractmethod
    def poll(self, timeout_ms: int = 0) -> int:
        """Deliver pending topology and value events. Returns the number handled."""
        ...

    @abstractmethod
    def release(self) -> None:
        """Release the node and everything it owns."""
        ...

    # -- Signals --

    @abstractmethod
    def add_input(self, name: str, length: int, value_type: str,
                  minimum: Any = None, maximum: Any = None,
                  handler: Optional[SignalHandler] = None) -> Signal:
        ...

    @abstractmethod
    def add_output(self, name: str, length: int, value_type: str,
                   minimum: Any = None, maximum: Any = None) -> Signal:
        ...

    @abstractmethod
    def update(self, ref: SignalRef, value: Any) -> None:
        """Set a local signal's value and send it along its outgoing maps."""
        ...

    @abstractmethod
    def find_signal(self, name: str, direction: Direction) -> Optional[Signal]:
        """Look up a signal on this node by name and direction."""
        ...

    @abstractmethod
    def signals(self, direction: Optional[Direction] = None) -> list[Signal]:
        """Signals owned by this node."""
        ...

    @abstractmethod
    def lookup(self, ref: SignalRef) -> Optional[Signal]:
        """Resolve any signal on the mesh from the topology database."""
        ...

    # -- Maps --

    @abstractmethod
    def create_map(self, sources: Iterable[Signal], destination: Signal) -> MapRecord:
        """Stage a map. Nothing reaches the mesh until push()."""
        ...

    def set_property(self, record: MapRecord, prop: Property) -> None:
        record.properties[prop.name] = prop

    @abstractmethod
    def push(self, record: MapRecord) -> None:
        """Submit the map and its properties. Upserts when it already exists."""
        ...

    @abstractmethod
    def release_map(self, record: MapRecord) -> None:
        ...

    @abstractmethod
    def find_map(self, sources: Iterable[SignalRef], destination: SignalRef) -> Optional[MapRecord]:
        """Current state of a map in the database, or None if it does not exist."""
        ...

    @abstractmethod
    def maps(self, ref: SignalRef, direction: MapDirection) -> list[MapRecord]:
        ...

    def map_properties(self, record: MapRecord) -> list[Property]:
        """Properties as (name, length, type, value) entries."""
        return list(record.properties.values())

    # -- Topology subscription --

    @abstractmethod
    def subscribe(self, callback: TopologyCallback) -> None:
        """Register a callback for map (and link) events."""
        ...

    def link(self, source_node: str, destination_node: str) -> None:
        """Request a node-to-node link. Backends without links ignore this."""
        pass
