"""
In-process mesh backend — a shared topology database and node handles on it.

Every node handle sees the same database. Mutations are broadcast to every
node's event queue and delivered at that node's next poll(), so handlers see
the mesh the way a networked node would: asynchronously, one batch per poll.
Signal values travel along active maps the same way.

Depends on: models, mesh/runtime
"""

import sys
from collections import deque
from typing import Any, Iterable, Optional

from greedymapper.config import LOG_PREFIX
from greedymapper.mesh.runtime import MeshRuntime, SignalHandler, TopologyCallback
from greedymapper.models import (
    Direction,
    LinkEvent,
    MapAction,
    MapDirection,
    MapEvent,
    MapKey,
    MapRecord,
    MapState,
    NodeName,
    Signal,
    SignalRef,
    map_key_str,
)


# =============================================================================
# Topology database
# =============================================================================

class TopologyDatabase:
    """The shared view of nodes, signals, maps and links."""

    def __init__(self):
        self._nodes: dict[str, "LocalNode"] = {}
        self._ordinals: dict[str, int] = {}
        self._signals: dict[SignalRef, Signal] = {}
        self._maps: dict[MapKey, MapRecord] = {}
        self._links: set[tuple[str, str]] = set()

    def node(self, name: str, port: Optional[int] = None) -> "LocalNode":
        """Create a node handle on this database."""
        return LocalNode(self, name, port=port)

    # -- Read access --

    def signals(self, node: Optional[str] = None) -> list[Signal]:
        return [s for s in self._signals.values() if node is None or s.node == node]

    def signal(self, ref: SignalRef) -> Optional[Signal]:
        return self._signals.get(ref)

    def maps(self) -> list[MapRecord]:
        return [m.snapshot() for m in self._maps.values()]

    def find_map(self, sources: Iterable[str], destination: str) -> Optional[MapRecord]:
        """Look up a map by 'node/name' paths."""
        key = (tuple(SignalRef.parse(s) for s in sources), SignalRef.parse(destination))
        record = self._maps.get(key)
        return record.snapshot() if record else None

    def links(self) -> set[tuple[str, str]]:
        return set(self._links)

    # -- Node registry --

    def _register_node(self, node: "LocalNode", name: str) -> str:
        logical = NodeName.parse(name).logical
        ordinal = self._ordinals.get(logical, 0) + 1
        self._ordinals[logical] = ordinal
        full = str(NodeName(logical, ordinal))
        self._nodes[full] = node
        return full

    def _unregister_node(self, name: str) -> None:
        self._nodes.pop(name, None)
        self._links = {l for l in self._links if name not in l}

    def _broadcast(self, event) -> None:
        for node in list(self._nodes.values()):
            node._enqueue_topology(event)

    # -- Mutations --

    def _add_signal(self, signal: Signal) -> None:
        if signal.ref in self._signals:
            raise ValueError(f"Signal {signal.ref} already exists")
        self._signals[signal.ref] = signal

    def _remove_signal(self, ref: SignalRef) -> None:
        for key, record in list(self._maps.items()):
            if ref in key[0] or ref == key[1]:
                self._remove_map(key)
        self._signals.pop(ref, None)

    def _upsert_map(self, record: MapRecord) -> None:
        existing = self._maps.get(record.key)
        if existing is None:
            stored = record.snapshot()
            stored.state = MapState.ACTIVE
            self._maps[record.key] = stored
            self._broadcast(MapEvent(record=stored.snapshot(), action=MapAction.ADDED))
            return
        merged = dict(existing.properties)
        merged.update(record.properties)
        if merged != existing.properties:
            existing.properties = merged
            self._broadcast(MapEvent(record=existing.snapshot(), action=MapAction.MODIFIED))

    def _remove_map(self, key: MapKey) -> bool:
        record = self._maps.pop(key, None)
        if record is None:
            return False
        record.state = MapState.RELEASED
        self._broadcast(MapEvent(record=record, action=MapAction.REMOVED))
        return True

    def _add_link(self, source_node: str, destination_node: str) -> None:
        link = (source_node, destination_node)
        if link in self._links:
            return
        self._links.add(link)
        self._broadcast(LinkEvent(source_node, destination_node, MapAction.ADDED))

    def _route(self, ref: SignalRef, value: Any) -> None:
        """Send a value along every active map that has ref as a source."""
        for key, record in self._maps.items():
            if ref not in key[0]:
                continue
            receiver = self._nodes.get(record.destination.node)
            if receiver is not None:
                receiver._enqueue_value(record.destination.ref, value)


# =============================================================================
# Node handle
# =============================================================================

class LocalNode(MeshRuntime):
    """A node on an in-process TopologyDatabase.

    journal records every mesh-mutating call made through this handle, in order.
    """

    def __init__(self, database: TopologyDatabase, name: str, port: Optional[int] = None):
        self._db = database
        self._name = database._register_node(self, name)
        self.port = port
        self._ready = False
        self._released = False
        self._handlers: dict[SignalRef, SignalHandler] = {}
        self._values: dict[SignalRef, Any] = {}
        self._topology_queue: deque = deque()
        self._value_queue: deque = deque()
        self._callbacks: list[TopologyCallback] = []
        self.journal: list[tuple] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def backend(self) -> str:
        return "local"

    @property
    def database(self) -> TopologyDatabase:
        return self._db

    def ready(self) -> bool:
        return self._ready

    def poll(self, timeout_ms: int = 0) -> int:
        """Deliver the events queued before this call. Never blocks."""
        self._ready = True
        handled = 0

        for _ in range(len(self._topology_queue)):
            event = self._fresh(self._topology_queue.popleft())
            for callback in list(self._callbacks):
                callback(event)
            handled += 1

        for _ in range(len(self._value_queue)):
            ref, value = self._value_queue.popleft()
            signal = self._db.signal(ref)
            if signal is None:
                continue
            self._values[ref] = value
            handler = self._handlers.get(ref)
            if handler is not None:
                handler(signal, value)
            handled += 1

        return handled

    def release(self) -> None:
        if self._released:
            return
        for signal in self._db.signals(self._name):
            self._db._remove_signal(signal.ref)
        self._db._unregister_node(self._name)
        self._handlers.clear()
        self._callbacks.clear()
        self._released = True
        print(f"{LOG_PREFIX} Node {self._name} released", file=sys.stderr)

    # -- Signals --

    def add_input(self, name, length, value_type, minimum=None, maximum=None, handler=None) -> Signal:
        signal = self._add_signal(name, Direction.INPUT, length, value_type, minimum, maximum)
        if handler is not None:
            self._handlers[signal.ref] = handler
        return signal

    def add_output(self, name, length, value_type, minimum=None, maximum=None) -> Signal:
        return self._add_signal(name, Direction.OUTPUT, length, value_type, minimum, maximum)

    def _add_signal(self, name, direction, length, value_type, minimum, maximum) -> Signal:
        signal = Signal(
            name=name,
            direction=direction,
            node=self._name,
            length=length,
            value_type=value_type,
            minimum=minimum,
            maximum=maximum,
        )
        self._db._add_signal(signal)
        self.journal.append(("add_signal", str(signal.ref)))
        return signal

    def update(self, ref: SignalRef, value: Any) -> None:
        if ref.node != self._name:
            raise ValueError(f"Cannot update {ref}: not owned by {self._name}")
        self._values[ref] = value
        self._db._route(ref, value)

    def value(self, ref: SignalRef) -> Any:
        """Last value seen by a local signal."""
        return self._values.get(ref)

    def find_signal(self, name: str, direction: Direction) -> Optional[Signal]:
        signal = self._db.signal(SignalRef(self._name, name))
        if signal is None or signal.direction != direction:
            return None
        return signal

    def signals(self, direction: Optional[Direction] = None) -> list[Signal]:
        return [s for s in self._db.signals(self._name)
                if direction is None or s.direction == direction]

    def lookup(self, ref: SignalRef) -> Optional[Signal]:
        return self._db.signal(ref)

    # -- Maps --

    def create_map(self, sources: Iterable[Signal], destination: Signal) -> MapRecord:
        return MapRecord(sources=list(sources), destination=destination)

    def push(self, record: MapRecord) -> None:
        self._db._upsert_map(record)
        record.state = MapState.ACTIVE
        self.journal.append(("push", map_key_str(record.key)))

    def release_map(self, record: MapRecord) -> None:
        self._db._remove_map(record.key)
        record.state = MapState.RELEASED
        self.journal.append(("release_map", map_key_str(record.key)))

    def find_map(self, sources, destination) -> Optional[MapRecord]:
        record = self._db._maps.get((tuple(sources), destination))
        return record.snapshot() if record else None

    def maps(self, ref: SignalRef, direction: MapDirection) -> list[MapRecord]:
        found = []
        for key, record in self._db._maps.items():
            if direction == MapDirection.INCOMING and key[1] == ref:
                found.append(record.snapshot())
            elif direction == MapDirection.OUTGOING and ref in key[0]:
                found.append(record.snapshot())
        return found

    # -- Topology subscription --

    def subscribe(self, callback: TopologyCallback) -> None:
        self._callbacks.append(callback)

    def link(self, source_node: str, destination_node: str) -> None:
        self._db._add_link(source_node, destination_node)
        self.journal.append(("link", source_node, destination_node))

    # -- Delivery --

    def _enqueue_topology(self, event) -> None:
        self._topology_queue.append(event)

    def _enqueue_value(self, ref: SignalRef, value: Any) -> None:
        self._value_queue.append((ref, value))

    def _fresh(self, event):
        """Refresh a map event's snapshot to the database state at delivery time."""
        if isinstance(event, MapEvent) and event.action != MapAction.REMOVED:
            current = self._db._maps.get(event.record.key)
            if current is not None:
                return MapEvent(record=current.snapshot(), action=event.action)
        return event
