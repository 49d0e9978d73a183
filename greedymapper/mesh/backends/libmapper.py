"""
libmapper backend — drives a real libmapper device and graph.

Targets the libmapper 2.x Python bindings (`pip install libmapper`). The
device hosts the mirror signals; a separate graph plays the monitor role,
watching every map on the network.

Depends on: config, models, mesh/runtime
"""

import sys
from typing import Any, Iterable, Optional

from greedymapper.config import LIBMAPPER_AVAILABLE, LOG_PREFIX
from greedymapper.mesh.runtime import InitializationError, MeshRuntime, SignalHandler, TopologyCallback
from greedymapper.models import (
    Direction,
    MapAction,
    MapDirection,
    MapEvent,
    MapRecord,
    MapState,
    Property,
    Signal,
    SignalRef,
)

if LIBMAPPER_AVAILABLE:
    import libmapper as mpr

# Managed by libmapper itself; copying them onto a new map is meaningless
_INTRINSIC_MAP_PROPERTIES = frozenset({"id", "status", "is_local", "num_sigs_in", "version", "data"})


def _type_enum(value_type: str):
    return {"i": mpr.Type.INT32, "d": mpr.Type.DOUBLE}.get(value_type, mpr.Type.FLOAT)


def _type_code(type_enum) -> str:
    if type_enum == mpr.Type.INT32:
        return "i"
    if type_enum == mpr.Type.DOUBLE:
        return "d"
    return "f"


class LibmapperNode(MeshRuntime):
    """A libmapper device plus a graph subscribed to every map on the network."""

    def __init__(self, name: str, port: Optional[int] = None):
        if not LIBMAPPER_AVAILABLE:
            raise InitializationError("libmapper backend unavailable (pip install libmapper)")
        try:
            self._graph = mpr.Graph()
            self._device = mpr.Device(name, self._graph)
        except Exception as e:
            raise InitializationError(f"could not create libmapper device '{name}': {e}") from e
        if port is not None:
            print(f"{LOG_PREFIX} libmapper picks its own ports; ignoring port {port}", file=sys.stderr)
        self._local: dict[str, Any] = {}
        self._name: Optional[str] = None

    @property
    def name(self) -> str:
        if self._name is None:
            self._name = str(self._device[mpr.Property.NAME])
        return self._name

    @property
    def backend(self) -> str:
        return "libmapper"

    def ready(self) -> bool:
        ready = self._device.ready
        return bool(ready() if callable(ready) else ready)

    def poll(self, timeout_ms: int = 0) -> int:
        self._graph.poll(0)
        return self._device.poll(timeout_ms) or 0

    def release(self) -> None:
        self._device.free()
        self._graph.free()
        self._local.clear()
        print(f"{LOG_PREFIX} Device {self._name} freed", file=sys.stderr)

    # -- Signals --

    def add_input(self, name, length, value_type, minimum=None, maximum=None, handler=None) -> Signal:
        model = Signal(name=name, direction=Direction.INPUT, node=self.name, length=length,
                       value_type=value_type, minimum=minimum, maximum=maximum)
        callback = None
        if handler is not None:
            def callback(sig, event, instance, value, timetag):
                handler(model, value)
        sig = self._device.add_signal(mpr.Signal.Direction.INCOMING, name, length,
                                      _type_enum(value_type), None, minimum, maximum, None,
                                      callback, mpr.Signal.Event.UPDATE)
        self._local[name] = sig
        return model

    def add_output(self, name, length, value_type, minimum=None, maximum=None) -> Signal:
        sig = self._device.add_signal(mpr.Signal.Direction.OUTGOING, name, length,
                                      _type_enum(value_type), None, minimum, maximum)
        self._local[name] = sig
        return Signal(name=name, direction=Direction.OUTPUT, node=self.name, length=length,
                      value_type=value_type, minimum=minimum, maximum=maximum)

    def update(self, ref: SignalRef, value: Any) -> None:
        if ref.node != self.name or ref.name not in self._local:
            raise ValueError(f"Cannot update {ref}: not owned by {self.name}")
        self._local[ref.name].set_value(value)

    def find_signal(self, name: str, direction: Direction) -> Optional[Signal]:
        sig = self._local.get(name)
        if sig is None:
            return None
        model = self._to_signal(sig)
        return model if model.direction == direction else None

    def signals(self, direction: Optional[Direction] = None) -> list[Signal]:
        models = [self._to_signal(s) for s in self._device.signals(mpr.Signal.Direction.ANY)]
        return [m for m in models if direction is None or m.direction == direction]

    def lookup(self, ref: SignalRef) -> Optional[Signal]:
        sig = self._resolve(ref)
        return self._to_signal(sig) if sig is not None else None

    # -- Maps --

    def create_map(self, sources: Iterable[Signal], destination: Signal) -> MapRecord:
        return MapRecord(sources=list(sources), destination=destination)

    def push(self, record: MapRecord) -> None:
        sources = [self._resolve(s.ref) for s in record.sources]
        destination = self._resolve(record.destination.ref)
        if destination is None or any(s is None for s in sources):
            raise ValueError(f"Cannot push {record}: endpoint not found in graph")
        native = mpr.Map(sources[0] if len(sources) == 1 else sources, destination)
        for prop in record.properties.values():
            native.set_property(prop.name, prop.value)
        native.push()
        record.state = MapState.ACTIVE

    def release_map(self, record: MapRecord) -> None:
        native = self._find_native(record.key)
        if native is not None:
            native.release()
        record.state = MapState.RELEASED

    def find_map(self, sources, destination) -> Optional[MapRecord]:
        native = self._find_native((tuple(sources), destination))
        return self._to_record(native) if native is not None else None

    def maps(self, ref: SignalRef, direction: MapDirection) -> list[MapRecord]:
        sig = self._resolve(ref)
        if sig is None:
            return []
        side = (mpr.Signal.Direction.INCOMING if direction == MapDirection.INCOMING
                else mpr.Signal.Direction.OUTGOING)
        return [self._to_record(m) for m in sig.maps(side)]

    # -- Topology subscription --

    def subscribe(self, callback: TopologyCallback) -> None:
        actions = {
            mpr.Graph.Event.NEW: MapAction.ADDED,
            mpr.Graph.Event.MODIFIED: MapAction.MODIFIED,
            mpr.Graph.Event.REMOVED: MapAction.REMOVED,
            mpr.Graph.Event.EXPIRED: MapAction.REMOVED,
        }

        def on_map(type_, native, event):
            action = actions.get(event)
            if action is not None:
                callback(MapEvent(record=self._to_record(native), action=action))

        self._graph.add_callback(on_map, mpr.Type.MAP)

    # -- Conversion --

    def _resolve(self, ref: SignalRef):
        if ref.node == self.name and ref.name in self._local:
            return self._local[ref.name]
        for sig in self._graph.signals():
            if self._ref_of(sig) == ref:
                return sig
        return None

    def _find_native(self, key):
        for native in self._graph.maps():
            if self._to_record(native).key == key:
                return native
        return None

    def _ref_of(self, sig) -> SignalRef:
        return SignalRef(node=str(sig.device()[mpr.Property.NAME]),
                         name=str(sig[mpr.Property.NAME]))

    def _to_signal(self, sig) -> Signal:
        ref = self._ref_of(sig)
        direction = (Direction.INPUT if sig[mpr.Property.DIRECTION] == mpr.Signal.Direction.INCOMING
                     else Direction.OUTPUT)
        return Signal(
            name=ref.name,
            direction=direction,
            node=ref.node,
            length=int(sig[mpr.Property.LENGTH] or 1),
            value_type=_type_code(sig[mpr.Property.TYPE]),
            minimum=sig[mpr.Property.MIN],
            maximum=sig[mpr.Property.MAX],
        )

    def _to_record(self, native) -> MapRecord:
        sources = [self._to_signal(s) for s in native.signals(mpr.Map.Location.SOURCE)]
        destination = self._to_signal(list(native.signals(mpr.Map.Location.DESTINATION))[0])
        properties = {}
        for index in range(native.num_properties):
            key, value = native.get_property(index)
            key = str(key)
            if key in _INTRINSIC_MAP_PROPERTIES:
                continue
            properties[key] = Property.of(key, value)
        return MapRecord(sources=sources, destination=destination,
                         properties=properties, state=MapState.ACTIVE)
