"""
Restoration engine — on shutdown, turn every relay chain back into a direct map.

Works from the live topology: each signal the node owns is asked for its
incoming and outgoing maps. The registry is only consulted for the
forwarding links of three-hop relays, which the mesh does not see.

Depends on: config, models, registry, context, mesh/runtime
"""

import sys
from typing import Optional

from greedymapper.config import LOG_PREFIX
from greedymapper.context import EngineContext
from greedymapper.models import MapDirection, MapRecord, Signal, SignalRef


class Restorer:
    """Reverses the splits made by Rerouter, then releases the node."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    def restore_all(self) -> list[MapRecord]:
        """Recreate the original direct maps. Runs at most once per context."""
        ctx = self.ctx
        if ctx.restored:
            return []
        ctx.restored = True

        runtime = ctx.runtime
        restored: list[MapRecord] = []
        handled_hops: set = set()
        spent_hops: dict = {}

        print(f"{LOG_PREFIX} Cleaning up!", file=sys.stderr)
        for signal in runtime.signals():
            outgoing = runtime.maps(signal.ref, MapDirection.OUTGOING)
            if not outgoing:
                self._explain_skip(signal)
                continue

            for hop in outgoing:
                if hop.key in handled_hops:
                    continue
                handled_hops.add(hop.key)

                upstream = self._resolve_sources(hop)
                if upstream is None:
                    continue
                sources, upstream_hops = upstream

                # The outgoing hop carries the original properties; the bypass hop stays bare
                direct = runtime.create_map(sources, hop.destination)
                for prop in runtime.map_properties(hop):
                    runtime.set_property(direct, prop)
                runtime.push(direct)
                restored.append(direct)
                ctx.counters.maps_restored += 1
                print(f"{LOG_PREFIX} Restored {direct}", file=sys.stderr)

                runtime.release_map(hop)
                for prior in upstream_hops:
                    spent_hops[prior.key] = prior

        # Bypass hops may feed several downstream hops; release them last
        for prior in spent_hops.values():
            runtime.release_map(prior)

        runtime.release()
        ctx.registry.clear()
        return restored

    def _resolve_sources(self, hop: MapRecord) -> Optional[tuple[list[Signal], list[MapRecord]]]:
        """Map each source of a downstream hop back to the original upstream signal."""
        sources: list[Signal] = []
        upstream_hops: list[MapRecord] = []
        for source in hop.sources:
            if source.node != self.ctx.node_name:
                sources.append(source)
                continue
            incoming = self._incoming_for(source.ref)
            if incoming is None:
                self.ctx.counters.relays_abandoned += 1
                print(f"{LOG_PREFIX} Skipping {hop}: no incoming map for {source.ref}", file=sys.stderr)
                return None
            sources.extend(incoming.sources)
            upstream_hops.append(incoming)
        return sources, upstream_hops

    def _incoming_for(self, ref: SignalRef) -> Optional[MapRecord]:
        """The map feeding a mirror, following a three-hop forwarding link if needed."""
        runtime = self.ctx.runtime
        incoming = runtime.maps(ref, MapDirection.INCOMING)
        if not incoming:
            feeder = self._feeder_of(ref)
            if feeder is None:
                return None
            incoming = runtime.maps(feeder, MapDirection.INCOMING)
            if not incoming:
                return None
        if len(incoming) > 1:
            print(f"{LOG_PREFIX} {ref} has {len(incoming)} incoming maps, using {incoming[0]}",
                  file=sys.stderr)
        return incoming[0]

    def _feeder_of(self, ref: SignalRef) -> Optional[SignalRef]:
        """The input mirror whose forwarding handler writes to ref."""
        for binding in self.ctx.registry.bindings():
            if binding.mirror.ref != ref and ref in binding.targets:
                return binding.mirror.ref
        return None

    def _explain_skip(self, signal: Signal) -> None:
        binding = self.ctx.registry.binding_for(signal.ref)
        forwards_to = [t for t in binding.targets if t != signal.ref] if binding else []
        if forwards_to:
            # Three-hop input mirror: restored from its output mirror's hop
            return
        self.ctx.counters.relays_abandoned += 1
        print(f"{LOG_PREFIX} Skipping {signal.ref}: no outgoing map (incomplete relay)", file=sys.stderr)
