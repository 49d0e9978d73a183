"""
Rerouting engine — splits each new foreign map into hops through local mirrors.

Depends on: config, models, identity, registry, context, mesh/runtime
"""

import sys
from typing import Optional, Union

from greedymapper.config import LOG_PREFIX, TOPOLOGY_THREE_HOP
from greedymapper.context import EngineContext
from greedymapper.identity import classify, log_decision
from greedymapper.models import (
    LinkEvent,
    MapAction,
    MapEvent,
    MapRecord,
    MirrorRole,
    RelayChain,
    Signal,
    map_key_str,
)


class Rerouter:
    """Acts on events that passed the self-reference filter."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    # =========================================================================
    # Maps
    # =========================================================================

    def on_new_map(self, record: MapRecord) -> Optional[RelayChain]:
        """Replace a direct map with a relay chain. Returns the chain, or None if nothing was done."""
        runtime = self.ctx.runtime

        # The event may be stale by now; work from the live map
        current = runtime.find_map([s.ref for s in record.sources], record.destination.ref)
        if current is None:
            print(f"{LOG_PREFIX} Map {record} no longer exists, not splitting", file=sys.stderr)
            return None
        decision = classify(MapEvent(record=current, action=MapAction.ADDED), self.ctx.identity)
        if not decision.process:
            print(f"{LOG_PREFIX} Map {current} now touches {decision.reason}, not splitting", file=sys.stderr)
            return None

        existing = self.ctx.registry.chain(current.key)
        if existing is not None:
            if self._intact(existing):
                self._deduplicate(current, existing)
                return existing
            # Part of the old relay is gone; split afresh
            self.ctx.registry.drop_chain(existing.key)
            print(f"{LOG_PREFIX} Relay for {current} is incomplete, rebuilding it", file=sys.stderr)

        if self.ctx.config.topology == TOPOLOGY_THREE_HOP and len(current.sources) == 1:
            chain = self._split_three_hop(current)
        else:
            chain = self._split_two_hop(current)

        # Both hops are pushed; only now retire the original
        runtime.release_map(current)
        self.ctx.registry.add_chain(chain)
        self.ctx.counters.maps_rerouted += 1
        print(f"{LOG_PREFIX} Rerouted {current} via {', '.join(str(m) for m in chain.mirrors)}",
              file=sys.stderr)
        return chain

    def _split_two_hop(self, record: MapRecord) -> RelayChain:
        """source -> M (bare), M -> destination (original properties)."""
        registry = self.ctx.registry
        mirrors: list[Signal] = []
        bypass = []
        for source in record.sources:
            mirror = registry.get_or_create(source, MirrorRole.RELAY_DESTINATION)
            # M re-emits what it receives along its own outgoing maps
            registry.add_target(mirror.ref, mirror.ref)
            bypass.append(self._push_bypass(source, mirror))
            mirrors.append(mirror)

        downstream = self._push_downstream(record, mirrors)
        return RelayChain(
            sources=tuple(s.ref for s in record.sources),
            destination=record.destination.ref,
            mirrors=[m.ref for m in mirrors],
            bypass=bypass,
            downstream=downstream.key,
        )

    def _split_three_hop(self, record: MapRecord) -> RelayChain:
        """source -> IN (bare), IN forwards to OUT, OUT -> destination (original properties)."""
        registry = self.ctx.registry
        source = record.source
        inbound = registry.get_or_create(source, MirrorRole.RELAY_DESTINATION)
        # One output mirror per map, so maps sharing a destination keep separate hops
        outbound = registry.get_or_create(record.destination, MirrorRole.RELAY_SOURCE, scope=source.ref)
        registry.add_target(inbound.ref, outbound.ref)

        bypass = self._push_bypass(source, inbound)
        downstream = self._push_downstream(record, [outbound])
        return RelayChain(
            sources=(source.ref,),
            destination=record.destination.ref,
            mirrors=[inbound.ref, outbound.ref],
            bypass=[bypass],
            downstream=downstream.key,
        )

    def _push_bypass(self, source: Signal, mirror: Signal):
        """Raw pass-through hop. Re-pushing an existing one is a no-op upsert."""
        hop = self.ctx.runtime.create_map([source], mirror)
        self.ctx.runtime.push(hop)
        return hop.key

    def _push_downstream(self, record: MapRecord, mirrors: list[Signal]) -> MapRecord:
        hop = self.ctx.runtime.create_map(mirrors, record.destination)
        copy_properties(self.ctx, record, hop)
        self.ctx.runtime.push(hop)
        return hop

    def _intact(self, chain: RelayChain) -> bool:
        runtime = self.ctx.runtime
        return all(runtime.find_map(*hop) is not None for hop in [*chain.bypass, chain.downstream])

    def _deduplicate(self, current: MapRecord, chain: RelayChain) -> None:
        """A direct map reappeared alongside its relay: fold it into the existing chain."""
        runtime = self.ctx.runtime
        hop = runtime.find_map(*chain.downstream)
        copy_properties(self.ctx, current, hop)
        runtime.push(hop)
        runtime.release_map(current)
        self.ctx.counters.maps_deduplicated += 1
        print(f"{LOG_PREFIX} Relay for {current} already in place, retired duplicate", file=sys.stderr)

    def on_removed_map(self, record: MapRecord) -> None:
        """Forget relay chains that lost one of their hops."""
        for chain in self.ctx.registry.chains_using(record.key):
            self.ctx.registry.drop_chain(chain.key)
            print(f"{LOG_PREFIX} Hop {record} removed, relay for {map_key_str(chain.key)} forgotten",
                  file=sys.stderr)

    # =========================================================================
    # Links
    # =========================================================================

    def on_new_link(self, event: LinkEvent) -> None:
        """Pre-link both peers with this node so maps through it can form."""
        runtime = self.ctx.runtime
        runtime.link(event.source_node, runtime.name)
        runtime.link(runtime.name, event.destination_node)
        self.ctx.counters.links_followed += 1


def copy_properties(ctx: EngineContext, origin: MapRecord, target: MapRecord) -> None:
    """Copy every property of origin onto target, verbatim."""
    for prop in ctx.runtime.map_properties(origin):
        ctx.runtime.set_property(target, prop)


# =============================================================================
# Event dispatch
# =============================================================================

def make_dispatcher(ctx: EngineContext, rerouter: Optional[Rerouter] = None):
    """Build the topology callback: filter, then reroute. Errors never leave the handler."""
    rerouter = rerouter or Rerouter(ctx)

    def dispatch(event: Union[MapEvent, LinkEvent]) -> None:
        ctx.counters.events_seen += 1
        if isinstance(event, MapEvent) and event.action == MapAction.REMOVED:
            # Hops touch this node, so removals are tracked before filtering
            rerouter.on_removed_map(event.record)
        decision = classify(event, ctx.identity)
        log_decision(event, decision)
        if not decision.process:
            ctx.counters.events_skipped += 1
            return
        try:
            if isinstance(event, LinkEvent):
                if ctx.config.follow_links:
                    rerouter.on_new_link(event)
            else:
                rerouter.on_new_map(event.record)
        except Exception as e:
            ctx.counters.handler_errors += 1
            print(f"{LOG_PREFIX} Handling {type(event).__name__} raised: {e}", file=sys.stderr)

    return dispatch
