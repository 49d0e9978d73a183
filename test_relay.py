#!/usr/bin/env python3
"""
Tests for the mirror registry and the rerouting engine.

Standalone script — no real network. Peers and the agent share one
in-process TopologyDatabase; every node is polled by hand so event
delivery order is explicit.
"""

import sys

from greedymapper.app import start
from greedymapper.config import TOPOLOGY_THREE_HOP
from greedymapper.mesh.backends import LocalNode, TopologyDatabase
from greedymapper.models import (
    AgentConfig,
    Direction,
    MapAction,
    MapEvent,
    MirrorRole,
    Property,
)
from greedymapper.reroute import Rerouter, make_dispatcher

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

GREEN = "\033[92m"
RED = "\033[91m"
BOLD = "\033[1m"
RESET = "\033[0m"

results: list[tuple[str, bool, str]] = []

SCENARIO_PROPS = {
    "src_min": 0.0,
    "src_max": 1.0,
    "dst_min": 0.0,
    "dst_max": 100.0,
    "mode": "linear",
}


def report(name: str, passed: bool, detail: str = "") -> None:
    mark = f"{GREEN}✓{RESET}" if passed else f"{RED}✗{RESET}"
    print(f"  {mark} {name}")
    if detail and not passed:
        print(f"      {detail}")
    results.append((name, passed, detail))


def make_agent(db: TopologyDatabase, name: str = "relay", runtime=None, **overrides):
    """Start an agent on the local backend."""
    config = AgentConfig(name=name, backend="local", **overrides)
    return start(config, runtime=runtime or db.node(name))


def make_peers(db: TopologyDatabase):
    """nodeA with an output, nodeB with an input."""
    a = db.node("nodeA")
    out1 = a.add_output("out1", 1, "f")
    b = db.node("nodeB")
    in1 = b.add_input("in1", 1, "f")
    return a, out1, b, in1


def connect(node, src, dst, **props):
    record = node.create_map([src], dst)
    for name, value in props.items():
        node.set_property(record, Property.of(name, value))
    node.push(record)
    return record


def journal_count(runtime: LocalNode, op: str, target: str = None) -> int:
    return sum(1 for entry in runtime.journal
               if entry[0] == op and (target is None or entry[1] == target))


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


def test_scenario_two_hop_split() -> None:
    """nodeA/out1 -> nodeB/in1 becomes two hops through relay/signal/0."""
    db = TopologyDatabase()
    ctx = make_agent(db)
    a, out1, b, in1 = make_peers(db)
    connect(a, out1, in1, **SCENARIO_PROPS)

    ctx.runtime.poll()

    mirror = f"{ctx.node_name}/signal/0"
    mirror_sig = db.signal(ctx.registry.chains()[0].mirrors[0]) if ctx.registry.chains() else None
    report("mirror signal/0 created", mirror_sig is not None and str(mirror_sig.ref) == mirror,
           str(mirror_sig))
    report("mirror matches source length/type",
           mirror_sig is not None and (mirror_sig.length, mirror_sig.value_type) == (1, "f"))

    bypass = db.find_map([str(out1.ref)], mirror)
    report("bypass hop exists", bypass is not None)
    report("bypass hop carries no properties", bypass is not None and bypass.properties == {},
           str(bypass.properties if bypass else None))

    downstream = db.find_map([mirror], str(in1.ref))
    expected = {k: Property.of(k, v) for k, v in SCENARIO_PROPS.items()}
    report("downstream hop exists", downstream is not None)
    report("downstream hop carries the original properties",
           downstream is not None and downstream.properties == expected,
           str(downstream.properties if downstream else None))

    report("original map released", db.find_map([str(out1.ref)], str(in1.ref)) is None)
    report("counter incremented", ctx.counters.maps_rerouted == 1)


def test_property_fidelity() -> None:
    """Every property, including ones the agent has never heard of, is copied verbatim."""
    db = TopologyDatabase()
    ctx = make_agent(db)
    a, out1, b, in1 = make_peers(db)
    props = {
        "expression": "y=x*100",
        "muted": False,
        "clip_min": "none",
        "clip_max": "fold",
        "x-color": [255, 128, 0],
        "x-weight": 0.25,
        "x-count": 3,
    }
    original = connect(a, out1, in1, **props)
    ctx.runtime.poll()

    downstream = db.find_map([f"{ctx.node_name}/signal/0"], str(in1.ref))
    report("downstream exists", downstream is not None)
    for name, prop in original.properties.items():
        copied = downstream.properties.get(name) if downstream else None
        report(f"{name} copied as {prop.type}[{prop.length}]", copied == prop, f"got {copied}")
    report("nothing extra added",
           downstream is not None and set(downstream.properties) == set(original.properties))


def test_duplicate_event_is_noop() -> None:
    """A redelivered new-map event does not build a second chain."""
    db = TopologyDatabase()
    ctx = make_agent(db)
    a, out1, b, in1 = make_peers(db)
    connect(a, out1, in1, **SCENARIO_PROPS)
    event = MapEvent(record=db.find_map([str(out1.ref)], str(in1.ref)), action=MapAction.ADDED)

    ctx.runtime.poll()
    dispatch = make_dispatcher(ctx)
    dispatch(event)
    dispatch(event)

    mirror = f"{ctx.node_name}/signal/0"
    original = f"{out1.ref} -> {in1.ref}"
    report("one mirror created", journal_count(ctx.runtime, "add_signal") == 1,
           str(ctx.runtime.journal))
    report("bypass pushed once", journal_count(ctx.runtime, "push", f"{out1.ref} -> {mirror}") == 1)
    report("downstream pushed once", journal_count(ctx.runtime, "push", f"{mirror} -> {in1.ref}") == 1)
    report("original released once", journal_count(ctx.runtime, "release_map", original) == 1)
    report("one chain recorded", len(ctx.registry.chains()) == 1)
    report("two maps on the mesh", len(db.maps()) == 2, str([str(m) for m in db.maps()]))


def test_recreated_direct_map_folds_into_chain() -> None:
    """Re-creating a map that is already relayed retires it and updates the existing hop."""
    db = TopologyDatabase()
    ctx = make_agent(db)
    a, out1, b, in1 = make_peers(db)
    connect(a, out1, in1, **SCENARIO_PROPS)
    ctx.runtime.poll()

    connect(a, out1, in1, mode="expon")
    ctx.runtime.poll()

    mirror = f"{ctx.node_name}/signal/0"
    downstream = db.find_map([mirror], str(in1.ref))
    report("direct map retired again", db.find_map([str(out1.ref)], str(in1.ref)) is None)
    report("still one mirror", journal_count(ctx.runtime, "add_signal") == 1)
    report("still one chain", len(ctx.registry.chains()) == 1)
    report("downstream hop took the new mode",
           downstream is not None and downstream.properties["mode"].value == "expon")
    report("other properties kept",
           downstream is not None and downstream.properties["dst_max"].value == 100.0)
    report("dedup counted", ctx.counters.maps_deduplicated == 1)


def test_mirror_reused_for_fan_out() -> None:
    """One source feeding two destinations shares a single mirror and bypass hop."""
    db = TopologyDatabase()
    ctx = make_agent(db)
    a, out1, b, in1 = make_peers(db)
    in2 = b.add_input("in2", 1, "f")
    connect(a, out1, in1, mode="linear")
    ctx.runtime.poll()
    connect(a, out1, in2, mode="expon")
    ctx.runtime.poll()

    mirror = f"{ctx.node_name}/signal/0"
    report("only one mirror created", journal_count(ctx.runtime, "add_signal") == 1)
    binding = ctx.registry.get(out1.ref, MirrorRole.RELAY_DESTINATION)
    report("registry has the binding", binding is not None and str(binding.mirror.ref) == mirror)
    report("one bypass hop on the mesh",
           sum(1 for m in db.maps() if str(m.destination.ref) == mirror) == 1)
    report("two downstream hops",
           db.find_map([mirror], str(in1.ref)) is not None
           and db.find_map([mirror], str(in2.ref)) is not None)
    report("each downstream hop keeps its own mode",
           db.find_map([mirror], str(in2.ref)).properties["mode"].value == "expon")

    again = ctx.registry.get_or_create(out1, MirrorRole.RELAY_DESTINATION)
    report("get_or_create returns the existing mirror", str(again.ref) == mirror)
    report("still no second signal", journal_count(ctx.runtime, "add_signal") == 1)


def test_values_pass_through_unchanged() -> None:
    """Values reach every destination through the relay, untransformed."""
    db = TopologyDatabase()
    ctx = make_agent(db)
    a, out1, b, in1 = make_peers(db)
    in2 = b.add_input("in2", 1, "f")
    connect(a, out1, in1, **SCENARIO_PROPS)
    connect(a, out1, in2)
    ctx.runtime.poll()

    a.update(out1.ref, 0.25)
    ctx.runtime.poll()
    b.poll()
    report("in1 received the raw value", b.value(in1.ref) == 0.25, str(b.value(in1.ref)))
    report("in2 received the raw value", b.value(in2.ref) == 0.25, str(b.value(in2.ref)))


def test_three_hop_split() -> None:
    """Three-hop configuration: input mirror forwards to an output mirror."""
    db = TopologyDatabase()
    ctx = make_agent(db, topology=TOPOLOGY_THREE_HOP)
    a, out1, b, in1 = make_peers(db)
    connect(a, out1, in1, **SCENARIO_PROPS)
    ctx.runtime.poll()

    inbound = ctx.runtime.find_signal("signal/0", Direction.INPUT)
    outbound = ctx.runtime.find_signal("signal/1", Direction.OUTPUT)
    report("input mirror created", inbound is not None)
    report("output mirror created", outbound is not None)
    report("input mirror forwards to output mirror",
           ctx.registry.binding_for(inbound.ref).targets == [outbound.ref])
    bypass = db.find_map([str(out1.ref)], str(inbound.ref))
    downstream = db.find_map([str(outbound.ref)], str(in1.ref))
    report("bypass hop bare", bypass is not None and bypass.properties == {})
    report("downstream hop carries properties",
           downstream is not None and downstream.properties["mode"].value == "linear")
    report("original released", db.find_map([str(out1.ref)], str(in1.ref)) is None)

    a.update(out1.ref, 0.75)
    ctx.runtime.poll()
    b.poll()
    report("value crosses all three hops", b.value(in1.ref) == 0.75, str(b.value(in1.ref)))


def test_convergent_map_split() -> None:
    """A map with two sources gets one mirror per source."""
    db = TopologyDatabase()
    ctx = make_agent(db)
    a, out1, b, in1 = make_peers(db)
    out2 = a.add_output("out2", 1, "f")
    record = a.create_map([out1, out2], in1)
    a.set_property(record, Property.of("expression", "y=x$0+x$1"))
    a.push(record)
    ctx.runtime.poll()

    chain = ctx.registry.chains()[0] if ctx.registry.chains() else None
    report("chain recorded", chain is not None)
    report("two mirrors", chain is not None and len(chain.mirrors) == 2)
    downstream = db.find_map([str(m) for m in chain.mirrors], str(in1.ref)) if chain else None
    report("convergent downstream hop",
           downstream is not None and downstream.properties["expression"].value == "y=x$0+x$1")
    report("original released", db.find_map([str(out1.ref), str(out2.ref)], str(in1.ref)) is None)


def test_stale_event_ignored() -> None:
    """A map removed before the agent polls is not split."""
    db = TopologyDatabase()
    ctx = make_agent(db)
    a, out1, b, in1 = make_peers(db)
    record = connect(a, out1, in1)
    a.release_map(record)

    ctx.runtime.poll()
    report("no mutating calls", ctx.runtime.journal == [], str(ctx.runtime.journal))
    report("no chain", ctx.registry.chains() == [])

    result = Rerouter(ctx).on_new_map(record)
    report("direct call also declines", result is None)


def test_handler_errors_do_not_escape() -> None:
    """A failing mesh call is reported and counted, and polling carries on."""

    class FailingPushNode(LocalNode):
        def push(self, record):
            raise RuntimeError("mesh unavailable")

    db = TopologyDatabase()
    ctx = make_agent(db, runtime=FailingPushNode(db, "relay"))
    a, out1, b, in1 = make_peers(db)
    connect(a, out1, in1)

    try:
        ctx.runtime.poll()
        raised = False
    except Exception:
        raised = True
    report("poll did not raise", not raised)
    report("error counted", ctx.counters.handler_errors == 1)
    report("original map untouched", db.find_map([str(out1.ref)], str(in1.ref)) is not None)


def test_link_following() -> None:
    """With link following on, a new foreign link is mirrored through the agent."""
    db = TopologyDatabase()
    ctx = make_agent(db, follow_links=True)
    a, out1, b, in1 = make_peers(db)
    a.link(a.name, b.name)
    ctx.runtime.poll()

    links = db.links()
    report("source linked to agent", (a.name, ctx.node_name) in links, str(links))
    report("agent linked to destination", (ctx.node_name, b.name) in links, str(links))
    report("counted", ctx.counters.links_followed == 1)

    db2 = TopologyDatabase()
    ctx2 = make_agent(db2)
    a2, _, b2, _ = make_peers(db2)
    a2.link(a2.name, b2.name)
    ctx2.runtime.poll()
    report("off by default", journal_count(ctx2.runtime, "link") == 0)


def test_released_hop_forgets_relay() -> None:
    """Once a relay loses its downstream hop, re-creating the map splits it again."""
    db = TopologyDatabase()
    ctx = make_agent(db)
    a, out1, b, in1 = make_peers(db)
    connect(a, out1, in1, mode="expon")
    ctx.runtime.poll()

    mirror = f"{ctx.node_name}/signal/0"
    b.release_map(db.find_map([mirror], str(in1.ref)))
    ctx.runtime.poll()
    report("relay forgotten when its hop goes", ctx.registry.chains() == [],
           str([c.to_dict() for c in ctx.registry.chains()]))

    connect(a, out1, in1, mode="linear")
    ctx.runtime.poll()

    downstream = db.find_map([mirror], str(in1.ref))
    report("direct map retired", db.find_map([str(out1.ref)], str(in1.ref)) is None)
    report("new downstream hop in place", downstream is not None, str([str(m) for m in db.maps()]))
    report("new hop has the new properties",
           downstream is not None and downstream.properties["mode"].value == "linear")
    report("mirror reused", journal_count(ctx.runtime, "add_signal") == 1)
    report("split counted twice, no dedup",
           (ctx.counters.maps_rerouted, ctx.counters.maps_deduplicated) == (2, 0))

    a.update(out1.ref, 0.5)
    ctx.runtime.poll()
    b.poll()
    report("values flow again", b.value(in1.ref) == 0.5, str(b.value(in1.ref)))


def test_incomplete_relay_rebuilt() -> None:
    """A recorded relay whose hop is already gone is rebuilt, not deduplicated."""
    db = TopologyDatabase()
    ctx = make_agent(db)
    a, out1, b, in1 = make_peers(db)
    connect(a, out1, in1, mode="expon")
    ctx.runtime.poll()

    # The agent has not polled since the hop went, so the relay is still on record
    mirror = f"{ctx.node_name}/signal/0"
    b.release_map(db.find_map([mirror], str(in1.ref)))
    direct = connect(a, out1, in1, mode="linear")
    report("stale relay still recorded", len(ctx.registry.chains()) == 1)

    chain = Rerouter(ctx).on_new_map(direct)
    downstream = db.find_map([mirror], str(in1.ref))
    report("relay rebuilt", chain is not None and downstream is not None)
    report("rebuilt hop has the new properties",
           downstream is not None and downstream.properties["mode"].value == "linear")
    report("direct map retired", db.find_map([str(out1.ref)], str(in1.ref)) is None)
    report("not counted as a duplicate", ctx.counters.maps_deduplicated == 0)


def test_three_hop_shared_destination() -> None:
    """Two three-hop maps into one destination get separate output mirrors and hops."""
    db = TopologyDatabase()
    ctx = make_agent(db, topology=TOPOLOGY_THREE_HOP)
    a, out1, b, in1 = make_peers(db)
    c = db.node("nodeC")
    outc = c.add_output("outc", 1, "f")
    connect(a, out1, in1, mode="linear")
    connect(c, outc, in1, expression="y=x*2")
    ctx.runtime.poll()

    chains = ctx.registry.chains()
    report("two relays", len(chains) == 2, str([ch.to_dict() for ch in chains]))
    outputs = {ch.sources[0]: ch.mirrors[1] for ch in chains}
    report("distinct output mirrors", len(set(outputs.values())) == 2, str(outputs))

    from_a = db.find_map([str(outputs.get(out1.ref))], str(in1.ref))
    from_c = db.find_map([str(outputs.get(outc.ref))], str(in1.ref))
    report("A's hop keeps A's properties",
           from_a is not None and set(from_a.properties) == {"mode"},
           str(from_a.properties if from_a else None))
    report("C's hop keeps C's properties",
           from_c is not None and set(from_c.properties) == {"expression"},
           str(from_c.properties if from_c else None))

    c.update(outc.ref, 0.125)
    ctx.runtime.poll()
    b.poll()
    report("C's values arrive", b.value(in1.ref) == 0.125, str(b.value(in1.ref)))


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def main() -> None:
    print(f"\n{BOLD}greedyMapper Relay Tests{RESET}")
    print("=" * 50)

    tests = [
        ("1. Scenario: two-hop split", test_scenario_two_hop_split),
        ("2. Property fidelity", test_property_fidelity),
        ("3. Duplicate event is a no-op", test_duplicate_event_is_noop),
        ("4. Re-created direct map", test_recreated_direct_map_folds_into_chain),
        ("5. Mirror reuse for fan-out", test_mirror_reused_for_fan_out),
        ("6. Value pass-through", test_values_pass_through_unchanged),
        ("7. Three-hop split", test_three_hop_split),
        ("8. Convergent map split", test_convergent_map_split),
        ("9. Stale event ignored", test_stale_event_ignored),
        ("10. Handler errors contained", test_handler_errors_do_not_escape),
        ("11. Link following", test_link_following),
        ("12. Released hop forgets relay", test_released_hop_forgets_relay),
        ("13. Incomplete relay rebuilt", test_incomplete_relay_rebuilt),
        ("14. Three-hop shared destination", test_three_hop_shared_destination),
    ]

    for label, test_fn in tests:
        print(f"\n{BOLD}{label}{RESET}")
        try:
            test_fn()
        except Exception as e:
            report(label, False, f"EXCEPTION: {e}")

    passed = sum(1 for _, ok, _ in results if ok)
    total = len(results)
    print(f"\n{'=' * 50}")
    if passed == total:
        print(f"{GREEN}{BOLD}All {total} checks passed.{RESET}")
    else:
        print(f"{BOLD}Results: {GREEN}{passed} passed{RESET}, {RED}{total - passed} failed{RESET}")
    sys.exit(0 if passed == total else 1)


if __name__ == "__main__":
    main()
