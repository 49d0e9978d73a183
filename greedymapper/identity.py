"""
Self-reference filter — decides whether a topology event is ours to act on.

Pure classification only. Acting on a decision (splitting a map, following a
link) lives in reroute.py.

Depends on: models
"""

import sys
from typing import Union

from greedymapper.config import LOG_PREFIX
from greedymapper.models import (
    FilterAction,
    FilterDecision,
    LinkEvent,
    MapAction,
    MapEvent,
    NodeName,
)


# =============================================================================
# Ownership
# =============================================================================

def is_own_node(node: str, identity: NodeName) -> bool:
    """True if node is exactly this agent's node."""
    return NodeName.parse(node) == identity


def is_sibling_agent(node: str, identity: NodeName) -> bool:
    """True if node is another instance of this agent kind (same logical name, other ordinal)."""
    other = NodeName.parse(node)
    return other.logical == identity.logical and other.ordinal != identity.ordinal


def classify_nodes(nodes: list[str], identity: NodeName) -> FilterDecision:
    """Classify a set of endpoint nodes. Unparseable or empty nodes count as foreign."""
    for node in nodes:
        if not node:
            continue
        if is_own_node(node, identity):
            return FilterDecision(FilterAction.SKIP, f"{node} is this agent")
        if is_sibling_agent(node, identity):
            return FilterDecision(FilterAction.SKIP, f"{node} is another {identity.logical} instance")
    return FilterDecision(FilterAction.PROCESS, "foreign endpoints")


# =============================================================================
# Event classification
# =============================================================================

def classify(event: Union[MapEvent, LinkEvent], identity: NodeName) -> FilterDecision:
    """Decide PROCESS or SKIP for a map or link event."""
    if event.action != MapAction.ADDED:
        return FilterDecision(FilterAction.SKIP, f"action is {event.action.value}")

    if isinstance(event, LinkEvent):
        return classify_nodes([event.source_node, event.destination_node], identity)

    return classify_nodes([s.node for s in event.record.endpoints()], identity)


def log_decision(event: Union[MapEvent, LinkEvent], decision: FilterDecision) -> None:
    if isinstance(event, LinkEvent):
        what = f"link {event.source_node} -> {event.destination_node}"
    else:
        what = f"map {event.record}"
    if decision.process:
        print(f"{LOG_PREFIX} Got new {what}", file=sys.stderr)
    elif event.action == MapAction.ADDED:
        print(f"{LOG_PREFIX} Skipping {what} ({decision.reason})", file=sys.stderr)
