"""
Configuration constants, environment variables, and feature flags.

This is a leaf module with no internal dependencies.
"""

import os

# =============================================================================
# Identity
# =============================================================================

AGENT_NAME = os.environ.get("GREEDYMAPPER_NAME", "greedyMapper")
DEFAULT_PORT = int(os.environ.get("GREEDYMAPPER_PORT", "9000"))
LOG_PREFIX = "[greedyMapper]"

# =============================================================================
# Mesh backend
# =============================================================================

BACKENDS = ("libmapper", "local")
MESH_BACKEND = os.environ.get("GREEDYMAPPER_BACKEND", "libmapper").lower()

# =============================================================================
# Polling
# =============================================================================

POLL_TIMEOUT_MS = int(os.environ.get("GREEDYMAPPER_POLL_MS", "100"))
READY_POLL_INTERVAL = 0.05      # seconds between readiness polls (50 ms)
READY_TIMEOUT = 10.0            # give up waiting for the node after this long
STATUS_LOOP_INTERVAL = 0.01     # seconds yielded to the HTTP server between polls

# =============================================================================
# Relay shape
# =============================================================================

TOPOLOGY_TWO_HOP = "two-hop"
TOPOLOGY_THREE_HOP = "three-hop"
RELAY_TOPOLOGY = os.environ.get("GREEDYMAPPER_TOPOLOGY", TOPOLOGY_TWO_HOP).lower()

FOLLOW_LINKS = os.environ.get("GREEDYMAPPER_FOLLOW_LINKS", "false").lower() == "true"

MIRROR_NAME_PREFIX = "signal"   # mirrors are named signal/0, signal/1, ...
DEFAULT_SIGNAL_LENGTH = 1
DEFAULT_SIGNAL_TYPE = "f"

# =============================================================================
# Status endpoint
# =============================================================================

STATUS_ENABLED = os.environ.get("GREEDYMAPPER_STATUS", "true").lower() == "true"
STATUS_HOST = os.environ.get("GREEDYMAPPER_STATUS_HOST", "127.0.0.1")
STATUS_PORT = int(os.environ.get("GREEDYMAPPER_STATUS_PORT", "9100"))
STATUS_PORT_SEARCH = 10         # try STATUS_PORT .. STATUS_PORT+10 if taken

# =============================================================================
# Optional Dependencies (detected at import time)
# =============================================================================

try:
    import libmapper  # noqa: F401
    LIBMAPPER_AVAILABLE = True
except ImportError:
    LIBMAPPER_AVAILABLE = False
