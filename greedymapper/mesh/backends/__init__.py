"""
Mesh backend package — concrete MeshRuntime implementations.
"""

from greedymapper.mesh.backends.libmapper import LibmapperNode
from greedymapper.mesh.backends.local import LocalNode, TopologyDatabase

__all__ = ["LibmapperNode", "LocalNode", "TopologyDatabase"]
