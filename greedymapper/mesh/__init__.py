"""
Mesh runtime abstraction — the node handle interface and its backends.
"""

from greedymapper.mesh.runtime import InitializationError, MeshRuntime

__all__ = ["InitializationError", "MeshRuntime"]
