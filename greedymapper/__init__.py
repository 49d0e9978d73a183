"""
greedymapper — splits every new map on the mesh through this node, and puts them back on exit.
"""

__version__ = "0.1.0"
