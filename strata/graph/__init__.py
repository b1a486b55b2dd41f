"""
Strata Graph - Dependency graph of declared resources.
"""

from strata.graph.builder import GraphBuilder
from strata.graph.model import DependencyGraph, ResourceNode, find_cycle, topological_sort

__all__ = [
    "DependencyGraph",
    "GraphBuilder",
    "ResourceNode",
    "find_cycle",
    "topological_sort",
]
