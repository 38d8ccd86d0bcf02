"""
Reference dependency graph implementation.

This module provides utilities to compute the dependency graph of domain
classes and objects and detect circular references.
"""
from .graph import ReferenceGraph, CycleStatus, GraphNode

__all__ = ["ReferenceGraph", "CycleStatus", "GraphNode"]
