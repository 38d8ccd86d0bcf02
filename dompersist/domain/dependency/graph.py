"""
Implementation of the reference dependency graph.

This module computes the graph spanned by a dependency function (domain
classes referencing other classes, objects referencing unsaved objects,
objects referenced by dependents, ...), detects circular references and
provides a dependencies-first ordering, without touching the items themselves.
"""
from typing import Dict, Set, List, Optional, Any, Callable, Iterable
from enum import Enum
import logging
from pydantic import BaseModel, Field, ConfigDict

# Configure logging
logger = logging.getLogger("reference_graph")

class CycleStatus(Enum):
    """Status of cycle detection."""
    NO_CYCLE = 0
    CYCLE_DETECTED = 1

class GraphNode(BaseModel):
    """Represents a node in the reference graph."""
    item: Any = Field(exclude=True)  # The graph item (excluded from serialization)
    item_id: Any
    dependencies: Set[Any] = Field(default_factory=set)  # IDs of items this item depends on
    dependents: Set[Any] = Field(default_factory=set)  # IDs of items that depend on this item

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def add_dependency(self, dep_id: Any) -> None:
        self.dependencies.add(dep_id)

    def add_dependent(self, dep_id: Any) -> None:
        self.dependents.add(dep_id)

    def __str__(self) -> str:
        return f"Node({self.item_id}, deps={len(self.dependencies)}, dependents={len(self.dependents)})"

    def __repr__(self) -> str:
        return self.__str__()

class ReferenceGraph(BaseModel):
    """
    Computes and maintains a dependency graph over arbitrary items.

    This class provides methods to:
    1. Build the graph reachable from a set of root items
    2. Detect cycles in the graph
    3. Get a topological sort of items (dependencies first)
    4. Query item relationships in the graph
    """
    nodes: Dict[Any, GraphNode] = Field(default_factory=dict)  # Map of item ID to its node
    cycles: List[List[Any]] = Field(default_factory=list)      # List of detected cycles

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def build_graph(self, roots: Iterable[Any],
                    get_dependencies: Callable[[Any], Iterable[Any]],
                    get_id: Optional[Callable[[Any], Any]] = None) -> CycleStatus:
        """
        Build the graph of everything reachable from ``roots``.

        Args:
            roots: Items to start from
            get_dependencies: Returns the items an item depends on
            get_id: Optional function to get an item's ID (defaults to ``id()``)

        Returns:
            CycleStatus indicating if any cycles were detected
        """
        item_id_func = get_id if get_id is not None else id

        # Clear existing graph
        self.nodes.clear()
        self.cycles.clear()

        # First, collect all items and their dependencies (BFS)
        items_to_process = list(roots)
        item_dependencies: Dict[Any, List[Any]] = {}

        while items_to_process:
            item = items_to_process.pop(0)
            item_id = item_id_func(item)

            # Skip if already processed
            if item_id in item_dependencies:
                continue

            if item_id not in self.nodes:
                self.nodes[item_id] = GraphNode(item=item, item_id=item_id)

            dep_ids: List[Any] = []
            for dep in get_dependencies(item):
                dep_id = item_id_func(dep)
                if dep_id not in dep_ids:
                    dep_ids.append(dep_id)

                if dep_id not in self.nodes:
                    self.nodes[dep_id] = GraphNode(item=dep, item_id=dep_id)

                # Set up bidirectional relationship
                self.nodes[item_id].add_dependency(dep_id)
                self.nodes[dep_id].add_dependent(item_id)

                if dep_id not in item_dependencies:
                    items_to_process.append(dep)

            item_dependencies[item_id] = dep_ids

        # Now detect cycles (DFS)
        visited: Set[Any] = set()  # Nodes we've fully processed
        path: List[Any] = []       # Nodes in current path

        def find_cycles(node_id: Any) -> None:
            if node_id in visited:
                return

            # If in current path, we found a cycle
            if node_id in path:
                cycle = path[path.index(node_id):] + [node_id]
                logger.debug(f"Detected cycle: {cycle}")
                self.cycles.append(cycle)
                return

            path.append(node_id)
            for dep_id in item_dependencies.get(node_id, []):
                find_cycles(dep_id)
            path.pop()
            visited.add(node_id)

        for node_id in list(self.nodes):
            find_cycles(node_id)

        logger.debug(f"Built reference graph with {len(self.nodes)} nodes")
        if self.cycles:
            logger.debug(f"Detected {len(self.cycles)} cycles in the graph")
            return CycleStatus.CYCLE_DETECTED
        return CycleStatus.NO_CYCLE

    def get_node(self, item_id: Any) -> Optional[GraphNode]:
        """Get a node by item ID."""
        return self.nodes.get(item_id)

    def get_dependent_ids(self, item_id: Any) -> Set[Any]:
        """Get IDs of items that depend on this item."""
        node = self.get_node(item_id)
        if node:
            return node.dependents
        return set()

    def is_graph_root(self, item_id: Any) -> bool:
        """
        Check if an item is a root in the graph.

        A root is an item that no other item depends on.
        """
        node = self.get_node(item_id)
        if node:
            return len(node.dependents) == 0
        return True  # If not in graph, consider it a root

    def items(self) -> List[Any]:
        """All items in discovery order."""
        return [node.item for node in self.nodes.values()]

    def get_topological_sort(self) -> List[Any]:
        """
        Return items in topological order (dependencies first).

        Items on a cycle get the depth at which the cycle was entered, so the
        order stays deterministic but is arbitrary within the cycle.

        Returns:
            List of items in topological order
        """
        depths: Dict[Any, int] = {}

        def calculate_depth(node_id: Any, path: Optional[Set[Any]] = None) -> int:
            """Calculate maximum dependency depth for a node."""
            if path is None:
                path = set()

            if node_id in path:
                return 0

            if node_id in depths:
                return depths[node_id]

            path_copy = path.copy()
            path_copy.add(node_id)

            node = self.nodes.get(node_id)
            if not node or not node.dependencies:
                depths[node_id] = 0
                return 0

            max_depth = 0
            for dep_id in node.dependencies:
                if dep_id in self.nodes:
                    depth = calculate_depth(dep_id, path_copy) + 1
                    max_depth = max(max_depth, depth)

            depths[node_id] = max_depth
            return max_depth

        for node_id in self.nodes:
            if node_id not in depths:
                calculate_depth(node_id)

        # Stable sort keeps discovery order among equal depths
        sorted_nodes = sorted(self.nodes.keys(), key=lambda node_id: depths.get(node_id, 0))
        return [self.nodes[node_id].item for node_id in sorted_nodes]

    def get_cycles(self) -> List[List[Any]]:
        """Get all detected cycles in the graph."""
        return self.cycles

    def find_item_by_id(self, item_id: Any) -> Optional[Any]:
        """Find an item by its ID."""
        if item_id in self.nodes:
            return self.nodes[item_id].item
        return None
