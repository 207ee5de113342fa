"""
Dependency graph construction, cycle detection and ordering.

An edge from A to B means A consumes an output of B, so B is applied first
and destroyed last.
"""
import heapq
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set

from iamgraph.errors import CyclicDependencyError, DuplicateResourceError
from iamgraph.graph.resolver import Reference, resolve_references
from iamgraph.models.kinds import validate_declaration
from iamgraph.models.resource import ResourceDeclaration


class _Color(Enum):
    WHITE = 0   # unvisited
    GREY  = 1   # on the current DFS path
    BLACK = 2   # finished


class DependencyGraph:
    def __init__(self, nodes: Sequence[ResourceDeclaration], references: Iterable[Reference] = ()):
        self._nodes: Dict[str, ResourceDeclaration] = {}
        for decl in nodes:
            self._nodes[decl.address] = decl
        self._index = {addr: i for i, addr in enumerate(self._nodes)}
        self._deps: Dict[str, List[str]] = {addr: [] for addr in self._nodes}
        self._dependents: Dict[str, List[str]] = {addr: [] for addr in self._nodes}
        self.references: List[Reference] = []

        for ref in references:
            self.references.append(ref)
            if ref.target not in self._deps[ref.source]:
                self._deps[ref.source].append(ref.target)
                self._dependents[ref.target].append(ref.source)

    # ------------------------------------------------------------ access
    def __contains__(self, address: object) -> bool:
        return address in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    @property
    def addresses(self) -> List[str]:
        return list(self._nodes)

    def node(self, address: str) -> ResourceDeclaration:
        return self._nodes[address]

    def dependencies(self, address: str) -> List[str]:
        return list(self._deps[address])

    def dependents(self, address: str) -> List[str]:
        return list(self._dependents[address])

    def edges(self) -> List[tuple]:
        return [(src, dst) for src in self._nodes for dst in self._deps[src]]

    def transitive_dependents(self, address: str) -> Set[str]:
        return self._walk(address, self._dependents)

    def transitive_dependencies(self, address: str) -> Set[str]:
        return self._walk(address, self._deps)

    @staticmethod
    def _walk(start: str, adjacency: Dict[str, List[str]]) -> Set[str]:
        seen: Set[str] = set()
        stack = list(adjacency[start])
        while stack:
            addr = stack.pop()
            if addr in seen:
                continue
            seen.add(addr)
            stack.extend(adjacency[addr])
        return seen

    # ------------------------------------------------------------ analysis
    def find_cycle(self) -> Optional[List[str]]:
        """Three-color DFS. Returns the resources on the first cycle found."""
        color = {addr: _Color.WHITE for addr in self._nodes}
        path: List[str] = []

        def visit(addr: str) -> Optional[List[str]]:
            color[addr] = _Color.GREY
            path.append(addr)
            for dep in self._deps[addr]:
                if color[dep] is _Color.GREY:
                    return path[path.index(dep):]
                if color[dep] is _Color.WHITE:
                    found = visit(dep)
                    if found:
                        return found
            path.pop()
            color[addr] = _Color.BLACK
            return None

        for addr in self._nodes:
            if color[addr] is _Color.WHITE:
                cycle = visit(addr)
                if cycle:
                    return cycle
        return None

    def topological_order(self) -> List[str]:
        """
        Kahn's algorithm. Among nodes that are ready at the same time the one
        declared first wins, so the order is deterministic.
        """
        remaining = {addr: len(deps) for addr, deps in self._deps.items()}
        ready = [(self._index[a], a) for a, n in remaining.items() if n == 0]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            _, addr = heapq.heappop(ready)
            order.append(addr)
            for dependent in self._dependents[addr]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._index[dependent], dependent))
        if len(order) != len(self._nodes):
            raise CyclicDependencyError(self.find_cycle() or sorted(set(self._nodes) - set(order)))
        return order

    def reverse_topological_order(self) -> List[str]:
        return list(reversed(self.topological_order()))

    # ------------------------------------------------------------ construction
    @classmethod
    def from_state(cls, entries) -> "DependencyGraph":
        """
        Rebuild a graph from state entries using the dependencies recorded at
        apply time. Dependencies on addresses outside ``entries`` are dropped.
        """
        entries = list(entries)
        nodes = [
            ResourceDeclaration(kind=e.kind, name=e.name, attributes=dict(e.attributes))
            for e in entries
        ]
        present = {e.address for e in entries}
        refs = [
            Reference(e.address, "depends_on", dep, None)
            for e in entries
            for dep in e.dependencies
            if dep in present
        ]
        return cls(nodes, refs)

    def with_state(self, entries) -> "DependencyGraph":
        """
        This graph extended with state entries: undeclared entries become
        nodes, and the dependencies recorded at apply time become edges.
        A recorded edge that runs against the declared ones is dropped.
        """
        entries = list(entries)
        nodes = [self._nodes[a] for a in self._nodes] + [
            ResourceDeclaration(kind=e.kind, name=e.name, attributes=dict(e.attributes))
            for e in entries
            if e.address not in self._nodes
        ]
        deps: Dict[str, List[str]] = {d.address: list(self._deps.get(d.address, [])) for d in nodes}
        refs = list(self.references)
        for e in entries:
            for dep in e.dependencies:
                if dep not in deps or dep in deps[e.address]:
                    continue
                if dep == e.address or e.address in self._walk(dep, deps):
                    continue
                deps[e.address].append(dep)
                refs.append(Reference(e.address, "depends_on", dep, None))
        return DependencyGraph(nodes, refs)


def build_graph(declarations: Iterable[ResourceDeclaration], references: Iterable[Reference]) -> DependencyGraph:
    declarations = list(declarations)
    seen: Dict[str, ResourceDeclaration] = {}
    for decl in declarations:
        if decl.address in seen:
            raise DuplicateResourceError(decl.address, seen[decl.address].source_file, decl.source_file)
        seen[decl.address] = decl

    graph = DependencyGraph(declarations, references)
    cycle = graph.find_cycle()
    if cycle:
        raise CyclicDependencyError(cycle)
    return graph


def load_graph(declarations: Iterable[ResourceDeclaration]) -> DependencyGraph:
    """Validate, resolve references and build the graph in one pass."""
    declarations = list(declarations)
    for decl in declarations:
        validate_declaration(decl)
    return build_graph(declarations, resolve_references(declarations))
