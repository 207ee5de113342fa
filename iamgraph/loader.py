"""
Collect declaration files and load them into one Configuration.
"""
import os
from typing import Any, Dict, Iterable, List, Optional

from rich.console import Console

from iamgraph.detect import detect_format
from iamgraph.errors import ConfigurationError, UnresolvedReferenceError
from iamgraph.graph.builder import DependencyGraph, load_graph
from iamgraph.models.resource import Configuration, iter_refs
from iamgraph.parsers import document, terraform

console = Console(stderr=True)

_PARSERS = {"terraform": terraform, "document": document}


def collect_files(paths: Iterable[str]) -> List[str]:
    """Expand directories into file paths, sorted for a stable declaration order."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, dirs, fnames in os.walk(p):
                dirs[:] = sorted(d for d in dirs if not d.startswith("."))
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            console.print(f"[yellow]Warning:[/yellow] '{p}' does not exist, skipping.")
    return files


def load_configuration(paths: Iterable[str], variables: Optional[Dict[str, Any]] = None) -> Configuration:
    """
    Parse every supported file under ``paths``. Variable defaults declared in
    any file are visible to all files; ``variables`` overrides them.
    """
    typed = []
    for fp in collect_files(paths):
        fmt = detect_format(fp)
        if fmt in _PARSERS:
            typed.append((fp, _PARSERS[fmt]))
        else:
            console.print(f"[dim]Skipping unsupported file:[/dim] {fp}")

    scope: Dict[str, Any] = {}
    for fp, parser in typed:
        for name, value in parser.variable_defaults(fp).items():
            if name in scope and scope[name] != value:
                raise ConfigurationError(f"variable '{name}' has conflicting defaults ({fp})")
            scope[name] = value
    scope.update(variables or {})

    config = Configuration()
    for fp, parser in typed:
        config.extend(parser.parse_file(fp, scope))
    return config


def load(paths: Iterable[str], variables: Optional[Dict[str, Any]] = None):
    """Load files and build the validated dependency graph. Returns (config, graph)."""
    config = load_configuration(paths, variables)
    graph: DependencyGraph = load_graph(config.resources)
    for output in config.outputs:
        for ref in iter_refs(output.value):
            if ref.address not in graph:
                raise UnresolvedReferenceError(f"output.{output.name}", "value", ref.address)
    return config, graph
