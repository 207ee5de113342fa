"""
Reference extraction.

Scans declaration attributes for expressions that read another resource's
outputs and turns each one into an edge of the dependency graph.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from iamgraph.errors import UnresolvedReferenceError
from iamgraph.models.kinds import KINDS
from iamgraph.models.resource import ResourceDeclaration, iter_refs


@dataclass(frozen=True)
class Reference:
    source: str               # address of the consuming resource
    field: str                # attribute holding the expression, or "depends_on"
    target: str               # address of the producing resource
    attribute: Optional[str]  # output read from the target; None for depends_on


def _check_target(decl: ResourceDeclaration, field: str, ref, declared: Dict[str, ResourceDeclaration]) -> None:
    if ref.address not in declared:
        raise UnresolvedReferenceError(decl.address, field, ref.address)
    kind = KINDS.get(ref.kind)
    if ref.attribute is not None and kind is not None and ref.attribute not in kind.outputs:
        raise UnresolvedReferenceError(decl.address, field, str(ref))


def resolve_references(declarations: Iterable[ResourceDeclaration]) -> List[Reference]:
    """
    Return one Reference per expression found in the declarations, in
    declaration and attribute order. Raises UnresolvedReferenceError when an
    expression names a resource (or output attribute) that is not declared.
    """
    declarations = list(declarations)
    declared = {d.address: d for d in declarations}
    references: List[Reference] = []

    for decl in declarations:
        for field_name, value in decl.attributes.items():
            for ref in iter_refs(value):
                _check_target(decl, field_name, ref, declared)
                references.append(Reference(decl.address, field_name, ref.address, ref.attribute))
        for ref in decl.depends_on:
            _check_target(decl, "depends_on", ref, declared)
            references.append(Reference(decl.address, "depends_on", ref.address, None))

    return references


def referenced_attributes(references: Iterable[Reference], source: str, target: str) -> List[str]:
    """Output attributes of ``target`` that ``source`` reads."""
    return sorted({r.attribute for r in references
                   if r.source == source and r.target == target and r.attribute})
