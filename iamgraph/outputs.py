"""
Named output values derived from applied state.

Sensitive outputs never show their value in logs, diffs or reports unless
reveal is explicitly requested.
"""
from dataclasses import dataclass
from typing import Any, List

from iamgraph.models.kinds import KINDS
from iamgraph.models.resource import iter_refs

SENSITIVE_MASK = "(sensitive value)"


@dataclass
class OutputValue:
    name: str
    value: Any
    sensitive: bool = False

    def display(self, reveal: bool = False) -> str:
        if self.sensitive and not reveal:
            return SENSITIVE_MASK
        if self.value is None:
            return "(not yet applied)"
        return str(self.value)

    def to_dict(self, reveal: bool = False) -> dict:
        return {
            "name": self.name,
            "sensitive": self.sensitive,
            "value": mask(self.value, self.sensitive, reveal),
        }


@dataclass(repr=False)
class SensitiveOutput(OutputValue):
    sensitive: bool = True

    def __repr__(self) -> str:
        return f"SensitiveOutput(name={self.name!r}, value={SENSITIVE_MASK!r})"

    __str__ = __repr__


def mask(value: Any, sensitive: bool, reveal: bool = False) -> Any:
    return SENSITIVE_MASK if sensitive and not reveal else value


def mask_id(kind: str, remote_id: str) -> str:
    """A remote id as it may appear in logs and error messages."""
    k = KINDS.get(kind)
    return mask(remote_id, k is not None and k.sensitive_id)


def references_sensitive(value: Any) -> bool:
    """True when an expression reads a sensitive resource attribute."""
    for ref in iter_refs(value):
        kind = KINDS.get(ref.kind)
        if kind is not None and kind.is_sensitive(ref.attribute or "id"):
            return True
    return False


def collect_outputs(outputs, state) -> List[OutputValue]:
    """
    Evaluate output declarations against the state store. Outputs whose
    resources are not applied yet evaluate to None.
    """
    from iamgraph.engine.diff import resolve_value, state_lookup

    lookup = state_lookup(state.get)
    values: List[OutputValue] = []
    for decl in outputs:
        try:
            value = resolve_value(decl.value, lookup)
        except LookupError:
            value = None
        if decl.sensitive or references_sensitive(decl.value):
            values.append(SensitiveOutput(decl.name, value))
        else:
            values.append(OutputValue(decl.name, value))
    return values
