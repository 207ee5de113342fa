"""
Desired-vs-recorded comparison and the dry-run plan.

References are substituted with the referenced resource's applied outputs.
Values that cannot be known until another resource is applied are carried
as ``UNKNOWN`` and always count as a change.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from iamgraph.errors import ImmutableFieldReplaceRequired
from iamgraph.models.kinds import KINDS, ResourceKind, get_kind
from iamgraph.models.resource import AttributeRef, FileContent, ResourceDeclaration, Template
from iamgraph.models.state import RemoteResourceState
from iamgraph.outputs import SENSITIVE_MASK, references_sensitive

Lookup = Callable[[AttributeRef], Any]


class _Unknown:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN = _Unknown()


class ChangeAction(str, Enum):
    CREATE  = "create"
    UPDATE  = "update"
    REPLACE = "replace"
    DELETE  = "delete"
    NOOP    = "no-op"


_ACTION_SYMBOL = {
    ChangeAction.CREATE: "+",
    ChangeAction.UPDATE: "~",
    ChangeAction.REPLACE: "-/+",
    ChangeAction.DELETE: "-",
    ChangeAction.NOOP: " ",
}


@dataclass
class Change:
    address: str
    kind: str
    action: ChangeAction
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)
    changed_fields: List[str] = field(default_factory=list)
    sensitive_fields: List[str] = field(default_factory=list)
    reason: Optional[ImmutableFieldReplaceRequired] = None

    @property
    def symbol(self) -> str:
        return _ACTION_SYMBOL[self.action]

    def is_sensitive(self, attribute: str) -> bool:
        if attribute in self.sensitive_fields:
            return True
        kind = KINDS.get(self.kind)
        return kind is not None and kind.is_sensitive(attribute)


@dataclass
class Plan:
    changes: List[Change] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {a.value: sum(1 for c in self.changes if c.action == a) for a in ChangeAction}

    @property
    def has_changes(self) -> bool:
        return any(c.action != ChangeAction.NOOP for c in self.changes)

    def get(self, address: str) -> Optional[Change]:
        return next((c for c in self.changes if c.address == address), None)


# ------------------------------------------------------------------ resolution
def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def resolve_value(value: Any, lookup: Lookup) -> Any:
    """Substitute every expression inside ``value`` with a concrete value."""
    if isinstance(value, AttributeRef):
        return lookup(value)
    if isinstance(value, FileContent):
        return value.text()
    if isinstance(value, Template):
        parts = []
        for part in value.parts:
            resolved = part if isinstance(part, str) else lookup(part)
            if resolved is UNKNOWN:
                return UNKNOWN
            parts.append(str(resolved))
        return "".join(parts)
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(v, lookup) for v in value]
    return value


def resolve_attributes(decl: ResourceDeclaration, lookup: Lookup) -> Dict[str, Any]:
    return {k: resolve_value(v, lookup) for k, v in decl.attributes.items()}


def sensitive_fields(decl: ResourceDeclaration) -> List[str]:
    """Fields whose expression copies a secret out of another resource."""
    return sorted(name for name, value in decl.attributes.items() if references_sensitive(value))


def state_lookup(get_state: Callable[[str], Optional[RemoteResourceState]]) -> Lookup:
    """Lookup over applied state. The dependency must already be applied."""

    def lookup(ref: AttributeRef) -> Any:
        entry = get_state(ref.address)
        if entry is None:
            raise LookupError(f"{ref.address} has not been applied")
        return entry.output(ref.attribute or "id")

    return lookup


# ------------------------------------------------------------------ comparison
def diff_fields(kind: ResourceKind, before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
    changed = []
    for name in sorted(set(before) | set(after)):
        if name not in kind.fields:
            continue
        new = after.get(name)
        if contains_unknown(new) or before.get(name) != new:
            changed.append(name)
    return changed


def plan_change(
    address: str,
    kind: ResourceKind,
    prior: Optional[RemoteResourceState],
    desired: Dict[str, Any],
    sensitive: Iterable[str] = (),
) -> Change:
    masked = set(sensitive)
    if prior is None:
        return Change(address, kind.name, ChangeAction.CREATE, after=desired,
                      changed_fields=sorted(desired), sensitive_fields=sorted(masked))

    # A value recorded from a secret stays masked even if the declaration changed.
    masked.update(prior.sensitive_attributes)
    changed = diff_fields(kind, prior.attributes, desired)
    if not changed:
        return Change(address, kind.name, ChangeAction.NOOP,
                      before=prior.attributes, after=desired, sensitive_fields=sorted(masked))

    immutable = [f for f in changed if f in kind.immutable]
    if immutable:
        return Change(address, kind.name, ChangeAction.REPLACE,
                      before=prior.attributes, after=desired, changed_fields=changed,
                      sensitive_fields=sorted(masked),
                      reason=ImmutableFieldReplaceRequired(address, immutable))
    return Change(address, kind.name, ChangeAction.UPDATE,
                  before=prior.attributes, after=desired, changed_fields=changed,
                  sensitive_fields=sorted(masked))


def delete_change(address: str, prior: RemoteResourceState) -> Change:
    return Change(address, prior.kind, ChangeAction.DELETE, before=prior.attributes,
                  sensitive_fields=list(prior.sensitive_attributes))


def build_plan(graph, state, orphan_order: Optional[List[str]] = None) -> Plan:
    """
    Classify every node of ``graph`` against ``state`` without calling the
    provider. ``orphan_order`` lists state-only addresses in deletion order.
    """
    plan = Plan()

    for address in orphan_order or []:
        prior = state.get(address)
        if prior is not None:
            plan.changes.append(delete_change(address, prior))

    # Values a dependent can already see for each planned node, and which
    # nodes will get fresh computed outputs.
    planned: Dict[str, Tuple[Dict[str, Any], bool]] = {}

    def lookup(ref: AttributeRef) -> Any:
        attribute = ref.attribute or "id"
        known, fresh = planned.get(ref.address, ({}, False))
        if attribute in known:
            return known[attribute]
        entry = state.get(ref.address)
        if fresh or entry is None:
            return UNKNOWN
        return entry.output(attribute)

    for address in graph.topological_order():
        decl = graph.node(address)
        kind = get_kind(decl.kind, address)
        prior = state.get(address)
        desired = resolve_attributes(decl, lookup)
        change = plan_change(address, kind, prior, desired, sensitive_fields(decl))
        fresh = change.action in (ChangeAction.CREATE, ChangeAction.REPLACE)
        planned[address] = (desired, fresh)
        plan.changes.append(change)

    return plan


# ------------------------------------------------------------------ rendering
def display_value(value: Any, sensitive: bool = False, reveal: bool = False) -> str:
    if value is UNKNOWN:
        return str(UNKNOWN)
    if sensitive and not reveal:
        return SENSITIVE_MASK
    if isinstance(value, str):
        if "\n" in value:
            return f"<{len(value.splitlines())} lines>"
        return f'"{value}"'
    return repr(value)


def render_change(change: Change, reveal: bool = False) -> List[str]:
    """Plain-text diff lines for one change. Sensitive values are masked."""
    lines = [f"{change.symbol} {change.address}"]
    if change.action == ChangeAction.NOOP:
        return lines
    if change.reason is not None:
        lines[0] += f"  (replace: {', '.join(change.reason.fields)})"

    if change.action == ChangeAction.CREATE:
        names = sorted(change.after)
    elif change.action == ChangeAction.DELETE:
        names = sorted(change.before)
    else:
        names = change.changed_fields

    for name in names:
        sensitive = change.is_sensitive(name)
        old = display_value(change.before.get(name), sensitive, reveal)
        new = display_value(change.after.get(name), sensitive, reveal)
        if change.action == ChangeAction.CREATE:
            lines.append(f"    {name} = {new}")
        elif change.action == ChangeAction.DELETE:
            lines.append(f"    {name} = {old}")
        else:
            lines.append(f"    {name}: {old} -> {new}")
    return lines
